"""Every api/ and backends/ module imports cleanly through the installed package.

The package is installed as ``media_engine`` from a flat layout, so
internal imports must be relative; absolute ``api.`` / ``backends.``
imports only work from one working directory.
"""
import importlib
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parent.parent.parent

MODULES = [
    "media_engine.config",
    "media_engine.api.main",
    "media_engine.api.deps.providers",
    "media_engine.api.jobs.dispatcher",
    "media_engine.api.jobs.scenes",
    "media_engine.api.services",
    "media_engine.backends.replicate",
    "media_engine.backends.gateway",
    "media_engine.utils.logging",
]

ROUTER_MODULES = [
    "media_engine.api.routers.health",
    "media_engine.api.routers.jobs",
    "media_engine.api.routers.webhooks",
    "media_engine.api.routers.config_mgmt",
    "media_engine.api.routers.logs",
]


@pytest.mark.parametrize("module_path", MODULES)
def test_module_imports(module_path: str):
    mod = importlib.import_module(module_path)
    assert mod is not None


@pytest.mark.parametrize("module_path", ROUTER_MODULES)
def test_router_module_has_router(module_path: str):
    """Each router module should be importable and expose a 'router' attribute."""
    mod = importlib.import_module(module_path)
    assert hasattr(mod, "router"), f"{module_path} missing 'router' attribute"


@pytest.mark.parametrize("subdir, prefix", [("api", "from api."), ("backends", "from backends.")])
def test_no_bare_absolute_imports(subdir: str, prefix: str):
    """Internal modules must not use absolute imports of their own package."""
    violations = []
    for py_file in (PACKAGE_ROOT / subdir).rglob("*.py"):
        with open(py_file) as f:
            for lineno, line in enumerate(f, 1):
                stripped = line.strip()
                if stripped.startswith("#"):
                    continue
                if stripped.startswith(prefix):
                    violations.append(f"{py_file.relative_to(PACKAGE_ROOT)}:{lineno}: {stripped}")

    assert not violations, (
        f"Found bare '{prefix}' imports that should be relative:\n" + "\n".join(violations)
    )


def test_create_app_registers_every_router():
    """Router registration skips broken modules, so a missing route means an import failed."""
    from media_engine.api.config import ApiSettings
    from media_engine.api.main import create_app

    app = create_app(ApiSettings(job_db_path=":memory:"))
    paths = {r.path for r in app.routes}
    assert "/api/webhooks/predictions" in paths
    assert "/api/logs" in paths
