"""Artifact persistence: blob store boundary plus download-and-archive."""
from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple
from urllib.parse import quote

import httpx

from ..jobs.exceptions import BackendFailure

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Where archived artifacts live."""

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store *data* at *path* and return a URL for it."""
        ...

    async def get_url(self, path: str, expires_in: Optional[int] = None) -> str:
        ...


class LocalBlobStore:
    """Filesystem blob store.

    With ``public_base_url`` set, URLs point at that base (e.g. a static
    file server in front of ``root``); otherwise ``file://`` URIs.
    """

    def __init__(self, root: Path, public_base_url: Optional[str] = None, bucket: str = "generated-media") -> None:
        self.root = Path(root)
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Stored %d bytes (%s) at %s", len(data), content_type, target)
        return await self.get_url(path)

    async def get_url(self, path: str, expires_in: Optional[int] = None) -> str:
        if self.public_base_url:
            url = f"{self.public_base_url}/{self.bucket}/{quote(path)}"
            if expires_in:
                url += f"?expires={int(time.time()) + int(expires_in)}"
            return url
        return self._resolve(path).resolve().as_uri()

    def _resolve(self, path: str) -> Path:
        target = (self.root / self.bucket / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Refusing to write outside blob root: {path}")
        return target


@dataclass
class StoredArtifact:
    url: str
    path: str
    content_type: str
    size_bytes: int


_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "model/gltf-binary": "glb",
}


def extension_for(content_type: str, default: str = "bin") -> str:
    ct = content_type.split(";")[0].strip().lower()
    if ct in _EXTENSIONS:
        return _EXTENSIONS[ct]
    guessed = mimetypes.guess_extension(ct) if ct else None
    return guessed.lstrip(".") if guessed else default


class ArtifactStore:
    """Downloads provider outputs and archives them in the blob store.

    Provider URLs expire; archived copies are what jobs hand to users.
    """

    def __init__(
        self,
        blobs: BlobStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 120.0,
    ) -> None:
        self.blobs = blobs
        self._client = client
        self._owns_client = client is None
        self._timeout_s = timeout_s

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        """Return ``(bytes, content_type)`` for an http(s) or ``data:`` URL."""
        if url.startswith("data:"):
            header, _, payload = url.partition(",")
            content_type = header[5:].split(";")[0] or "application/octet-stream"
            if ";base64" in header:
                return base64.b64decode(payload), content_type
            return payload.encode(), content_type
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_s, follow_redirects=True)
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise BackendFailure(f"Artifact download failed: {exc}") from exc
        if resp.status_code >= 400:
            raise BackendFailure(f"Artifact download failed: HTTP {resp.status_code}", status_code=resp.status_code)
        content_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0]
        return resp.content, content_type

    async def persist(
        self,
        url: str,
        *,
        job_id: str,
        filename: str,
        owner_id: Optional[str] = None,
        content_type: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> StoredArtifact:
        """Archive *url* under ``{owner}/{job_id}/{filename}``.

        A ``filename`` without an extension gets one from the content type.
        """
        data, fetched_type = await self.fetch(url)
        ctype = content_type or fetched_type
        if "." not in filename:
            filename = f"{filename}.{extension_for(ctype)}"
        path = f"{owner_id or 'anonymous'}/{job_id}/{filename}"
        await self.blobs.upload(path, data, ctype)
        stored_url = await self.blobs.get_url(path, expires_in=expires_in)
        return StoredArtifact(url=stored_url, path=path, content_type=ctype, size_bytes=len(data))

    async def persist_or_keep(self, url: str, **kwargs) -> str:
        """Like :meth:`persist` but falls back to the transient *url* on failure."""
        try:
            return (await self.persist(url, **kwargs)).url
        except (BackendFailure, OSError, ValueError) as exc:
            logger.warning("Keeping transient URL for %s: %s", kwargs.get("filename"), exc)
            return url

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
