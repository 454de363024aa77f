"""HTTP API and job orchestration."""
