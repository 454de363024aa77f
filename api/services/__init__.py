"""Outbound services the pipelines hand artifacts to."""
from .stitching_service import HttpStitcher, StitchEntry, Stitcher
from .storage_service import ArtifactStore, BlobStore, LocalBlobStore, StoredArtifact

__all__ = [
    "ArtifactStore",
    "BlobStore",
    "HttpStitcher",
    "LocalBlobStore",
    "StitchEntry",
    "Stitcher",
    "StoredArtifact",
]
