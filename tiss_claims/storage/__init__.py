"""Blob storage for interchange files and operator returns."""

from tiss_claims.storage.protocol import BlobStore
from tiss_claims.storage.factory import create_blob_store

__all__ = ["BlobStore", "create_blob_store"]
