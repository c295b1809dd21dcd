"""
Factory for creating blob store instances from configuration.
"""

from tiss_claims.config.models import StorageConfig
from tiss_claims.storage.protocol import BlobStore


def create_blob_store(config: StorageConfig) -> BlobStore:
    """
    Create a blob store based on configuration.

    Args:
        config: Storage configuration

    Returns:
        A BlobStore implementation
    """
    if config.backend == "memory":
        from tiss_claims.storage.implementations.memory import InMemoryBlobStore

        return InMemoryBlobStore()

    from tiss_claims.storage.implementations.local import LocalFileBlobStore

    return LocalFileBlobStore(root_dir=config.root_dir, base_url=config.base_url)
