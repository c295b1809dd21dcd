"""
Local filesystem blob store.
"""

from pathlib import Path

import structlog

from tiss_claims.errors import TransientError

logger = structlog.get_logger()


class LocalFileBlobStore:
    """
    Stores objects as files under a root directory.

    URLs are ``{base_url}{absolute path}``, e.g. ``file:///srv/blobs/batches/x.xml``.
    """

    def __init__(self, root_dir: str, base_url: str = "file://") -> None:
        self._root = Path(root_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url

    def _path_for(self, url: str) -> Path:
        if not url.startswith(self._base_url):
            raise TransientError(f"URL not served by this store: {url}", {"url": url})
        path = Path(url[len(self._base_url):]).resolve()
        if self._root not in path.parents:
            raise TransientError(f"URL outside storage root: {url}", {"url": url})
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Invalid blob key: {key}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise TransientError(f"Failed to write blob {key}: {e}", {"key": key}) from e
        logger.debug("blob_stored", key=key, size=len(data), content_type=content_type)
        return f"{self._base_url}{path}"

    def get(self, url: str) -> bytes:
        path = self._path_for(url)
        try:
            return path.read_bytes()
        except OSError as e:
            raise TransientError(f"Failed to read blob {url}: {e}", {"url": url}) from e

    def exists(self, url: str) -> bool:
        try:
            return self._path_for(url).is_file()
        except TransientError:
            return False
