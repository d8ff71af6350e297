"""
Blob storage for raw and cleaned profile payloads.

The pipeline only needs ``put(key, data)``. LocalBlobStore keeps objects as
files under a root directory using the key as a relative path.
"""
import logging
import os
from pathlib import Path

from core.exceptions import StorageError

logger = logging.getLogger(__name__)


class BlobStore:
    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/"):
            raise StorageError(f"Invalid blob key: {key!r}")
        resolved = (self.root / key).resolve()
        if self.root not in resolved.parents:
            raise StorageError(f"Blob key escapes store root: {key!r}")
        return resolved

    def put(self, key: str, data: bytes) -> None:
        path = self._resolve(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"failed to write blob {key}: {e}") from e
        logger.debug("[BLOB] Stored %s (%d bytes)", key, len(data))
