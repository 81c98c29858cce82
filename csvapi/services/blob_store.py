# ABOUTME: Byte-blob store for original uploaded files
# ABOUTME: Keeps each upload on the local filesystem under a per-user, per-project key

import re
import time
from pathlib import Path


class LocalBlobStore:
    """Stores blobs as files below a root directory."""

    def __init__(self, root):
        self.root = Path(root)

    @staticmethod
    def make_key(user_id, project_id, filename: str) -> str:
        safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(filename or "upload.csv").name)
        safe_user = re.sub(r"[^A-Za-z0-9._-]+", "_", str(user_id))
        return f"{safe_user}/{project_id}/{int(time.time() * 1000)}_{safe_name}"

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def delete(self, key: str) -> None:
        self._path(key).unlink()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes the store root: {key}")
        return path
