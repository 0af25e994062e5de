# storage.py
from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List

from .errors import StorageError

# ---------------------------------------------------------------------
# Blob stores: the durable storage backend for workspace snapshots and
# artifacts. Keys are "/"-separated relative names, e.g.
#   workspaces/<invocation>/<workflow>.tar.gz
#   artifacts/<invocation>/<job_run>/<name>
# ---------------------------------------------------------------------


def _check_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise StorageError(key, f"Invalid storage key: {key!r}")
    return key


class BlobStore:
    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> None:
        raise NotImplementedError


class FileBlobStore(BlobStore):
    """
    Directory-backed store:
      root/
        workspaces/<invocation>/<workflow>.tar.gz
        artifacts/<invocation>/<job_run>/<name>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*_check_key(key).split("/"))

    def put(self, key: str, data: bytes) -> None:
        dest = self._path(key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            # write-then-rename so readers never see a partial blob
            fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=str(dest.parent))
        except OSError as e:
            raise StorageError(key, f"put failed: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise StorageError(key, f"put failed: {e}") from e

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise StorageError(key, "No such blob") from None
        except OSError as e:
            raise StorageError(key, f"get failed: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str = "") -> List[str]:
        base = self.root
        out = []
        for p in sorted(base.rglob("*")):
            if not p.is_file() or p.name.startswith(".tmp-"):
                continue
            key = p.relative_to(base).as_posix()
            if key.startswith(prefix):
                out.append(key)
        return out

    def delete_prefix(self, prefix: str) -> None:
        for key in self.list(prefix):
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                pass


class MemoryBlobStore(BlobStore):
    """In-process store; contents vanish with the process."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[_check_key(key)] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[key]
            except KeyError:
                raise StorageError(key, "No such blob") from None

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))

    def delete_prefix(self, prefix: str) -> None:
        with self._lock:
            for k in [k for k in self._blobs if k.startswith(prefix)]:
                del self._blobs[k]
