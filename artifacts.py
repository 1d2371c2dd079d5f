"""Local filesystem artifact store.

Refs are POSIX-style keys relative to the store root, e.g.
`exports/<owner>/<job>/export_<job>_0.png`. Writing the same key twice
overwrites it, so a redelivered attempt produces the same refs.
"""

import logging
import os
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path

from errors import ArtifactMissingError, TransientExecutionError

logger = logging.getLogger(__name__)


class LocalStorage:
    def __init__(self, root):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref):
        path = (self.root / ref).resolve()
        if self.root not in path.parents:
            raise ArtifactMissingError(ref)
        return path

    def put(self, data: bytes, key=None) -> str:
        """Store `data` under `key` (or a generated one) and return its ref."""
        ref = key or f"blobs/{uuid.uuid4().hex}"
        with self.writer(ref) as fh:
            fh.write(data)
        return ref

    @contextmanager
    def writer(self, key):
        """Yield a binary file handle; the content appears atomically at `key` on success."""
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        except OSError as e:
            raise TransientExecutionError(f"Failed to write {key}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as fh:
                yield fh
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, ref) -> bytes:
        with self.open(ref) as fh:
            return fh.read()

    def open(self, ref):
        path = self._path(ref)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            raise ArtifactMissingError(ref) from None
        except OSError as e:
            raise TransientExecutionError(f"Failed to read {ref}: {e}") from e

    def exists(self, ref):
        try:
            return self._path(ref).is_file()
        except ArtifactMissingError:
            return False

    def delete(self, ref):
        """Remove `ref`. Deleting something already gone is not an error."""
        path = self._path(ref)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TransientExecutionError(f"Failed to delete {ref}: {e}") from e

    def delete_many(self, refs):
        removed = 0
        for ref in refs:
            if ref and self.delete(ref):
                removed += 1
        return removed
