import hashlib
import logging
import mimetypes
import os
import tempfile
from pathlib import Path
from typing import Optional

from clipsync.errors import NotFound, TransientError

logger = logging.getLogger(__name__)


class FileObjectStore:
    """Content-addressed blob store on the local filesystem.

    Keys look like ``images/ab/<sha256>.png``; writing bytes that are already
    stored is a no-op.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        if base_dir is None:
            base_dir = Path.home() / ".clipsync" / "objects"
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def key_for(data: bytes, mime: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        extension = mimetypes.guess_extension(mime) or ".bin"
        if extension == ".jpe":
            extension = ".jpg"
        return f"images/{digest[:2]}/{digest}{extension}"

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise NotFound(f"object {key} not found")
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def put(self, data: bytes, mime: str) -> str:
        key = self.key_for(data, mime)
        path = self._path(key)
        if path.is_file():
            logger.debug(f"Object {key} already stored")
            return key

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise TransientError(f"object storage unavailable: {e}") from e

        logger.info(f"Stored object {key} ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(f"object {key} not found") from e
        except OSError as e:
            raise TransientError(f"object storage unavailable: {e}") from e
