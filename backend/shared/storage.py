"""Durable key-value storage on the local filesystem.

Each key maps to one UTF-8 file inside an owner-only directory (0o700).
Writes go through temp-file-then-rename, so a reader in the same process
either sees the previous value or the new one, never a torn write.
"""

import contextlib
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()

_STORE_DIR_MODE = 0o700
_STORE_FILE_MODE = 0o600

_VALID_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class KeyValueStorage(Protocol):
    """Synchronous string key-value store."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class FileKeyValueStorage:
    """Stores each value as ``<key>.json`` under a single directory.

    The directory is created lazily on first write. Keys are restricted to a
    filename-safe alphabet; anything else is rejected before touching disk.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory).resolve()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, key: str) -> Path:
        if not _VALID_KEY.match(key) or ".." in key:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        """Return the stored value, or None when the key was never written."""
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        """Atomically replace the value stored under key."""
        target = self._path_for(key)

        self._directory.mkdir(mode=_STORE_DIR_MODE, parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=str(self._directory), suffix=".tmp", prefix=f".{key}_")
        fd_owned = True
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                fd_owned = False  # os.fdopen took ownership; it will close fd
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, _STORE_FILE_MODE)  # noqa: PTH101
            Path(tmp_path).replace(target)
        except BaseException:
            if fd_owned:
                with contextlib.suppress(OSError):
                    os.close(fd)
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            raise
        logger.debug("stored key", key=key, size=len(value))

    def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        with contextlib.suppress(FileNotFoundError):
            self._path_for(key).unlink()
