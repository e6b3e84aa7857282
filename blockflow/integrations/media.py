"""Media storage lookup.

Uploaded files live in one directory and are served under a public prefix.
Blocks only ever see file descriptors: ``{fileName, url, mimeType, size}``.
"""

import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from blockflow.config import settings

logger = structlog.get_logger()


class MediaStorage(ABC):
    """Resolves stored files into descriptors and reads their bytes."""

    @abstractmethod
    def describe(self, path: str) -> dict[str, Any] | None:
        """Return a descriptor for a stored file, or None if it is absent."""

    @abstractmethod
    async def read(self, descriptor: dict[str, Any]) -> bytes | None:
        """Return the bytes behind a descriptor, or None if unavailable."""


class LocalMediaStorage(MediaStorage):
    """Files kept in a local upload directory.

    Only the final path component is honoured, so a descriptor can never
    point outside the upload directory.
    """

    def __init__(self, upload_dir: str | None = None, public_prefix: str | None = None) -> None:
        self.upload_dir = Path(upload_dir or settings.media_upload_dir)
        self.public_prefix = (public_prefix or settings.media_public_prefix).rstrip("/")

    def _locate(self, path: str) -> Path | None:
        name = Path(str(path)).name
        if not name or name in (".", ".."):
            return None
        candidate = self.upload_dir / name
        return candidate if candidate.is_file() else None

    def describe(self, path: str) -> dict[str, Any] | None:
        located = self._locate(path)
        if located is None:
            logger.debug("media_file_missing", file_name=Path(str(path)).name)
            return None
        mime_type, _ = mimetypes.guess_type(located.name)
        return {
            "fileName": located.name,
            "url": f"{self.public_prefix}/{located.name}",
            "mimeType": mime_type or "application/octet-stream",
            "size": located.stat().st_size,
        }

    async def read(self, descriptor: dict[str, Any]) -> bytes | None:
        for key in ("path", "fileName", "filename", "url"):
            value = descriptor.get(key)
            if not value:
                continue
            located = self._locate(value)
            if located is not None:
                return located.read_bytes()
        return None
