from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from signature_sync.core.config import Settings
from signature_sync.core.logging import get_logger
from signature_sync.integrations.esignature.base import SUPPORTED_DOCUMENT_TYPES, ArchiveError

logger = get_logger(__name__)


class ArchiveStore(ABC):
    @abstractmethod
    async def put(self, data: bytes, content_type: str, filename: str | None = None) -> str:
        """Store the bytes and return a reference to them."""


class LocalArchiveStore(ArchiveStore):
    """Writes archived documents below a base directory."""

    def __init__(self, base_dir: str | Path, public_base_url: str | None = None):
        self.base_dir = Path(base_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalArchiveStore":
        return cls(settings.archive_base_dir, settings.archive_public_base_url)

    async def put(self, data: bytes, content_type: str, filename: str | None = None) -> str:
        extension = SUPPORTED_DOCUMENT_TYPES.get(content_type, "bin")
        name = f"{uuid.uuid4()}.{extension}"
        try:
            path = await asyncio.to_thread(self._write, name, data)
        except OSError as exc:
            raise ArchiveError(f"Failed to archive document: {exc}") from exc

        logger.info("archive.stored", name=name, original_filename=filename, size_bytes=len(data))
        if self.public_base_url:
            return f"{self.public_base_url}/{name}"
        return str(path)

    def _write(self, name: str, data: bytes) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.base_dir / name
        path.write_bytes(data)
        return path
