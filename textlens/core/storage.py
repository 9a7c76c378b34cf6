"""Blob storage for scanned source images."""

import asyncio
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Persist bytes under path and return a locator for them."""


class LocalBlobStore:
    """Stores images under a local directory and returns file:// locators."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        clean_path = path.strip("/")
        root = self.base_dir.resolve()
        destination = (root / clean_path).resolve()
        if root not in destination.parents:
            raise ValueError(f"Invalid storage path: {path}")
        return destination

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        del content_type
        destination = self._resolve(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(destination.write_bytes, data)
        logger.debug(f"Stored {len(data)} bytes at {destination}")
        return destination.as_uri()
