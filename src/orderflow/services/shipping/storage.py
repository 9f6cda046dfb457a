"""
Durable storage for shipping label artifacts.

Labels are written under a root directory and addressed by a path relative
to that root, which is what orders and label rows record.
"""

import asyncio
import os
from pathlib import Path
from typing import Union

from orderflow.core.config import Settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class LabelStorage:
    """Local filesystem label storage."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LabelStorage":
        return cls(settings.label_storage_path)

    def _resolve(self, path: str) -> Path:
        full_path = (self.root / path).resolve()
        if not full_path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Label path escapes storage root: {path}")
        return full_path

    @staticmethod
    def label_path(carrier: str, order_number: str, shipment_id: str, extension: str = "pdf") -> str:
        """Relative path of a label artifact."""
        return f"labels/{carrier}_label_{order_number}_{shipment_id}.{extension}"

    def _write(self, full_path: Path, content: bytes) -> None:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = full_path.with_suffix(full_path.suffix + ".tmp")
        tmp_path.write_bytes(content)
        os.replace(tmp_path, full_path)

    async def save(self, path: str, content: bytes) -> str:
        """
        Write an artifact atomically.

        Args:
            path: Path relative to the storage root
            content: Artifact bytes

        Returns:
            The relative path that was written
        """
        full_path = self._resolve(path)
        await asyncio.to_thread(self._write, full_path, content)
        logger.info("Label stored", path=path, size_bytes=len(content))
        return path

    async def delete(self, path: str) -> bool:
        """
        Delete an artifact if present.

        Returns:
            True if a file was removed
        """
        full_path = self._resolve(path)
        try:
            await asyncio.to_thread(full_path.unlink)
        except FileNotFoundError:
            logger.debug("Label already absent", path=path)
            return False
        logger.info("Label deleted", path=path)
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)
