"""
Storage abstraction layer for document and artifact persistence.
Originals live under ``rooms/``; temporary watermark renditions under ``watermarks/``.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO
import io
import shutil
from uuid import uuid4

from .config import settings


class StorageBackend(ABC):
    """Abstract interface for file storage operations."""

    @abstractmethod
    async def save(self, key: str, file_data: BinaryIO) -> str:
        """
        Save file data and return storage path/key.

        Args:
            key: Unique identifier for the file (e.g., "rooms/12/ab12cd.pdf")
            file_data: Binary file stream

        Returns:
            Storage path
        """
        pass

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Read file contents."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete a file.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a file exists."""
        pass

    async def save_bytes(self, key: str, data: bytes) -> str:
        return await self.save(key, io.BytesIO(data))


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage implementation."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_path(self, key: str) -> Path:
        """Convert storage key to filesystem path."""
        # Ensure key doesn't escape base_dir
        safe_key = key.replace("..", "").lstrip("/")
        return self.base_dir / safe_key

    async def save(self, key: str, file_data: BinaryIO) -> str:
        path = self._resolve_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so concurrent renders of one key never expose a partial file
        tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.part")
        with open(tmp_path, "wb") as f:
            shutil.copyfileobj(file_data, f)
        tmp_path.replace(path)

        return str(path)

    async def read(self, key: str) -> bytes:
        path = self._resolve_path(key)
        with open(path, "rb") as f:
            return f.read()

    async def delete(self, key: str) -> bool:
        path = self._resolve_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    async def exists(self, key: str) -> bool:
        return self._resolve_path(key).exists()


def get_storage_backend(storage_type: str = "local", **kwargs) -> StorageBackend:
    """
    Factory function to get the configured storage backend.

    Example:
        storage = get_storage_backend("local", base_dir="./storage")
    """
    if storage_type == "local":
        return LocalStorageBackend(base_dir=kwargs.get("base_dir", "./storage"))
    raise ValueError(f"Unknown storage type: {storage_type}")


def get_storage() -> StorageBackend:
    """Backend for the configured directory, read on every call."""
    return get_storage_backend("local", base_dir=settings.storage_dir)
