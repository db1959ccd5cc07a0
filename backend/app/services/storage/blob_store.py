"""Blob storage for DICOM files.

Blobs are addressed by slash-separated paths such as
``dicom_files/Jane_Doe-1760000000000/scan.dcm``. The local implementation
maps those paths onto a directory tree:

storage_dir/
    └── {path_prefix}/
        ├── {sanitized_name}-{epoch_ms}/
        │   └── {original_file_name}
        └── ...
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

import aiofiles
import aiofiles.os

from app.core.errors import NotFoundError, StorageDeleteError, StorageWriteError
from app.core.logging import get_logger
from app.services.storage.records import BlobInfo

logger = get_logger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Path-addressed binary storage."""

    async def upload(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        """Store ``data`` at ``path``. Raises StorageWriteError."""
        ...

    async def remove(self, path: str) -> None:
        """Remove the blob at ``path``. Raises StorageDeleteError, also when absent."""
        ...

    async def exists(self, path: str) -> bool:
        """Check whether a blob exists at ``path``."""
        ...

    async def read(self, path: str) -> bytes:
        """Return the blob content. Raises NotFoundError."""
        ...

    async def list_blobs(self, prefix: str = "") -> list[BlobInfo]:
        """List blobs whose path starts with ``prefix``."""
        ...

    def public_url(self, path: str) -> str:
        """URL a browser can download the blob from. Never fails."""
        ...


class LocalBlobStore:
    """Blob store backed by a local (or mounted network) directory."""

    def __init__(self, storage_dir: Path, public_base_url: str = "/api/v1/files"):
        """Initialize blob store.

        Args:
            storage_dir: Base directory holding the blobs
            public_base_url: URL prefix under which blobs are served

        """
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self._ready = False

    async def initialize(self) -> None:
        """Create the storage directory."""
        try:
            await aiofiles.os.makedirs(self.storage_dir, exist_ok=True)
            self._ready = True
            logger.info("Blob storage initialized", path=str(self.storage_dir))
        except Exception as e:
            logger.error("Failed to initialize blob storage", error=str(e))
            raise

    def is_ready(self) -> bool:
        """Check if storage service is ready."""
        return self._ready

    def resolve(self, path: str) -> Path:
        """Map a blob path onto the filesystem, refusing paths outside the root.

        Raises:
            ValueError: if the path is empty, absolute or escapes the root

        """
        if not path or path.startswith("/"):
            raise ValueError(f"Invalid blob path: {path!r}")
        root = self.storage_dir.resolve()
        candidate = (self.storage_dir / path).resolve()
        if candidate == root or not candidate.is_relative_to(root):
            raise ValueError(f"Blob path escapes storage root: {path!r}")
        return candidate

    async def upload(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        try:
            file_path = self.resolve(path)
        except ValueError as e:
            raise StorageWriteError(str(e), {"storage_path": path}) from e

        # "xb" fails atomically when the file already exists
        mode = "wb" if overwrite else "xb"
        try:
            await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
            async with aiofiles.open(file_path, mode) as f:
                await f.write(data)
        except FileExistsError as e:
            raise StorageWriteError(
                f"Blob already exists: {path}", {"storage_path": path}
            ) from e
        except OSError as e:
            logger.error("Failed to write blob", storage_path=path, error=str(e))
            await self._discard_partial(file_path)
            raise StorageWriteError(
                f"Failed to write blob {path}: {e}", {"storage_path": path}
            ) from e

        logger.info("Stored blob", storage_path=path, size=len(data))

    async def _discard_partial(self, file_path: Path) -> None:
        try:
            if await aiofiles.os.path.isfile(file_path):
                await aiofiles.os.remove(file_path)
        except OSError as e:
            logger.warning("Failed to discard partial blob", path=str(file_path), error=str(e))

    async def remove(self, path: str) -> None:
        try:
            file_path = self.resolve(path)
        except ValueError as e:
            raise StorageDeleteError(str(e), {"storage_path": path}) from e

        if not await aiofiles.os.path.isfile(file_path):
            raise StorageDeleteError(f"Blob not found: {path}", {"storage_path": path})
        try:
            await aiofiles.os.remove(file_path)
        except OSError as e:
            logger.error("Failed to remove blob", storage_path=path, error=str(e))
            raise StorageDeleteError(
                f"Failed to remove blob {path}: {e}", {"storage_path": path}
            ) from e

        await self._prune_empty_dirs(file_path.parent)
        logger.info("Removed blob", storage_path=path)

    async def _prune_empty_dirs(self, directory: Path) -> None:
        root = self.storage_dir.resolve()
        while directory != root and directory.is_relative_to(root):
            try:
                if await aiofiles.os.listdir(directory):
                    return
                await aiofiles.os.rmdir(directory)
            except OSError:
                # Another upload landed in the directory meanwhile
                return
            directory = directory.parent

    async def exists(self, path: str) -> bool:
        try:
            file_path = self.resolve(path)
        except ValueError:
            return False
        return await aiofiles.os.path.isfile(file_path)

    async def read(self, path: str) -> bytes:
        try:
            file_path = self.resolve(path)
        except ValueError as e:
            raise NotFoundError(str(e), {"storage_path": path}) from e
        if not await aiofiles.os.path.isfile(file_path):
            raise NotFoundError(f"Blob not found: {path}", {"storage_path": path})
        async with aiofiles.open(file_path, "rb") as f:
            return await f.read()

    async def list_blobs(self, prefix: str = "") -> list[BlobInfo]:
        return await asyncio.to_thread(self._scan, prefix)

    def _scan(self, prefix: str) -> list[BlobInfo]:
        if not self.storage_dir.exists():
            return []
        blobs = []
        for file_path in self.storage_dir.rglob("*"):
            if not file_path.is_file():
                continue
            path = file_path.relative_to(self.storage_dir).as_posix()
            if not path.startswith(prefix):
                continue
            stat = file_path.stat()
            blobs.append(
                BlobInfo(
                    path=path,
                    size=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        blobs.sort(key=lambda blob: blob.path)
        return blobs

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{quote(path)}"
