"""
Filesystem storage, for development and single-host deployments.

Keys map to files below `local_path`; URLs are built from `local_base_url`
and are expected to be served by whatever fronts that directory.
"""

import asyncio
import shutil
from pathlib import Path
from typing import BinaryIO, Union

from owlnotes.logger import logger
from owlnotes.storage.base import FileResult, Storage, StorageError


class LocalStorage(Storage):
    def __init__(self, local_path: str, local_base_url: str = ""):
        if not local_path:
            raise ValueError("Storage `local_storage` require `local_path`")
        super().__init__()
        self.root = Path(local_path).resolve()
        self.base_url = local_base_url.rstrip("/")

    def _path(self, filename: str, bucket: str | None = None) -> Path:
        root = self.root / bucket if bucket else self.root
        path = (root / filename).resolve()
        if root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {filename}")
        return path

    async def _put_file(
        self,
        filename: str,
        data: Union[bytes, BinaryIO],
        *,
        bucket: str | None = None,
        content_type: str | None = None,
    ) -> FileResult:
        path = self._path(filename, bucket)
        logger.info(f"Writing {filename} to {path}")

        def write():
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                if isinstance(data, bytes):
                    f.write(data)
                else:
                    shutil.copyfileobj(data, f)

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            raise StorageError(f"Local upload failed for {filename}: {e}") from e

        url = await self._get_file_url(filename, bucket=bucket)
        return FileResult(filename=filename, url=url)

    async def _get_file_url(
        self,
        filename: str,
        operation: str = "get_object",
        expires_in: int = 3600,
        *,
        bucket: str | None = None,
    ) -> str:
        key = f"{bucket}/{filename}" if bucket else filename
        return f"{self.base_url}/{key}"

    async def _delete_file(self, filename: str, *, bucket: str | None = None):
        path = self._path(filename, bucket)
        logger.info(f"Deleting {path}")
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def _get_file(self, filename: str, *, bucket: str | None = None) -> bytes:
        path = self._path(filename, bucket)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {filename}") from e
        except OSError as e:
            raise StorageError(f"Local download failed for {filename}: {e}") from e

    async def _list_objects(
        self, prefix: str = "", *, bucket: str | None = None
    ) -> list[str]:
        root = self.root / bucket if bucket else self.root

        def walk():
            if not root.exists():
                return []
            keys = [
                p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
            ]
            return sorted(k for k in keys if k.startswith(prefix))

        return await asyncio.to_thread(walk)


Storage.register("local", LocalStorage)
