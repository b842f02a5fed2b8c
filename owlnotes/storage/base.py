import importlib
from typing import BinaryIO, Union

from pydantic import BaseModel

from owlnotes.errors import StorageError, StoragePermissionError  # noqa: F401
from owlnotes.settings import settings


class FileResult(BaseModel):
    filename: str
    url: str


class Storage:
    _registry = {}
    CONFIG_SETTINGS = []

    @classmethod
    def register(cls, name, kclass):
        cls._registry[name] = kclass

    @staticmethod
    def backend_config(name: str, settings_prefix: str = "") -> dict:
        """`STORAGE_LOCAL_PATH` becomes `local_path` for the `local` backend."""
        prefix = f"{settings_prefix}{name.upper()}_"
        return {
            key[len(settings_prefix) :].lower(): value
            for key, value in settings
            if key.startswith(prefix)
        }

    @classmethod
    def get_instance(cls, name: str, settings_prefix: str = ""):
        if name not in cls._registry:
            importlib.import_module(f"owlnotes.storage.storage_{name}")
        return cls._registry[name](**cls.backend_config(name, settings_prefix))

    async def put_file(
        self,
        filename: str,
        data: Union[bytes, BinaryIO],
        bucket: str | None = None,
        content_type: str | None = None,
    ) -> FileResult:
        """Upload data, overwriting any existing object at the same key."""
        return await self._put_file(
            filename, data, bucket=bucket, content_type=content_type
        )

    async def _put_file(
        self,
        filename: str,
        data: Union[bytes, BinaryIO],
        *,
        bucket: str | None = None,
        content_type: str | None = None,
    ) -> FileResult:
        raise NotImplementedError

    async def delete_file(self, filename: str, bucket: str | None = None):
        return await self._delete_file(filename, bucket=bucket)

    async def _delete_file(self, filename: str, *, bucket: str | None = None):
        raise NotImplementedError

    async def get_file_url(
        self,
        filename: str,
        operation: str = "get_object",
        expires_in: int = 3600,
        bucket: str | None = None,
    ) -> str:
        """Generate a download URL (presigned for S3)."""
        return await self._get_file_url(
            filename, operation, expires_in, bucket=bucket
        )

    async def _get_file_url(
        self,
        filename: str,
        operation: str = "get_object",
        expires_in: int = 3600,
        *,
        bucket: str | None = None,
    ) -> str:
        raise NotImplementedError

    async def get_file(self, filename: str, bucket: str | None = None) -> bytes:
        return await self._get_file(filename, bucket=bucket)

    async def _get_file(self, filename: str, *, bucket: str | None = None) -> bytes:
        raise NotImplementedError

    async def list_objects(
        self, prefix: str = "", bucket: str | None = None
    ) -> list[str]:
        """List object keys under prefix."""
        return await self._list_objects(prefix, bucket=bucket)

    async def _list_objects(
        self, prefix: str = "", *, bucket: str | None = None
    ) -> list[str]:
        raise NotImplementedError

    async def stream_to_fileobj(
        self, filename: str, fileobj: BinaryIO, bucket: str | None = None
    ):
        """Write an object into fileobj without keeping a copy in memory when possible."""
        return await self._stream_to_fileobj(filename, fileobj, bucket=bucket)

    async def _stream_to_fileobj(
        self, filename: str, fileobj: BinaryIO, *, bucket: str | None = None
    ):
        fileobj.write(await self._get_file(filename, bucket=bucket))
