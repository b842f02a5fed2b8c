from contextlib import asynccontextmanager
from functools import wraps
from typing import BinaryIO, Union

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from owlnotes.logger import logger
from owlnotes.storage.base import (
    FileResult,
    Storage,
    StorageError,
    StoragePermissionError,
)

PERMISSION_ERROR_CODES = ("AccessDenied", "NoSuchBucket", "ExpiredToken")


def s3_errors(action: str):
    """Turn botocore failures of `action` into StorageError."""

    def decorator(func):
        @wraps(func)
        async def wrapper(self, key="", *args, **kwargs):
            override = kwargs.get("bucket")
            bucket = override or self.bucket_name
            try:
                return await func(self, key, *args, **kwargs)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                if code in PERMISSION_ERROR_CODES:
                    which = "overridden" if override else "default"
                    raise StoragePermissionError(
                        f"S3 {action} denied on {which} bucket '{bucket}': {code}. "
                        "Check the STORAGE_AWS_* settings."
                    ) from e
                raise StorageError(
                    f"S3 {action} failed for '{bucket}/{key}': {code}"
                ) from e
            except BotoCoreError as e:
                raise StorageError(f"S3 {action} failed for '{key}': {e}") from e

        return wrapper

    return decorator


class AwsStorage(Storage):
    """S3 storage for chunks, tracks and merged recordings.

    `aws_bucket_name` may carry a folder ("bucket/folder"), every key is then
    stored below that folder and listed back without it. With `aws_role_arn`
    the ambient credentials assume that role for each client.
    """

    def __init__(
        self,
        aws_bucket_name: str,
        aws_region: str,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        aws_role_arn: str | None = None,
    ):
        if not aws_bucket_name:
            raise ValueError("Storage `aws` requires `aws_bucket_name`")
        if not aws_region:
            raise ValueError("Storage `aws` requires `aws_region`")
        if not aws_access_key_id and not aws_role_arn:
            raise ValueError(
                "Storage `aws` requires either `aws_access_key_id` or `aws_role_arn`"
            )
        if aws_role_arn and (aws_access_key_id or aws_secret_access_key):
            raise ValueError("Storage `aws` takes `aws_role_arn` or keys, not both")

        super().__init__()
        bucket, _, folder = aws_bucket_name.partition("/")
        self.bucket_name = bucket
        self.folder = folder.strip("/")
        self.region = aws_region
        self.role_arn = aws_role_arn
        self.boto_config = Config(retries={"max_attempts": 3, "mode": "adaptive"})
        self.session = aioboto3.Session(
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            region_name=aws_region,
        )

    def _locate(self, key: str, bucket: str | None) -> tuple[str, str]:
        full_key = f"{self.folder}/{key}" if self.folder else key
        return bucket or self.bucket_name, full_key

    def _strip_folder(self, key: str) -> str | None:
        if not self.folder:
            return key
        if key == self.folder:
            return None
        return key.removeprefix(f"{self.folder}/")

    async def _assumed_credentials(self) -> dict[str, str]:
        async with self.session.client("sts", config=self.boto_config) as sts:
            response = await sts.assume_role(
                RoleArn=self.role_arn, RoleSessionName="owlnotes-storage"
            )
        creds = response["Credentials"]
        return {
            "aws_access_key_id": creds["AccessKeyId"],
            "aws_secret_access_key": creds["SecretAccessKey"],
            "aws_session_token": creds["SessionToken"],
        }

    @asynccontextmanager
    async def _client(self):
        extra = await self._assumed_credentials() if self.role_arn else {}
        async with self.session.client("s3", config=self.boto_config, **extra) as c:
            yield c

    @s3_errors("upload")
    async def _put_file(
        self,
        filename: str,
        data: Union[bytes, BinaryIO],
        *,
        bucket: str | None = None,
        content_type: str | None = None,
    ) -> FileResult:
        bucket_name, key = self._locate(filename, bucket)
        logger.info("Uploading to S3", bucket=bucket_name, key=key)

        extra = {"ContentType": content_type} if content_type else {}
        async with self._client() as client:
            if isinstance(data, bytes):
                await client.put_object(
                    Bucket=bucket_name, Key=key, Body=data, **extra
                )
            else:
                # streamed in parts, merged recordings can be large
                await client.upload_fileobj(
                    data, Bucket=bucket_name, Key=key, ExtraArgs=extra or None
                )

        return FileResult(
            filename=filename, url=await self._get_file_url(filename, bucket=bucket)
        )

    @s3_errors("presign")
    async def _get_file_url(
        self,
        filename: str,
        operation: str = "get_object",
        expires_in: int = 3600,
        *,
        bucket: str | None = None,
    ) -> str:
        bucket_name, key = self._locate(filename, bucket)
        async with self._client() as client:
            return await client.generate_presigned_url(
                operation,
                Params={"Bucket": bucket_name, "Key": key},
                ExpiresIn=expires_in,
            )

    @s3_errors("delete")
    async def _delete_file(self, filename: str, *, bucket: str | None = None):
        bucket_name, key = self._locate(filename, bucket)
        logger.info("Deleting from S3", bucket=bucket_name, key=key)
        async with self._client() as client:
            await client.delete_object(Bucket=bucket_name, Key=key)

    @s3_errors("download")
    async def _get_file(self, filename: str, *, bucket: str | None = None) -> bytes:
        bucket_name, key = self._locate(filename, bucket)
        logger.debug("Downloading from S3", bucket=bucket_name, key=key)
        async with self._client() as client:
            response = await client.get_object(Bucket=bucket_name, Key=key)
            return await response["Body"].read()

    @s3_errors("list")
    async def _list_objects(
        self, prefix: str = "", *, bucket: str | None = None
    ) -> list[str]:
        bucket_name, full_prefix = self._locate(prefix, bucket)
        logger.debug("Listing S3 objects", bucket=bucket_name, prefix=full_prefix)

        keys = []
        async with self._client() as client:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=bucket_name, Prefix=full_prefix
            ):
                for obj in page.get("Contents", []):
                    key = self._strip_folder(obj["Key"])
                    if key is not None:
                        keys.append(key)
        return keys

    @s3_errors("stream")
    async def _stream_to_fileobj(
        self, filename: str, fileobj: BinaryIO, *, bucket: str | None = None
    ):
        bucket_name, key = self._locate(filename, bucket)
        logger.debug("Streaming from S3", bucket=bucket_name, key=key)
        async with self._client() as client:
            await client.download_fileobj(Bucket=bucket_name, Key=key, Fileobj=fileobj)


Storage.register("aws", AwsStorage)
