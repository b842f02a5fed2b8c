"""
Chunk store: recorded audio fragments keyed by session and sequence index.

Layout is `{prefix}/{session_id}/chunk-{index}.{ext}`. Chunks are written
once per index during recording; a re-upload of the same index overwrites
the previous object. Indices are not assumed contiguous or zero-based.
"""

import re

from owlnotes.errors import StorageError, ValidationError
from owlnotes.logger import logger
from owlnotes.settings import settings
from owlnotes.storage.base import Storage

CHUNK_INDEX_RE = re.compile(r"chunk-(\d+)(?:\.[^/]*)?$")

CONTENT_TYPES = {
    "webm": "audio/webm",
    "ogg": "audio/ogg",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
}


def parse_chunk_index(key: str) -> int | None:
    match = CHUNK_INDEX_RE.search(key)
    if not match:
        return None
    return int(match.group(1))


def sort_chunk_keys(keys: list[str]) -> list[str]:
    """Order keys by numeric chunk index (chunk-2 before chunk-10).

    If any key has no parsable index, the given order is kept: it is the
    only ordering information available.
    """
    indices = [parse_chunk_index(key) for key in keys]
    if any(index is None for index in indices):
        return list(keys)
    return [key for _, key in sorted(zip(indices, keys), key=lambda p: p[0])]


def content_type_for(key: str) -> str:
    ext = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


class ChunkStore:
    def __init__(
        self,
        storage: Storage,
        prefix: str | None = None,
        extension: str | None = None,
    ):
        self.storage = storage
        self.prefix = (prefix or settings.CHUNK_PREFIX).strip("/")
        self.extension = extension or settings.CHUNK_EXTENSION

    def session_folder(self, session_id: str) -> str:
        return f"{self.prefix}/{session_id}"

    def chunk_key(self, session_id: str, index: int, ext: str | None = None) -> str:
        return f"{self.session_folder(session_id)}/chunk-{index}.{ext or self.extension}"

    async def upload_chunk(
        self,
        session_id: str,
        index: int,
        data: bytes,
        ext: str | None = None,
    ) -> str:
        if not session_id:
            raise ValidationError("session_id required")
        if index is None or index < 0:
            raise ValidationError("chunk index must be a non-negative integer")
        if not data:
            raise ValidationError("chunk audio is empty")

        key = self.chunk_key(session_id, index, ext)
        await self.storage.put_file(key, data, content_type=content_type_for(key))
        logger.info("Chunk stored", session_id=session_id, index=index, key=key)
        return key

    async def list_chunk_keys(self, session_id: str) -> list[str]:
        folder = self.session_folder(session_id)
        keys = await self.storage.list_objects(prefix=f"{folder}/")
        chunk_keys = [
            key
            for key in keys
            if key.startswith(f"{folder}/chunk-") and parse_chunk_index(key) is not None
        ]
        return sort_chunk_keys(chunk_keys)

    async def get_chunk(self, key: str) -> bytes:
        try:
            data = await self.storage.get_file(key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to download chunk {key}: {e}") from e
        if not data:
            raise StorageError(f"Chunk {key} is empty")
        return data
