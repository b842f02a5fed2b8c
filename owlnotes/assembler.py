"""
Media assembler: turns the stored inputs of a job into one audio artifact.

Sequential chunks of a recording are concatenated; simultaneous tracks of a
meeting are mixed. Either way the inputs are fetched into a scoped
temporary directory, merged, encoded, and the result uploaded to the store.
The directory lives for as long as the caller stays inside the context
manager, so later stages can still read the merged file from disk, and is
removed on every exit path.
"""

import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Literal

import av
from pydantic import BaseModel

from owlnotes.audio import (
    AudioFileWriter,
    concat_tracks_pyav,
    detect_sample_rate_from_tracks,
    mixdown_tracks_pyav,
)
from owlnotes.db.jobs import Job
from owlnotes.errors import AssemblyError, StorageError
from owlnotes.logger import logger
from owlnotes.settings import settings
from owlnotes.storage import Storage
from owlnotes.storage.chunks import content_type_for, sort_chunk_keys
from owlnotes.utils import generate_uuid4

USER_TRACK = "user_audio"
REMOTE_TRACK = "remote_audio"


class AudioInput(BaseModel):
    """One stored input. `data` short-circuits the download when present."""

    key: str
    data: bytes | None = None
    label: str | None = None


class AssembledArtifact(BaseModel):
    path: Path
    key: str
    url: str
    duration: float
    mode: Literal["concat", "mix"]

    @property
    def size(self) -> int:
        return self.path.stat().st_size


class MediaAssembler:
    def __init__(
        self,
        storage: Storage,
        tmp_dir: str | None = None,
        output_format: str | None = None,
        merged_prefix: str | None = None,
        url_expiration: int | None = None,
    ):
        self.storage = storage
        self.tmp_dir = tmp_dir if tmp_dir is not None else settings.TMP_DIR
        self.output_format = output_format or settings.MERGED_FORMAT
        if self.output_format not in ("mp3", "wav"):
            raise ValueError("Only mp3 and wav outputs are supported")
        self.merged_prefix = (merged_prefix or settings.MERGED_PREFIX).strip("/")
        self.url_expiration = url_expiration or settings.MERGED_URL_EXPIRATION

    def merged_key(self, session_id: str) -> str:
        return (
            f"{self.merged_prefix}/merged-{session_id}-{generate_uuid4()}"
            f".{self.output_format}"
        )

    def open(self, job: Job):
        """Assemble the inputs of a job, mixing when they carry track labels."""
        if job.track_labels is None:
            return self.assemble(job.chunk_keys, job.session_id)
        tracks = [
            AudioInput(key=key, label=label)
            for key, label in zip(job.chunk_keys, job.track_labels)
        ]
        return self.mix(tracks, job.session_id)

    @asynccontextmanager
    async def assemble(
        self, chunks: list[str | AudioInput], session_id: str
    ) -> AsyncIterator[AssembledArtifact]:
        inputs = [_as_input(chunk) for chunk in chunks or []]
        if not inputs:
            raise AssemblyError("No chunks to assemble")

        by_key = {item.key: item for item in inputs}
        ordered = [by_key[key] for key in sort_chunk_keys([i.key for i in inputs])]
        if len(by_key) != len(inputs):
            # duplicate keys, sorting through a dict would drop some
            ordered = inputs

        async with self._scoped(session_id) as tmp:
            paths = await self._fetch(ordered, tmp)
            artifact = await self._merge(paths, tmp, session_id, mode="concat")
            yield artifact

    @asynccontextmanager
    async def mix(
        self, tracks: list[AudioInput], session_id: str
    ) -> AsyncIterator[AssembledArtifact]:
        if not tracks:
            raise AssemblyError("No tracks to mix")
        if not any(track.label == USER_TRACK for track in tracks):
            raise AssemblyError(f"{USER_TRACK} track is required for mixing")

        # user track first, the mix itself is order independent
        ordered = sorted(tracks, key=lambda t: t.label != USER_TRACK)

        async with self._scoped(session_id) as tmp:
            paths = await self._fetch(ordered, tmp)
            artifact = await self._merge(paths, tmp, session_id, mode="mix")
            yield artifact

    @asynccontextmanager
    async def _scoped(self, session_id: str) -> AsyncIterator[Path]:
        if self.tmp_dir:
            Path(self.tmp_dir).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"owlnotes-{session_id}-", dir=self.tmp_dir
        ) as tmp:
            logger.debug("Assembly workspace created", path=tmp)
            yield Path(tmp)
        logger.debug("Assembly workspace removed", path=tmp)

    async def _fetch(self, inputs: list[AudioInput], tmp: Path) -> list[Path]:
        paths = []
        for idx, item in enumerate(inputs):
            path = tmp / f"{idx:05d}-{Path(item.key).name}"
            if item.data is not None:
                path.write_bytes(item.data)
            else:
                try:
                    with open(path, "wb") as f:
                        await self.storage.stream_to_fileobj(item.key, f)
                except StorageError:
                    raise
                except Exception as e:
                    raise StorageError(f"Failed to download {item.key}: {e}") from e
            if path.stat().st_size == 0:
                raise StorageError(f"Input {item.key} is empty")
            paths.append(path)
        logger.info("Inputs fetched", count=len(paths))
        return paths

    async def _merge(
        self,
        paths: list[Path],
        tmp: Path,
        session_id: str,
        mode: Literal["concat", "mix"],
    ) -> AssembledArtifact:
        sample_rate = detect_sample_rate_from_tracks(paths)
        if not sample_rate:
            raise AssemblyError("No decodable audio in inputs")

        output = tmp / f"merged.{self.output_format}"
        writer = AudioFileWriter(output)
        merge = concat_tracks_pyav if mode == "concat" else mixdown_tracks_pyav
        try:
            await merge(paths, writer, target_sample_rate=sample_rate)
            await writer.flush()
        except (av.error.FFmpegError, ValueError) as e:
            writer.close()
            raise AssemblyError(f"Failed to {mode} audio: {e}") from e

        if not writer.samples:
            raise AssemblyError("Merged audio is empty")

        key = self.merged_key(session_id)
        with open(output, "rb") as f:
            await self.storage.put_file(key, f, content_type=content_type_for(key))
        url = await self.storage.get_file_url(key, expires_in=self.url_expiration)

        logger.info(
            "Audio assembled",
            mode=mode,
            inputs=len(paths),
            key=key,
            duration=round(writer.duration, 3),
            sample_rate=sample_rate,
        )
        return AssembledArtifact(
            path=output, key=key, url=url, duration=writer.duration, mode=mode
        )


def _as_input(chunk: str | AudioInput) -> AudioInput:
    if isinstance(chunk, AudioInput):
        return chunk
    return AudioInput(key=chunk)
