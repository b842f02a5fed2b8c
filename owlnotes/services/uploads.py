"""
Upload side of the job lifecycle: store recorded audio, then enqueue a job.
"""

from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from owlnotes.assembler import USER_TRACK
from owlnotes.db.jobs import TRACK_LABELS, Job, MeetingMeta, meeting_jobs_controller
from owlnotes.errors import ValidationError
from owlnotes.logger import logger
from owlnotes.storage import Storage
from owlnotes.storage.chunks import ChunkStore, content_type_for


class UploadedTrack(BaseModel):
    label: str
    data: bytes
    ext: str = "webm"


async def upload_chunk(
    chunk_store: ChunkStore,
    session_id: str,
    index: int,
    data: bytes,
    ext: str | None = None,
) -> str:
    return await chunk_store.upload_chunk(session_id, index, data, ext=ext)


async def finalize_upload(
    session: AsyncSession,
    chunk_store: ChunkStore,
    session_id: str,
    meeting_meta: Any = None,
    meeting_id: str | None = None,
) -> Job:
    """Enqueue a concatenation job over every chunk stored for the session."""
    if not session_id:
        raise ValidationError("session_id required")

    chunk_keys = await chunk_store.list_chunk_keys(session_id)
    if not chunk_keys:
        raise ValidationError(f"No chunks uploaded for session {session_id}")

    if meeting_id is None:
        meeting_id = MeetingMeta.from_raw(meeting_meta).meeting_id

    job = await meeting_jobs_controller.enqueue(
        session,
        session_id=session_id,
        chunk_keys=chunk_keys,
        meeting_meta=meeting_meta,
        meeting_id=meeting_id,
    )
    logger.info(
        "Upload finalized", session_id=session_id, job_id=job.id, chunks=len(chunk_keys)
    )
    return job


async def finalize_tracks(
    session: AsyncSession,
    storage: Storage,
    session_id: str,
    tracks: list[UploadedTrack],
    meeting_meta: Any = None,
    prefix: str | None = None,
) -> Job:
    """Store simultaneous tracks of a meeting and enqueue a mixing job."""
    if not session_id:
        raise ValidationError("session_id required")
    if not any(track.label == USER_TRACK for track in tracks):
        raise ValidationError(f"{USER_TRACK} track is required")
    for track in tracks:
        if track.label not in TRACK_LABELS:
            raise ValidationError(f"Unknown track label {track.label}")
        if not track.data:
            raise ValidationError(f"{track.label} track is empty")

    folder = ChunkStore(storage, prefix=prefix).session_folder(session_id)
    counters: dict[str, int] = {}
    keys, labels = [], []
    for track in tracks:
        n = counters.get(track.label, 0)
        counters[track.label] = n + 1
        key = f"{folder}/{track.label}-{n}.{track.ext}"
        await storage.put_file(key, track.data, content_type=content_type_for(key))
        keys.append(key)
        labels.append(track.label)

    job = await meeting_jobs_controller.enqueue(
        session,
        session_id=session_id,
        chunk_keys=keys,
        meeting_meta=meeting_meta,
        meeting_id=MeetingMeta.from_raw(meeting_meta).meeting_id,
        track_labels=labels,
    )
    logger.info(
        "Tracks finalized", session_id=session_id, job_id=job.id, tracks=len(keys)
    )
    return job
