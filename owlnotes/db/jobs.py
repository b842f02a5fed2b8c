"""
Meeting processing jobs: durable records and their status lifecycle.

    pending ──claim──▶ processing ──resolve──▶ done | failed
                           │
                           └─ deadline passed ─▶ reclaimable (attempts < cap)
                                                 or failed (attempts == cap)

Every transition is one conditional UPDATE on a single row. A claim is
conditioned on the (status, attempts) pair the poller observed, so two
pollers racing for the same job cannot both win, and `attempts` doubles as
a fencing token for late resolves from a poller whose claim went stale.
"""

import enum
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import sqlalchemy as sa
from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic_core import PydanticSerializationError, to_jsonable_python
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from owlnotes.db.base import MeetingJobModel
from owlnotes.errors import JobNotFoundError, ValidationError
from owlnotes.logger import logger
from owlnotes.settings import settings
from owlnotes.utils import generate_uuid4
from owlnotes.utils.datetime import ensure_utc, parse_datetime_with_timezone, utcnow


class JobStatus(enum.StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.DONE, JobStatus.FAILED)

TRACK_LABELS = ("user_audio", "remote_audio")


class MeetingMeta(BaseModel):
    """Typed view over the opaque meeting metadata carried by a job.

    Accepts both the flat snake_case form and the nested form sent by the
    recording client (`googleUser`, `meetingInfo`, camelCase times).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    meeting_id: str | None = Field(
        default=None, validation_alias=AliasChoices("meeting_id", "meetingId")
    )
    meeting_code: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "meeting_code", AliasPath("meetingInfo", "meetingCode")
        ),
    )
    title: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "title", "meeting_title", AliasPath("meetingInfo", "meetingTitle")
        ),
    )
    host_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("host_name", AliasPath("googleUser", "name")),
    )
    host_email: str | None = Field(
        default=None,
        validation_alias=AliasChoices("host_email", AliasPath("googleUser", "email")),
    )
    participants: list[str] = Field(default_factory=list)
    start_time: datetime | None = Field(
        default=None, validation_alias=AliasChoices("start_time", "startTime")
    )
    end_time: datetime | None = Field(
        default=None, validation_alias=AliasChoices("end_time", "endTime")
    )
    duration_ms: int | None = Field(
        default=None, validation_alias=AliasChoices("duration_ms", "durationMs")
    )

    @field_validator(
        "meeting_id", "meeting_code", "title", "host_name", "host_email", mode="before"
    )
    @classmethod
    def _lenient_str(cls, value):
        # numeric ids are common from javascript clients
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return None

    @field_validator("participants", mode="before")
    @classmethod
    def _split_participants(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        if isinstance(value, list):
            names = []
            for item in value:
                if isinstance(item, dict):
                    item = item.get("name") or item.get("email")
                if item:
                    names.append(str(item).strip())
            return names
        return []

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _lenient_datetime(cls, value):
        if value is None or isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, (int, float)):
            # epoch milliseconds from javascript clients
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        try:
            return parse_datetime_with_timezone(str(value))
        except ValueError:
            return None

    @field_validator("duration_ms", mode="before")
    @classmethod
    def _lenient_duration(cls, value):
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_raw(cls, raw: Any) -> "MeetingMeta":
        """Parse job metadata, falling back to defaults when it is unusable."""
        if raw is None:
            return cls()
        try:
            if isinstance(raw, (str, bytes)):
                raw = json.loads(raw)
            if not isinstance(raw, dict):
                raise ValueError(f"expected an object, got {type(raw).__name__}")
            return cls.model_validate(raw)
        except ValueError as e:
            logger.warning("Unusable meeting metadata, using defaults", error=str(e))
            return cls()

    def resolve_duration_ms(self, end_time: datetime) -> int | None:
        if self.duration_ms is not None:
            return self.duration_ms
        if self.start_time is None:
            return None
        end = self.end_time or end_time
        return max(0, int((end - self.start_time).total_seconds() * 1000))


class Job(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_uuid4)
    session_id: str
    meeting_id: str | None = None
    chunk_keys: list[str]
    track_labels: list[str] | None = None
    meeting_meta: Any = None
    status: JobStatus = JobStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    processing_deadline: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("processing_deadline", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_multitrack(self) -> bool:
        return self.track_labels is not None

    @property
    def meta(self) -> MeetingMeta:
        return MeetingMeta.from_raw(self.meeting_meta)


class JobOutcome(BaseModel):
    status: Literal[JobStatus.DONE, JobStatus.FAILED]
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def done(cls, result: dict[str, Any]) -> "JobOutcome":
        return cls(status=JobStatus.DONE, result=result)

    @classmethod
    def failed(cls, error: str) -> "JobOutcome":
        return cls(status=JobStatus.FAILED, error=error)


class MeetingJobController:
    async def enqueue(
        self,
        session: AsyncSession,
        session_id: str | None,
        chunk_keys: list[str] | None,
        meeting_meta: Any = None,
        meeting_id: str | None = None,
        track_labels: list[str] | None = None,
    ) -> Job:
        if not session_id:
            raise ValidationError("session_id required")
        if not chunk_keys:
            raise ValidationError("chunk_keys must not be empty")
        if track_labels is not None:
            if len(track_labels) != len(chunk_keys):
                raise ValidationError("track_labels must match chunk_keys one to one")
            unknown = set(track_labels) - set(TRACK_LABELS)
            if unknown:
                raise ValidationError(f"unknown track labels: {sorted(unknown)}")

        now = utcnow()
        job = Job(
            session_id=session_id,
            meeting_id=meeting_id,
            chunk_keys=list(chunk_keys),
            track_labels=list(track_labels) if track_labels is not None else None,
            meeting_meta=self._storable_meta(meeting_meta),
            created_at=now,
            updated_at=now,
        )
        session.add(MeetingJobModel(**job.model_dump()))
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "Job enqueued",
            job_id=job.id,
            session_id=session_id,
            chunks=len(job.chunk_keys),
            multitrack=job.is_multitrack,
        )
        return job

    @staticmethod
    def _storable_meta(meeting_meta: Any) -> Any:
        """JSON-ready copy of the metadata; datetimes become ISO strings."""
        try:
            value = to_jsonable_python(meeting_meta)
            json.dumps(value)
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise ValidationError(f"meeting_meta cannot be stored as JSON: {e}") from e
        return value

    async def get_by_id(self, session: AsyncSession, job_id: str) -> Job | None:
        query = (
            select(MeetingJobModel)
            .where(MeetingJobModel.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        row = result.scalar_one_or_none()
        if not row:
            return None
        return Job.model_validate(row)

    async def list_by_status(
        self, session: AsyncSession, status: JobStatus, limit: int = 100
    ) -> list[Job]:
        query = (
            select(MeetingJobModel)
            .where(MeetingJobModel.status == status)
            .order_by(MeetingJobModel.created_at, MeetingJobModel.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        return [Job.model_validate(row) for row in result.scalars().all()]

    async def claim_next(
        self,
        session: AsyncSession,
        now: datetime | None = None,
        processing_timeout: int | None = None,
        max_attempts: int | None = None,
        candidates: int | None = None,
    ) -> Job | None:
        """Claim the oldest eligible job, or return None.

        Eligible: pending jobs, and processing jobs whose deadline passed.
        Losing a race on one candidate moves on to the next one; a job is
        only returned when this call's conditional update succeeded.
        """
        now = now or utcnow()
        processing_timeout = processing_timeout or settings.JOB_PROCESSING_TIMEOUT
        max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        candidates = candidates or settings.JOB_CLAIM_CANDIDATES

        query = (
            select(MeetingJobModel)
            .where(
                sa.or_(
                    MeetingJobModel.status == JobStatus.PENDING,
                    sa.and_(
                        MeetingJobModel.status == JobStatus.PROCESSING,
                        MeetingJobModel.processing_deadline < now,
                    ),
                )
            )
            .order_by(MeetingJobModel.created_at, MeetingJobModel.id)
            .limit(candidates)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        observed = [Job.model_validate(row) for row in result.scalars().all()]

        for job in observed:
            if job.status == JobStatus.PROCESSING and job.attempts >= max_attempts:
                await self._fail_exhausted(session, job, now)
                continue

            claimed = await self._try_claim(session, job, now, processing_timeout)
            if claimed:
                return claimed

        return None

    async def _try_claim(
        self,
        session: AsyncSession,
        job: Job,
        now: datetime,
        processing_timeout: int,
    ) -> Job | None:
        query = (
            update(MeetingJobModel)
            .where(
                MeetingJobModel.id == job.id,
                MeetingJobModel.status == job.status,
                MeetingJobModel.attempts == job.attempts,
            )
            .values(
                status=JobStatus.PROCESSING,
                attempts=MeetingJobModel.attempts + 1,
                processing_deadline=now + timedelta(seconds=processing_timeout),
                updated_at=max(now, job.updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(query)
        await session.commit()

        if result.rowcount != 1:
            logger.info("Job claimed by another poller", job_id=job.id)
            return None

        if job.status == JobStatus.PROCESSING:
            logger.warning(
                "Reclaimed stale job",
                job_id=job.id,
                attempt=job.attempts + 1,
                deadline=job.processing_deadline.isoformat()
                if job.processing_deadline
                else None,
            )
        else:
            logger.info("Job claimed", job_id=job.id, attempt=job.attempts + 1)

        return await self.get_by_id(session, job.id)

    async def _fail_exhausted(self, session: AsyncSession, job: Job, now: datetime):
        error = (
            f"processing deadline exceeded after {job.attempts} attempt(s); "
            "giving up"
        )
        query = (
            update(MeetingJobModel)
            .where(
                MeetingJobModel.id == job.id,
                MeetingJobModel.status == JobStatus.PROCESSING,
                MeetingJobModel.attempts == job.attempts,
            )
            .values(
                status=JobStatus.FAILED,
                error=error,
                processing_deadline=None,
                updated_at=max(now, job.updated_at),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(query)
        await session.commit()
        if result.rowcount == 1:
            logger.error("Stale job failed", job_id=job.id, attempts=job.attempts)

    async def resolve(
        self,
        session: AsyncSession,
        job_id: str,
        outcome: JobOutcome,
        attempt: int | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Move a processing job to done/failed.

        Resolving a job that is already terminal is a no-op. When `attempt`
        is given, the update only applies if the job was not reclaimed
        since that claim.
        """
        job = await self.get_by_id(session, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.is_terminal:
            logger.info(
                "Job already resolved, ignoring", job_id=job_id, status=job.status
            )
            return job
        if job.status == JobStatus.PENDING:
            raise ValidationError(f"Job {job_id} is pending, claim it first")

        now = now or utcnow()
        values: dict[str, Any] = {
            "status": outcome.status,
            "processing_deadline": None,
            "updated_at": max(now, job.updated_at),
        }
        if outcome.status == JobStatus.DONE:
            values["result"] = outcome.result or {}
            values["error"] = None
        else:
            values["error"] = outcome.error or "unknown error"

        conditions = [
            MeetingJobModel.id == job_id,
            MeetingJobModel.status == JobStatus.PROCESSING,
        ]
        if attempt is not None:
            conditions.append(MeetingJobModel.attempts == attempt)

        query = (
            update(MeetingJobModel)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(query)
        await session.commit()

        current = await self.get_by_id(session, job_id)
        if result.rowcount != 1:
            logger.warning(
                "Resolve ignored, job changed since claim",
                job_id=job_id,
                attempt=attempt,
                status=current.status,
                current_attempt=current.attempts,
            )
        else:
            logger.info("Job resolved", job_id=job_id, status=outcome.status)
        return current

    async def set_meeting_id(
        self, session: AsyncSession, job_id: str, meeting_id: str
    ) -> None:
        query = (
            update(MeetingJobModel)
            .where(MeetingJobModel.id == job_id)
            .values(meeting_id=meeting_id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(query)
        await session.commit()


meeting_jobs_controller = MeetingJobController()
