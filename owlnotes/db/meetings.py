from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from owlnotes.db.base import MeetingModel
from owlnotes.db.jobs import Job, MeetingMeta
from owlnotes.errors import PersistenceError
from owlnotes.logger import logger
from owlnotes.utils.datetime import ensure_utc, utcnow

MEETING_FIELDS = (
    "title",
    "audio_link",
    "analysis_payload",
    "start_time",
    "end_time",
    "duration_ms",
    "host_audio",
    "participant_audio",
)


class Meeting(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    meeting_code: str | None = None
    title: str | None = None
    audio_link: str | None = None
    analysis_payload: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    host_audio: str | None = None
    participant_audio: list[str] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class MeetingController:
    async def get_by_id(self, session: AsyncSession, meeting_id: str) -> Meeting | None:
        query = (
            select(MeetingModel)
            .where(MeetingModel.id == meeting_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        row = result.scalar_one_or_none()
        if not row:
            return None
        return Meeting.model_validate(row)

    async def get_by_code(
        self, session: AsyncSession, meeting_code: str
    ) -> Meeting | None:
        query = select(MeetingModel).where(MeetingModel.meeting_code == meeting_code)
        result = await session.execute(query)
        row = result.scalar_one_or_none()
        if not row:
            return None
        return Meeting.model_validate(row)

    async def resolve_meeting_id(
        self, session: AsyncSession, job: Job, meta: MeetingMeta
    ) -> str:
        """Pick the meeting record a job writes to.

        Falls through job -> metadata -> existing record with the same
        meeting code -> session id. Nothing is written here, so every
        writer for the same job lands on the same primary key.
        """
        if job.meeting_id:
            return job.meeting_id
        if meta.meeting_id:
            return meta.meeting_id
        if meta.meeting_code:
            existing = await self.get_by_code(session, meta.meeting_code)
            if existing:
                return existing.id
        return job.session_id

    async def persist_results(
        self,
        session: AsyncSession,
        meeting_id: str,
        fields: dict[str, Any],
        meeting_code: str | None = None,
    ) -> Meeting:
        unknown = set(fields) - set(MEETING_FIELDS)
        if unknown:
            raise PersistenceError(f"Unknown meeting fields: {sorted(unknown)}")

        now = utcnow()
        try:
            if await self._update(session, meeting_id, fields, now):
                return await self.get_by_id(session, meeting_id)

            if await self._insert(session, meeting_id, fields, meeting_code, now):
                return await self.get_by_id(session, meeting_id)

            # another writer inserted the same id first
            if await self._update(session, meeting_id, fields, now):
                return await self.get_by_id(session, meeting_id)

            # the code belongs to a different record, keep ours without it
            if meeting_code and await self._insert(
                session, meeting_id, fields, None, now
            ):
                logger.warning(
                    "Meeting code already taken, stored without it",
                    meeting_id=meeting_id,
                    meeting_code=meeting_code,
                )
                return await self.get_by_id(session, meeting_id)

            raise PersistenceError(
                f"Meeting {meeting_id} could not be inserted or updated"
            )
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceError(f"Failed to persist meeting {meeting_id}: {e}") from e

    async def _insert(
        self,
        session: AsyncSession,
        meeting_id: str,
        fields: dict[str, Any],
        meeting_code: str | None,
        now: datetime,
    ) -> bool:
        session.add(
            MeetingModel(
                id=meeting_id,
                meeting_code=meeting_code,
                created_at=now,
                updated_at=now,
                **fields,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        logger.info("Meeting record created", meeting_id=meeting_id)
        return True

    async def _update(
        self,
        session: AsyncSession,
        meeting_id: str,
        fields: dict[str, Any],
        now: datetime,
    ) -> bool:
        query = (
            update(MeetingModel)
            .where(MeetingModel.id == meeting_id)
            .values(updated_at=now, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(query)
        await session.commit()
        if result.rowcount == 1:
            logger.info("Meeting record updated", meeting_id=meeting_id)
            return True
        return False


meetings_controller = MeetingController()
