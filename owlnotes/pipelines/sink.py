import json
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from owlnotes.analysis import AnalysisResult
from owlnotes.assembler import REMOTE_TRACK, USER_TRACK, AssembledArtifact
from owlnotes.db.jobs import (
    Job,
    MeetingJobController,
    MeetingMeta,
    meeting_jobs_controller,
)
from owlnotes.db.meetings import MeetingController, meetings_controller
from owlnotes.errors import PersistenceError
from owlnotes.logger import logger


class PersistenceSink:
    """Write job results onto the meeting record.

    Failures are logged and reported as None, the job outcome does not
    depend on them.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        meetings: MeetingController = meetings_controller,
        jobs: MeetingJobController = meeting_jobs_controller,
    ):
        self.session_factory = session_factory
        self.meetings = meetings
        self.jobs = jobs

    def build_fields(
        self,
        job: Job,
        meta: MeetingMeta,
        artifact: AssembledArtifact,
        analysis: AnalysisResult,
        end_time: datetime,
        duration_ms: int | None,
    ) -> dict:
        fields = {
            "audio_link": artifact.url,
            "analysis_payload": json.dumps(analysis.to_payload()),
            "end_time": end_time,
            "duration_ms": duration_ms,
        }
        if meta.title:
            fields["title"] = meta.title
        if meta.start_time:
            fields["start_time"] = meta.start_time
        if job.track_labels is not None:
            tracks = list(zip(job.track_labels, job.chunk_keys))
            fields["host_audio"] = next(
                (key for label, key in tracks if label == USER_TRACK), None
            )
            fields["participant_audio"] = [
                key for label, key in tracks if label == REMOTE_TRACK
            ]
        return fields

    async def persist(
        self,
        job: Job,
        meta: MeetingMeta,
        artifact: AssembledArtifact,
        analysis: AnalysisResult,
        end_time: datetime,
        duration_ms: int | None = None,
    ) -> str | None:
        """Returns the meeting id written to, or None on failure."""
        log = logger.bind(job_id=job.id, session_id=job.session_id)
        fields = self.build_fields(job, meta, artifact, analysis, end_time, duration_ms)
        try:
            async with self.session_factory() as session:
                meeting_id = await self.meetings.resolve_meeting_id(session, job, meta)
                await self.meetings.persist_results(
                    session, meeting_id, fields, meeting_code=meta.meeting_code
                )
                if job.meeting_id != meeting_id:
                    await self.jobs.set_meeting_id(session, job.id, meeting_id)
        except PersistenceError as e:
            log.warning("Meeting results not persisted", error=str(e))
            return None
        except Exception as e:
            log.warning("Meeting results not persisted", error=str(e), exc_info=e)
            return None

        log.info("Meeting results persisted", meeting_id=meeting_id)
        return meeting_id
