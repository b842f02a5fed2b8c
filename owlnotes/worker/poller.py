"""
Job poller: claim one job, run it, resolve it.

Pollers are stateless between calls, any number of them may run against
the same database. The claim step guarantees a job runs in at most one
poller at a time; a poller that dies mid-job leaves the job to be
reclaimed once its processing deadline passes.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from owlnotes.analysis import Analyzer
from owlnotes.assembler import MediaAssembler
from owlnotes.db import get_session_factory
from owlnotes.db.jobs import (
    Job,
    JobOutcome,
    MeetingJobController,
    meeting_jobs_controller,
)
from owlnotes.llm import LLM
from owlnotes.logger import logger
from owlnotes.notify import EmailNotifier
from owlnotes.pipelines.meeting_job import MeetingJobPipeline
from owlnotes.pipelines.sink import PersistenceSink
from owlnotes.settings import settings
from owlnotes.storage import get_recordings_storage
from owlnotes.transcription import get_transcriber


class JobPoller:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: MeetingJobPipeline,
        jobs: MeetingJobController = meeting_jobs_controller,
        processing_timeout: int | None = None,
        max_attempts: int | None = None,
    ):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.jobs = jobs
        self.processing_timeout = processing_timeout
        self.max_attempts = max_attempts

    async def poll_once(self) -> Job | None:
        """Process at most one job. Returns the resolved job, or None if idle."""
        async with self.session_factory() as session:
            job = await self.jobs.claim_next(
                session,
                processing_timeout=self.processing_timeout,
                max_attempts=self.max_attempts,
            )
        if job is None:
            logger.info("No job to process")
            return None

        log = logger.bind(
            job_id=job.id, session_id=job.session_id, attempt=job.attempts
        )
        log.info("Processing job")
        try:
            result = await self.pipeline.run(job)
            outcome = JobOutcome.done(result.model_dump(mode="json"))
        except Exception as e:
            log.error("Job failed", error=str(e), exc_info=e)
            outcome = JobOutcome.failed(str(e) or e.__class__.__name__)

        async with self.session_factory() as session:
            return await self.jobs.resolve(
                session, job.id, outcome, attempt=job.attempts
            )

    async def poll(self, max_jobs: int | None = None) -> list[Job]:
        """Process jobs until none is left, or `max_jobs` were processed."""
        processed = []
        while max_jobs is None or len(processed) < max_jobs:
            job = await self.poll_once()
            if job is None:
                break
            processed.append(job)
        return processed


def build_poller(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> JobPoller:
    """Wire every adapter from settings."""
    session_factory = session_factory or get_session_factory()
    storage = get_recordings_storage()
    pipeline = MeetingJobPipeline(
        assembler=MediaAssembler(storage),
        transcriber=get_transcriber(),
        analyzer=Analyzer(LLM(settings)),
        sink=PersistenceSink(session_factory),
        notifier=EmailNotifier(),
    )
    return JobPoller(
        session_factory,
        pipeline,
        processing_timeout=settings.JOB_PROCESSING_TIMEOUT,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
    )
