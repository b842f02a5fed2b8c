"""
Meeting job pipeline
====================

Runs one claimed job end to end:

1. assemble the stored audio into a single artifact (concat or mix)
2. transcribe the artifact
3. analyze the transcript (summary, structured note, recommendations)
4. write the results onto the meeting record
5. email the host

Stages run in order, inside the assembler's scope so the merged file stays
on disk until the email is sent. Steps 1-2 raise on failure and fail the
job, as does step 3 when there is no transcript to analyze. A failed
prompt only leaves its section empty; steps 4-5 only log.
"""

from typing import Any

from pydantic import BaseModel

from owlnotes.analysis import Analyzer
from owlnotes.assembler import MediaAssembler
from owlnotes.db.jobs import Job
from owlnotes.logger import logger
from owlnotes.notify import EmailNotifier
from owlnotes.pipelines.sink import PersistenceSink
from owlnotes.transcription import Transcriber
from owlnotes.utils.datetime import utcnow


class JobResult(BaseModel):
    merged_key: str
    audio_url: str
    duration: float
    analysis: dict[str, Any]
    meeting_id: str | None = None
    notified: bool = False


class MeetingJobPipeline:
    def __init__(
        self,
        assembler: MediaAssembler,
        transcriber: Transcriber,
        analyzer: Analyzer,
        sink: PersistenceSink,
        notifier: EmailNotifier,
    ):
        self.assembler = assembler
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.sink = sink
        self.notifier = notifier

    async def run(self, job: Job) -> JobResult:
        log = logger.bind(job_id=job.id, session_id=job.session_id)
        meta = job.meta

        log.info("Assembling audio", inputs=len(job.chunk_keys))
        async with self.assembler.open(job) as artifact:
            log.info("Transcribing", key=artifact.key)
            transcript = await self.transcriber.transcribe(artifact)

            log.info("Analyzing transcript")
            analysis = await self.analyzer.analyze(transcript.text)

            end_time = meta.end_time or utcnow()
            duration_ms = meta.resolve_duration_ms(end_time)
            if duration_ms is None:
                duration_ms = int(artifact.duration * 1000)

            meeting_id = await self.sink.persist(
                job, meta, artifact, analysis, end_time, duration_ms
            )
            notified = await self.notifier.notify(
                meta.host_email, analysis, artifact, meta, duration_ms
            )

            log.info(
                "Job pipeline done", meeting_id=meeting_id, notified=notified
            )
            return JobResult(
                merged_key=artifact.key,
                audio_url=artifact.url,
                duration=artifact.duration,
                analysis=analysis.to_payload(),
                meeting_id=meeting_id,
                notified=notified,
            )
