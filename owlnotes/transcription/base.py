import asyncio

from prometheus_client import Counter, Histogram
from pydantic import BaseModel

from owlnotes.assembler import AssembledArtifact
from owlnotes.errors import TranscriptionError
from owlnotes.logger import logger
from owlnotes.settings import settings


class Transcript(BaseModel):
    text: str
    language: str | None = None


class Transcriber:
    """
    Turn a merged recording into text. Backends implement `_transcribe`;
    `transcribe` adds the timeout, metrics and error mapping.
    """

    m_seconds = Histogram(
        "owlnotes_transcription_seconds",
        "Time spent transcribing one recording",
        ["backend"],
    )
    m_outcome = Counter(
        "owlnotes_transcription_total",
        "Transcriptions by backend and outcome",
        ["backend", "outcome"],
    )

    def __init__(self, timeout: float | None = None):
        self.backend = self.__class__.__name__
        self.timeout = timeout or settings.TRANSCRIPT_TIMEOUT
        self.logger = logger.bind(transcriber=self.backend)

    async def transcribe(self, artifact: AssembledArtifact) -> Transcript:
        try:
            with self.m_seconds.labels(self.backend).time():
                result = await asyncio.wait_for(
                    self._transcribe(artifact), timeout=self.timeout
                )
        except asyncio.TimeoutError as e:
            self.m_outcome.labels(self.backend, "timeout").inc()
            raise TranscriptionError(
                f"Transcription timed out after {self.timeout}s"
            ) from e
        except TranscriptionError:
            self.m_outcome.labels(self.backend, "failure").inc()
            raise
        except Exception as e:
            self.m_outcome.labels(self.backend, "failure").inc()
            raise TranscriptionError(f"Transcription failed: {e}") from e

        self.m_outcome.labels(self.backend, "success").inc()
        self.logger.info(
            "Transcription done", key=artifact.key, characters=len(result.text)
        )
        return result

    async def _transcribe(self, artifact: AssembledArtifact) -> Transcript:
        raise NotImplementedError
