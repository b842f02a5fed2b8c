import asyncio

from pydantic import BaseModel

from owlnotes.analysis.prompts import ANALYSIS_KINDS, load_prompts, render_prompt
from owlnotes.errors import AnalysisError
from owlnotes.llm import LLM
from owlnotes.logger import logger
from owlnotes.settings import settings
from owlnotes.utils.retry import retry


class AnalysisSection(BaseModel):
    kind: str
    content: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AnalysisResult(BaseModel):
    transcript: str
    sections: dict[str, AnalysisSection]

    @property
    def errors(self) -> dict[str, str]:
        return {
            kind: section.error
            for kind, section in self.sections.items()
            if section.error is not None
        }

    def content(self, kind: str) -> str:
        section = self.sections.get(kind)
        return section.content if section else ""

    def to_payload(self) -> dict:
        payload = {"transcript": self.transcript}
        for kind, section in self.sections.items():
            payload[kind] = section.content
        payload["errors"] = self.errors
        return payload


class Analyzer:
    def __init__(
        self,
        llm: LLM,
        prompts: dict[str, str] | None = None,
        retry_attempts: int | None = None,
        retry_backoff_interval: float = 1.0,
    ):
        self.llm = llm
        self.prompts = prompts or load_prompts(settings.ANALYSIS_PROMPTS_FILE)
        self.retry_attempts = retry_attempts or settings.ANALYSIS_RETRY_ATTEMPTS
        self.retry_backoff_interval = retry_backoff_interval

    async def analyze(self, transcript: str | None) -> AnalysisResult:
        if not transcript or not transcript.strip():
            raise AnalysisError("Transcript is empty, nothing to analyze")

        sections = await asyncio.gather(
            *[self._run_prompt(kind, transcript) for kind in ANALYSIS_KINDS]
        )
        result = AnalysisResult(
            transcript=transcript,
            sections={section.kind: section for section in sections},
        )

        # still returned, the transcript is persisted without analysis
        if not any(section.ok for section in sections):
            logger.error("Every analysis prompt failed", errors=result.errors)
        elif result.errors:
            logger.warning("Partial analysis", failed=sorted(result.errors))
        else:
            logger.info("Analysis done", kinds=list(result.sections))
        return result

    async def _run_prompt(self, kind: str, transcript: str) -> AnalysisSection:
        prompt = render_prompt(self.prompts[kind], transcript)
        try:
            content = await retry(self.llm.complete)(
                prompt,
                retry_attempts=self.retry_attempts,
                retry_backoff_interval=self.retry_backoff_interval,
                retry_timeout=settings.LLM_TIMEOUT * self.retry_attempts,
            )
        except Exception as e:
            logger.error("Analysis prompt failed", kind=kind, error=str(e))
            return AnalysisSection(kind=kind, error=str(e))
        return AnalysisSection(kind=kind, content=content)
