"""
Transcription through an OpenAI compatible `/audio/transcriptions` endpoint.
"""

from openai import AsyncOpenAI

from owlnotes.assembler import AssembledArtifact
from owlnotes.transcription.auto import register
from owlnotes.transcription.base import Transcriber, Transcript


class OpenAITranscriber(Transcriber):
    def __init__(
        self,
        openai_api_key: str | None = None,
        openai_model: str = "whisper-1",
        openai_base_url: str | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not openai_api_key:
            raise ValueError("TRANSCRIPT_OPENAI_API_KEY required to use OpenAITranscriber")
        self.api_key = openai_api_key
        self.model = openai_model
        self.base_url = openai_base_url

    async def _transcribe(self, artifact: AssembledArtifact) -> Transcript:
        async with AsyncOpenAI(
            base_url=self.base_url,
            api_key=self.api_key,
            timeout=self.timeout,
            max_retries=0,
        ) as client:
            self.logger.debug(f"Try to transcribe audio {artifact.key}")
            with open(artifact.path, "rb") as audio_file:
                transcription = await client.audio.transcriptions.create(
                    file=audio_file,
                    model=self.model,
                )

        text = (transcription.text or "").strip()
        return Transcript(text=text, language=getattr(transcription, "language", None))


register("openai", OpenAITranscriber)
