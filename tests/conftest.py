from pathlib import Path

import av
import numpy as np
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from owlnotes.assembler import MediaAssembler
from owlnotes.storage.base import FileResult, Storage, StorageError
from owlnotes.transcription.base import Transcriber, Transcript


@pytest.fixture(scope="session", autouse=True)
def settings_configuration():
    from owlnotes.settings import settings

    settings.STORAGE_BACKEND = "local"
    settings.TRANSCRIPT_BACKEND = "openai"
    settings.TRANSCRIPT_OPENAI_API_KEY = "test-transcript-key"
    settings.LLM_API_KEY = "test-llm-key"
    settings.SMTP_HOST = None
    settings.TMP_DIR = None
    settings.ANALYSIS_PROMPTS_FILE = None


@pytest.fixture
async def engine(tmp_path):
    from owlnotes.db import create_tables

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'owlnotes.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


class MemoryStorage(Storage):
    """Storage keeping objects in a dict."""

    def __init__(self):
        super().__init__()
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}

    async def _put_file(self, filename, data, *, bucket=None, content_type=None):
        if not isinstance(data, bytes):
            data = data.read()
        self.objects[filename] = data
        self.content_types[filename] = content_type
        return FileResult(filename=filename, url=f"memory://{filename}")

    async def _get_file_url(
        self, filename, operation="get_object", expires_in=3600, *, bucket=None
    ):
        return f"memory://{filename}"

    async def _get_file(self, filename, *, bucket=None):
        if filename not in self.objects:
            raise StorageError(f"No such key: {filename}")
        return self.objects[filename]

    async def _delete_file(self, filename, *, bucket=None):
        self.objects.pop(filename, None)

    async def _list_objects(self, prefix="", *, bucket=None):
        return sorted(key for key in self.objects if key.startswith(prefix))


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def assembler(memory_storage, work_dir):
    return MediaAssembler(memory_storage, tmp_dir=str(work_dir), output_format="wav")


def write_tone(
    path: Path,
    seconds: float,
    sample_rate: int = 16000,
    frequency: float = 440.0,
) -> bytes:
    """Write a mono sine tone as wav, returns the file content."""
    samples = int(seconds * sample_rate)
    t = np.arange(samples) / sample_rate
    data = (0.3 * np.sin(2 * np.pi * frequency * t) * 32767).astype(np.int16)

    with av.open(str(path), "w", format="wav") as container:
        stream = container.add_stream("pcm_s16le", rate=sample_rate)
        frame = av.AudioFrame.from_ndarray(
            data.reshape(1, -1), format="s16", layout="mono"
        )
        frame.sample_rate = sample_rate
        frame.pts = 0
        for packet in stream.encode(frame):
            container.mux(packet)
        for packet in stream.encode(None):
            container.mux(packet)
    return path.read_bytes()


@pytest.fixture
def tone(tmp_path):
    """Factory: tone(seconds, sample_rate=16000, frequency=440) -> wav bytes"""
    counter = {"n": 0}

    def make(seconds: float, sample_rate: int = 16000, frequency: float = 440.0):
        counter["n"] += 1
        path = tmp_path / f"tone-{counter['n']}.wav"
        return write_tone(path, seconds, sample_rate, frequency)

    return make


class FakeTranscriber(Transcriber):
    def __init__(self, text: str = "hello from the meeting", error=None, **kwargs):
        super().__init__(**kwargs)
        self.text = text
        self.error = error
        self.seen_paths = []

    async def _transcribe(self, artifact):
        self.seen_paths.append(artifact.path)
        assert artifact.path.exists()
        if self.error:
            raise self.error
        return Transcript(text=self.text)


class FakeLLM:
    """LLM double answering per prompt marker, optionally failing some."""

    def __init__(self, fail_markers: tuple[str, ...] = ()):
        self.fail_markers = fail_markers
        self.prompts = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        for marker in self.fail_markers:
            if marker in prompt:
                raise RuntimeError(f"llm down for {marker}")
        if "Summarize" in prompt:
            return "the summary"
        if "structured notes" in prompt:
            return "the structured note"
        return "the recommendations"


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def make_transcriber():
    return FakeTranscriber
