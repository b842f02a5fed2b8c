import json
from unittest.mock import MagicMock, patch

import pytest

from owlnotes.analysis import Analyzer
from owlnotes.db.jobs import JobStatus, meeting_jobs_controller
from owlnotes.db.meetings import meetings_controller
from owlnotes.errors import NotificationError, PersistenceError, TranscriptionError
from owlnotes.notify import EmailNotifier
from owlnotes.pipelines.meeting_job import MeetingJobPipeline
from owlnotes.pipelines.sink import PersistenceSink
from owlnotes.services.uploads import UploadedTrack, finalize_tracks, finalize_upload
from owlnotes.storage.chunks import ChunkStore
from owlnotes.worker.poller import JobPoller

META = {
    "googleUser": {"email": "host@example.com", "name": "Dana"},
    "meetingInfo": {"meetingTitle": "Weekly sync", "meetingCode": "abc-defg-hij"},
    "participants": "Dana, Lee",
    "durationMs": 90000,
}


@pytest.fixture
def notifier():
    notifier = EmailNotifier(smtp_host="smtp.test")
    notifier._send = MagicMock()
    return notifier


@pytest.fixture
def make_poller(session_factory, assembler, fake_transcriber, fake_llm, notifier):
    def make(transcriber=None, llm=None):
        pipeline = MeetingJobPipeline(
            assembler=assembler,
            transcriber=transcriber or fake_transcriber,
            analyzer=Analyzer(
                llm or fake_llm, retry_attempts=1, retry_backoff_interval=0.001
            ),
            sink=PersistenceSink(session_factory),
            notifier=notifier,
        )
        return JobPoller(session_factory, pipeline)

    return make


@pytest.fixture
async def chunked_job(session, memory_storage, tone):
    chunk_store = ChunkStore(memory_storage, extension="wav")
    for index, seconds in ((1, 0.5), (0, 0.5), (2, 0.5)):
        await chunk_store.upload_chunk("s1", index, tone(seconds))
    return await finalize_upload(session, chunk_store, "s1", META)


@pytest.mark.asyncio
async def test_poll_once_when_idle(make_poller):
    assert await make_poller().poll_once() is None


@pytest.mark.asyncio
async def test_job_runs_end_to_end(
    make_poller, chunked_job, session, memory_storage, notifier, work_dir
):
    job = await make_poller().poll_once()

    assert job.id == chunked_job.id
    assert job.status == JobStatus.DONE
    assert job.error is None
    assert job.attempts == 1
    result = job.result
    assert result["merged_key"].startswith("merged/merged-s1-")
    assert result["merged_key"] in memory_storage.objects
    assert result["duration"] == pytest.approx(1.5, abs=0.05)
    assert result["analysis"]["summary"] == "the summary"
    assert result["analysis"]["transcript"] == "hello from the meeting"
    assert result["notified"] is True
    notifier._send.assert_called_once()
    assert notifier._send.call_args[0][0]["To"] == "host@example.com"

    # no meeting id anywhere: the session id is the record key
    assert result["meeting_id"] == "s1"
    meeting = await meetings_controller.get_by_id(session, "s1")
    assert meeting.audio_link == result["audio_url"]
    assert meeting.title == "Weekly sync"
    assert meeting.meeting_code == "abc-defg-hij"
    assert meeting.duration_ms == 90000
    assert json.loads(meeting.analysis_payload)["summary"] == "the summary"
    stored = await meeting_jobs_controller.get_by_id(session, job.id)
    assert stored.meeting_id == "s1"

    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_job_with_meeting_id_updates_that_meeting(
    make_poller, session, memory_storage, tone
):
    await meetings_controller.persist_results(session, "meeting-7", {"title": "Old"})
    chunk_store = ChunkStore(memory_storage, extension="wav")
    await chunk_store.upload_chunk("s2", 0, tone(0.3))
    await finalize_upload(
        session, chunk_store, "s2", {**META, "meeting_id": "meeting-7"}
    )

    job = await make_poller().poll_once()

    assert job.status == JobStatus.DONE
    meeting = await meetings_controller.get_by_id(session, "meeting-7")
    assert meeting.audio_link == job.result["audio_url"]
    assert meeting.title == "Weekly sync"
    assert await meetings_controller.get_by_id(session, "s2") is None


@pytest.mark.asyncio
async def test_transcription_failure_fails_job_and_cleans_up(
    make_poller, make_transcriber, chunked_job, notifier, work_dir, session
):
    transcriber = make_transcriber(error=RuntimeError("whisper unavailable"))

    job = await make_poller(transcriber=transcriber).poll_once()

    assert job.status == JobStatus.FAILED
    assert "whisper unavailable" in job.error
    assert job.result is None
    assert transcriber.seen_paths
    assert not transcriber.seen_paths[0].exists()
    assert list(work_dir.iterdir()) == []
    notifier._send.assert_not_called()
    assert await meetings_controller.get_by_id(session, "s1") is None


@pytest.mark.asyncio
async def test_failed_analysis_still_stores_transcript(
    make_poller, make_llm, chunked_job, session, notifier
):
    llm = make_llm(fail_markers=("<transcript>",))

    job = await make_poller(llm=llm).poll_once()

    assert job.status == JobStatus.DONE
    analysis = job.result["analysis"]
    assert analysis["transcript"] == "hello from the meeting"
    assert set(analysis["errors"]) == {"summary", "structured_note", "recommendations"}
    meeting = await meetings_controller.get_by_id(session, "s1")
    payload = json.loads(meeting.analysis_payload)
    assert payload["transcript"] == "hello from the meeting"
    notifier._send.assert_called_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kind, marker",
    [
        ("summary", "Summarize"),
        ("structured_note", "structured notes"),
        ("recommendations", "recommendations"),
    ],
)
async def test_partial_analysis_still_done(
    make_poller, make_llm, chunked_job, kind, marker
):
    llm = make_llm(fail_markers=(marker,))

    job = await make_poller(llm=llm).poll_once()

    assert job.status == JobStatus.DONE
    assert job.result["analysis"][kind] == ""
    assert list(job.result["analysis"]["errors"]) == [kind]


@pytest.mark.asyncio
async def test_missing_chunk_fails_job(make_poller, session, memory_storage):
    await meeting_jobs_controller.enqueue(
        session, session_id="s9", chunk_keys=["recordings/s9/chunk-0.wav"]
    )

    job = await make_poller().poll_once()

    assert job.status == JobStatus.FAILED
    assert "recordings/s9/chunk-0.wav" in job.error


@pytest.mark.asyncio
async def test_notification_failure_still_done(make_poller, chunked_job, notifier):
    notifier._send.side_effect = NotificationError("mailbox full")

    job = await make_poller().poll_once()

    assert job.status == JobStatus.DONE
    assert job.result["notified"] is False


@pytest.mark.asyncio
async def test_missing_recipient_still_done(make_poller, session, memory_storage, tone):
    chunk_store = ChunkStore(memory_storage, extension="wav")
    await chunk_store.upload_chunk("s3", 0, tone(0.3))
    await finalize_upload(session, chunk_store, "s3", "not even json")

    job = await make_poller().poll_once()

    assert job.status == JobStatus.DONE
    assert job.result["notified"] is False
    meeting = await meetings_controller.get_by_id(session, "s3")
    assert meeting.audio_link == job.result["audio_url"]


@pytest.mark.asyncio
async def test_persistence_failure_still_done(make_poller, chunked_job, notifier):
    with patch.object(
        meetings_controller,
        "persist_results",
        side_effect=PersistenceError("database unavailable"),
    ):
        job = await make_poller().poll_once()

    assert job.status == JobStatus.DONE
    assert job.result["meeting_id"] is None
    notifier._send.assert_called_once()


@pytest.mark.asyncio
async def test_mixing_job_records_tracks(make_poller, session, memory_storage, tone):
    queued = await finalize_tracks(
        session,
        memory_storage,
        "s4",
        [
            UploadedTrack(label="user_audio", data=tone(0.5), ext="wav"),
            UploadedTrack(label="remote_audio", data=tone(1.0), ext="wav"),
        ],
        META,
    )

    job = await make_poller().poll_once()

    assert job.id == queued.id
    assert job.status == JobStatus.DONE
    assert job.result["duration"] == pytest.approx(1.0, abs=0.1)
    meeting = await meetings_controller.get_by_id(session, "s4")
    assert meeting.host_audio == "recordings/s4/user_audio-0.wav"
    assert meeting.participant_audio == ["recordings/s4/remote_audio-0.wav"]


@pytest.mark.asyncio
async def test_poll_processes_until_idle(make_poller, session, memory_storage, tone):
    chunk_store = ChunkStore(memory_storage, extension="wav")
    for session_id in ("a", "b", "c"):
        await chunk_store.upload_chunk(session_id, 0, tone(0.2))
        await finalize_upload(session, chunk_store, session_id, META)

    limited = await make_poller().poll(max_jobs=2)
    rest = await make_poller().poll()

    assert len(limited) == 2
    assert len(rest) == 1
    assert all(job.status == JobStatus.DONE for job in limited + rest)


@pytest.mark.asyncio
async def test_unexpected_error_fails_job(make_poller, chunked_job):
    poller = make_poller()
    with patch.object(
        poller.pipeline.transcriber,
        "transcribe",
        side_effect=TranscriptionError("boom"),
    ):
        job = await poller.poll_once()

    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
