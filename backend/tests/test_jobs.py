"""Tests for the job ledger: queueing, bounded retries, backoff and callbacks."""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest

from voicelink.core.config import settings
from voicelink.models.job import Job
from voicelink.services.jobs import (
    CALLBACK_SIGNATURE_HEADER,
    JobNotFoundError,
    JobNotRunnableError,
    JobRunner,
    cleanup_old_jobs,
    compute_backoff,
    get_job,
    get_job_status,
    queue_job,
    sign_payload,
)

PREFIX = "/api/v1/voice"


async def _ok_handler(input_data, runner):
    return {"echo": input_data.get("text")}


async def _failing_handler(input_data, runner):
    raise RuntimeError("vendor exploded")


# ---------------------------------------------------------------------------
# Queueing and status
# ---------------------------------------------------------------------------


class TestQueueJob:
    def test_queue_job(self, db):
        job_id = queue_job(db, "tts", {"text": "hi", "voice_id": "v1"}, session_id="s1")
        job = get_job(db, job_id)
        assert job.status == "pending"
        assert job.retry_count == 0
        assert job.max_retries == settings.JOB_MAX_RETRIES
        assert job.session_id == "s1"

    def test_invalid_job_type(self, db):
        with pytest.raises(ValueError, match="Invalid job type"):
            queue_job(db, "send_fax", {})

    @pytest.mark.parametrize("max_retries", [0, -1])
    def test_max_retries_must_allow_one_attempt(self, db, max_retries):
        with pytest.raises(ValueError, match="max_retries"):
            queue_job(db, "tts", {"text": "hi"}, max_retries=max_retries)

    def test_single_attempt_job_is_due(self, db):
        job_id = queue_job(db, "tts", {"text": "hi"}, max_retries=1)
        assert JobRunner(handlers={}).due_job_ids(db, limit=10) == [job_id]

    def test_status_dict(self, db):
        job_id = queue_job(db, "transcribe", {"audio_base64": ""})
        status = get_job_status(db, job_id)
        assert status["job_id"] == job_id
        assert status["status"] == "pending"
        assert status["started_at"] is None
        assert status["created_at"] is not None

    def test_status_unknown_job(self, db):
        assert get_job_status(db, "missing") is None

    def test_status_endpoint(self, client, db):
        job_id = queue_job(db, "tts", {"text": "hi", "voice_id": "v1"})
        response = client.get(f"{PREFIX}/jobs/{job_id}")
        assert response.status_code == 200
        assert response.json()["job_type"] == "tts"

    def test_status_endpoint_not_found(self, client):
        response = client.get(f"{PREFIX}/jobs/nope")
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Processing and retries
# ---------------------------------------------------------------------------


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_successful_job(self, db):
        runner = JobRunner(handlers={"tts": _ok_handler})
        job_id = queue_job(db, "tts", {"text": "hello"})

        job = await runner.process_job(db, job_id)

        assert job.status == "completed"
        assert job.output_data == {"echo": "hello"}
        assert job.started_at is not None
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_completed_job_is_not_rerun(self, db):
        runner = JobRunner(handlers={"tts": _ok_handler})
        job_id = queue_job(db, "tts", {"text": "hello"})
        await runner.process_job(db, job_id)

        with pytest.raises(JobNotRunnableError) as exc_info:
            await runner.process_job(db, job_id)
        assert exc_info.value.status == "completed"

    @pytest.mark.asyncio
    async def test_unknown_job(self, db):
        with pytest.raises(JobNotFoundError):
            await JobRunner(handlers={}).process_job(db, "missing")

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, db):
        runner = JobRunner(handlers={"tts": _failing_handler})
        job_id = queue_job(db, "tts", {"text": "hello"})

        for attempt in range(1, 4):
            job = await runner.process_job(db, job_id)
            assert job.retry_count == attempt
            assert job.error_message == "vendor exploded"

        assert job.status == "failed"
        assert job.next_attempt_at is None
        with pytest.raises(JobNotRunnableError):
            await runner.process_job(db, job_id)
        assert get_job(db, job_id).retry_count == 3

    @pytest.mark.asyncio
    async def test_failure_schedules_backoff(self, db):
        runner = JobRunner(handlers={"tts": _failing_handler}, retry_base_seconds=60)
        job_id = queue_job(db, "tts", {"text": "hello"})

        before = datetime.now(timezone.utc)
        job = await runner.process_job(db, job_id)

        assert job.status == "pending"
        next_attempt = job.next_attempt_at
        if next_attempt.tzinfo is None:
            next_attempt = next_attempt.replace(tzinfo=timezone.utc)
        assert next_attempt >= before + timedelta(seconds=119)
        assert runner.due_job_ids(db, limit=10) == []

    @pytest.mark.asyncio
    async def test_zero_backoff_job_is_due_again(self, db):
        runner = JobRunner(handlers={"tts": _failing_handler}, retry_base_seconds=0)
        job_id = queue_job(db, "tts", {"text": "hello"})
        await runner.process_job(db, job_id)
        assert runner.due_job_ids(db, limit=10) == [job_id]

    @pytest.mark.asyncio
    async def test_missing_handler_counts_as_failure(self, db):
        runner = JobRunner(handlers={})
        job_id = queue_job(db, "process_media", {"url": "https://cdn.example/a.mp3"})
        job = await runner.process_job(db, job_id)
        assert job.retry_count == 1
        assert "No handler registered" in job.error_message

    @pytest.mark.asyncio
    async def test_process_due_jobs(self, db):
        runner = JobRunner(handlers={"tts": _ok_handler})
        ids = [queue_job(db, "tts", {"text": str(i)}) for i in range(3)]
        assert await runner.process_due_jobs(db, limit=10) == 3
        assert {get_job(db, job_id).status for job_id in ids} == {"completed"}
        assert await runner.process_due_jobs(db, limit=10) == 0

    @pytest.mark.asyncio
    async def test_abandoned_attempt_is_retried(self, db):
        runner = JobRunner(handlers={"tts": _ok_handler})
        job_id = queue_job(db, "tts", {"text": "hello"})
        job = get_job(db, job_id)
        job.status = "processing"
        job.started_at = datetime.now(timezone.utc) - timedelta(days=2)
        db.commit()

        assert runner.due_job_ids(db, limit=10) == [job_id]
        job = get_job(db, job_id)
        assert job.status == "pending"
        assert job.retry_count == 1
        assert job.error_message == "Worker did not finish the attempt"

        job = await runner.process_job(db, job_id)
        assert job.status == "completed"

    @pytest.mark.asyncio
    async def test_abandoned_last_attempt_is_terminal(self, db):
        runner = JobRunner(handlers={"tts": _ok_handler})
        job_id = queue_job(db, "tts", {"text": "hello"})
        job = get_job(db, job_id)
        job.status = "processing"
        job.retry_count = 2
        job.started_at = datetime.now(timezone.utc) - timedelta(days=2)
        db.commit()

        with pytest.raises(JobNotRunnableError) as exc_info:
            await runner.process_job(db, job_id)
        assert exc_info.value.status == "failed"
        job = get_job(db, job_id)
        assert job.retry_count == 3
        assert job.completed_at is not None

    def test_recent_processing_job_is_left_alone(self, db):
        runner = JobRunner(handlers={})
        job_id = queue_job(db, "tts", {"text": "hello"})
        job = get_job(db, job_id)
        job.status = "processing"
        job.started_at = datetime.now(timezone.utc)
        db.commit()

        assert runner.recover_stale_jobs(db) == 0
        assert runner.due_job_ids(db, limit=10) == []
        assert get_job(db, job_id).status == "processing"

    def test_register_handler_rejects_unknown_type(self):
        with pytest.raises(ValueError):
            JobRunner(handlers={}).register_handler("send_fax", _ok_handler)

    def test_compute_backoff(self):
        assert compute_backoff(1, 60) == timedelta(seconds=120)
        assert compute_backoff(2, 60) == timedelta(seconds=240)
        assert compute_backoff(3, 10) == timedelta(seconds=80)


# ---------------------------------------------------------------------------
# Completion callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_signed_callback_on_completion(self, db):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["body"] = request.content
            captured["signature"] = request.headers.get(CALLBACK_SIGNATURE_HEADER)
            return httpx.Response(204)

        runner = JobRunner(
            handlers={"tts": _ok_handler},
            transport=httpx.MockTransport(handler),
            callback_secret="cb-secret",
        )
        job_id = queue_job(db, "tts", {"text": "hello"}, callback_url="https://app.example/jobs/done")
        await runner.process_job(db, job_id)

        assert captured["url"] == "https://app.example/jobs/done"
        assert captured["signature"] == sign_payload(captured["body"], "cb-secret")
        payload = json.loads(captured["body"])
        assert payload["job_id"] == job_id
        assert payload["status"] == "completed"
        assert payload["result"] == {"echo": "hello"}
        assert isinstance(payload["timestamp"], int)

    @pytest.mark.asyncio
    async def test_no_callback_on_failure(self, db):
        calls = []
        runner = JobRunner(
            handlers={"tts": _failing_handler},
            transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200)),
            callback_secret="cb-secret",
        )
        job_id = queue_job(db, "tts", {"text": "hello"}, callback_url="https://app.example/jobs/done")
        await runner.process_job(db, job_id)
        assert calls == []

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_job(self, db):
        runner = JobRunner(
            handlers={"tts": _ok_handler},
            transport=httpx.MockTransport(lambda r: httpx.Response(500)),
            callback_secret="cb-secret",
        )
        job_id = queue_job(db, "tts", {"text": "hello"}, callback_url="https://app.example/jobs/done")
        job = await runner.process_job(db, job_id)
        assert job.status == "completed"


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


class TestBuiltInHandlers:
    @pytest.mark.asyncio
    async def test_webhook_callback_job(self, db):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(200)

        runner = JobRunner(transport=httpx.MockTransport(handler))
        job_id = queue_job(
            db,
            "webhook_callback",
            {"url": "https://crm.example/hook", "payload": {"event": {"type": "connected"}}},
        )
        job = await runner.process_job(db, job_id)

        assert job.status == "completed"
        assert job.output_data == {"status": "callback_sent", "response_code": 200}
        assert captured["body"] == {"event": {"type": "connected"}}

    @pytest.mark.asyncio
    async def test_webhook_callback_error_status_retries(self, db):
        runner = JobRunner(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        job_id = queue_job(db, "webhook_callback", {"url": "https://crm.example/hook", "payload": {}})
        job = await runner.process_job(db, job_id)
        assert job.status == "pending"
        assert "HTTP 502" in job.error_message

    @pytest.mark.asyncio
    async def test_tts_job(self, db):
        mock_client = MagicMock()
        mock_client.text_to_speech.convert.return_value = iter([b"ID3", b"audio"])

        with patch.object(settings, "ELEVENLABS_API_KEY", "xi_test"), patch(
            "voicelink.services.jobs.ElevenLabs", return_value=mock_client
        ):
            job_id = queue_job(db, "tts", {"text": "Namaste", "voice_id": "voice_1"})
            job = await JobRunner().process_job(db, job_id)

        assert job.status == "completed"
        assert base64.b64decode(job.output_data["audio_base64"]) == b"ID3audio"
        assert job.output_data["chars_consumed"] == 7
        kwargs = mock_client.text_to_speech.convert.call_args.kwargs
        assert kwargs["voice_id"] == "voice_1"
        assert kwargs["text"] == "Namaste"

    @pytest.mark.asyncio
    async def test_tts_without_api_key(self, db):
        with patch.object(settings, "ELEVENLABS_API_KEY", ""):
            job_id = queue_job(db, "tts", {"text": "hi", "voice_id": "voice_1"})
            job = await JobRunner().process_job(db, job_id)
        assert job.status == "pending"
        assert "ELEVENLABS_API_KEY" in job.error_message

    @pytest.mark.asyncio
    async def test_transcribe_job(self, db):
        mock_client = MagicMock()
        mock_client.speech_to_text.convert.return_value = MagicMock(text="hello world")

        with patch.object(settings, "ELEVENLABS_API_KEY", "xi_test"), patch(
            "voicelink.services.jobs.ElevenLabs", return_value=mock_client
        ):
            job_id = queue_job(
                db, "transcribe", {"audio_base64": base64.b64encode(b"RIFF").decode(), "language_code": "en"}
            )
            job = await JobRunner().process_job(db, job_id)

        assert job.output_data == {"text": "hello world"}
        kwargs = mock_client.speech_to_text.convert.call_args.kwargs
        assert kwargs["model_id"] == settings.ELEVENLABS_STT_MODEL
        assert kwargs["language_code"] == "en"


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_removes_old_finished_jobs(self, db):
        old = datetime.now(timezone.utc) - timedelta(days=30)
        db.add_all(
            [
                Job(job_id="old-done", job_type="tts", status="completed", input_data={}, created_at=old),
                Job(job_id="old-failed", job_type="tts", status="failed", input_data={}, created_at=old),
                Job(job_id="old-pending", job_type="tts", status="pending", input_data={}, created_at=old),
            ]
        )
        db.commit()
        recent = queue_job(db, "tts", {})
        recent_job = get_job(db, recent)
        recent_job.status = "completed"
        db.commit()

        assert cleanup_old_jobs(db, days=7) == 2
        remaining = {job.job_id for job in db.query(Job).all()}
        assert remaining == {"old-pending", recent}
