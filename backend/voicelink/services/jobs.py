"""Job ledger: queued async work with bounded retries and signed callbacks."""

import asyncio
import base64
import hashlib
import hmac
import io
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

import httpx
from elevenlabs.client import ElevenLabs
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from voicelink.core.config import settings
from voicelink.core.database import SessionLocal
from voicelink.models.job import JOB_TYPES, Job

logger = logging.getLogger(__name__)

CALLBACK_SIGNATURE_HEADER = "X-Voicelink-Signature"

JobHandler = Callable[[dict, "JobRunner"], Awaitable[dict]]


class JobError(Exception):
    """Base exception for job ledger errors."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobNotRunnableError(JobError):
    """Raised when a job is completed, already processing, or terminally failed."""

    def __init__(self, job_id: str, status: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job '{job_id}' cannot be processed (status: {status})")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_backoff(retry_count: int, base_seconds: int | None = None) -> timedelta:
    """Exponential backoff: 2^retry_count * base seconds."""
    base = settings.JOB_RETRY_BASE_SECONDS if base_seconds is None else base_seconds
    return timedelta(seconds=(2**retry_count) * base)


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def queue_job(
    db: Session,
    job_type: str,
    input_data: dict,
    callback_url: str | None = None,
    session_id: str | None = None,
    max_retries: int | None = None,
) -> str:
    """Insert a pending job and return its job_id.

    Raises:
        ValueError: If job_type is not a known type or max_retries is below 1.
    """
    if job_type not in JOB_TYPES:
        raise ValueError(f"Invalid job type: {job_type}")
    max_retries = settings.JOB_MAX_RETRIES if max_retries is None else max_retries
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")

    job = Job(
        job_id=uuid.uuid4().hex,
        job_type=job_type,
        status="pending",
        session_id=session_id,
        input_data=input_data,
        callback_url=callback_url,
        retry_count=0,
        max_retries=max_retries,
    )
    db.add(job)
    db.commit()
    logger.info("Queued %s job %s", job_type, job.job_id)
    return job.job_id


def get_job(db: Session, job_id: str) -> Job | None:
    return db.execute(select(Job).where(Job.job_id == job_id)).scalar_one_or_none()


def get_job_status(db: Session, job_id: str) -> dict | None:
    job = get_job(db, job_id)
    if job is None:
        return None
    return {
        "job_id": job.job_id,
        "job_type": job.job_type,
        "status": job.status,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "output_data": job.output_data,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def cleanup_old_jobs(db: Session, days: int | None = None) -> int:
    """Delete completed and terminally failed jobs older than ``days``."""
    days = settings.JOB_RETENTION_DAYS if days is None else days
    cutoff = _utcnow() - timedelta(days=days)
    result = db.execute(
        delete(Job).where(
            Job.status.in_(("completed", "failed")),
            Job.created_at < cutoff,
        )
    )
    db.commit()
    if result.rowcount:
        logger.info("Cleaned up %d job(s) older than %d days", result.rowcount, days)
    return result.rowcount


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def handle_webhook_callback(input_data: dict, runner: "JobRunner") -> dict:
    url = input_data.get("url")
    if not url:
        raise ValueError("webhook_callback job requires 'url'")
    async with runner.http_client() as client:
        response = await client.post(url, json=input_data.get("payload", {}))
    if not response.is_success:
        raise RuntimeError(f"Callback to {url} returned HTTP {response.status_code}")
    return {"status": "callback_sent", "response_code": response.status_code}


def _elevenlabs_client() -> ElevenLabs:
    if not settings.ELEVENLABS_API_KEY:
        raise RuntimeError("ELEVENLABS_API_KEY is not configured")
    return ElevenLabs(api_key=settings.ELEVENLABS_API_KEY)


def _synthesize(text: str, voice_id: str, model_id: str) -> bytes:
    client = _elevenlabs_client()
    # convert() returns an iterator of audio chunks
    audio = client.text_to_speech.convert(
        voice_id=voice_id,
        text=text,
        model_id=model_id,
        output_format="mp3_44100_128",
    )
    return b"".join(chunk for chunk in audio if isinstance(chunk, bytes))


async def handle_tts(input_data: dict, runner: "JobRunner") -> dict:
    text = input_data.get("text")
    voice_id = input_data.get("voice_id")
    if not text or not voice_id:
        raise ValueError("tts job requires 'text' and 'voice_id'")
    model_id = input_data.get("model_id") or settings.ELEVENLABS_TTS_MODEL

    audio = await asyncio.to_thread(_synthesize, text, voice_id, model_id)
    if not audio:
        raise RuntimeError("Synthesis returned empty audio")
    return {
        "audio_base64": base64.b64encode(audio).decode("ascii"),
        "content_type": "audio/mpeg",
        "chars_consumed": len(text),
    }


def _transcribe(audio: bytes, model_id: str, language_code: str | None) -> str:
    client = _elevenlabs_client()
    kwargs: dict = {"file": io.BytesIO(audio), "model_id": model_id}
    if language_code:
        kwargs["language_code"] = language_code
    result = client.speech_to_text.convert(**kwargs)
    return result.text


async def handle_transcribe(input_data: dict, runner: "JobRunner") -> dict:
    encoded = input_data.get("audio_base64")
    if not encoded:
        raise ValueError("transcribe job requires 'audio_base64'")
    audio = base64.b64decode(encoded)
    model_id = input_data.get("model_id") or settings.ELEVENLABS_STT_MODEL
    text = await asyncio.to_thread(_transcribe, audio, model_id, input_data.get("language_code"))
    return {"text": text}


DEFAULT_HANDLERS: dict[str, JobHandler] = {
    "webhook_callback": handle_webhook_callback,
    "tts": handle_tts,
    "transcribe": handle_transcribe,
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class JobRunner:
    """Claims and executes jobs.

    Claiming is a conditional UPDATE from ``pending`` to ``processing``, so
    two runners (or two server instances) never execute the same attempt.
    A job left in ``processing`` longer than ``claim_ttl_seconds`` belongs
    to a worker that died; its attempt is counted as failed and the job is
    requeued or made terminal.
    ``process_media`` has no built-in handler; deployments register one.
    """

    def __init__(
        self,
        handlers: dict[str, JobHandler] | None = None,
        *,
        http_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        callback_secret: str | None = None,
        retry_base_seconds: int | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        self._handlers: dict[str, JobHandler] = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        self.http_timeout = settings.PROVIDER_HTTP_TIMEOUT_SECONDS if http_timeout is None else http_timeout
        self.transport = transport
        self.callback_secret = settings.JOB_CALLBACK_SECRET if callback_secret is None else callback_secret
        self.retry_base_seconds = retry_base_seconds
        self.claim_ttl_seconds = settings.JOB_CLAIM_TTL_SECONDS if claim_ttl_seconds is None else claim_ttl_seconds

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        if job_type not in JOB_TYPES:
            raise ValueError(f"Invalid job type: {job_type}")
        self._handlers[job_type] = handler

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.http_timeout, transport=self.transport)

    def recover_stale_jobs(self, db: Session, job_id: str | None = None) -> int:
        """Count abandoned ``processing`` attempts as failures. Returns jobs recovered."""
        now = _utcnow()
        stale_before = now - timedelta(seconds=self.claim_ttl_seconds)
        query = select(Job).where(Job.status == "processing", Job.started_at < stale_before)
        if job_id is not None:
            query = query.where(Job.job_id == job_id)

        recovered = 0
        for job in db.execute(query).scalars().all():
            attempts = job.retry_count + 1
            terminal = attempts >= job.max_retries
            result = db.execute(
                update(Job)
                .where(
                    Job.job_id == job.job_id,
                    Job.status == "processing",
                    Job.retry_count == job.retry_count,
                )
                .values(
                    status="failed" if terminal else "pending",
                    retry_count=attempts,
                    error_message="Worker did not finish the attempt",
                    next_attempt_at=None,
                    completed_at=now if terminal else None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                recovered += 1
                logger.warning(
                    "Recovered stale job %s (attempt %d/%d, now %s)",
                    job.job_id,
                    attempts,
                    job.max_retries,
                    "failed" if terminal else "pending",
                )
        db.commit()
        return recovered

    def _claim(self, db: Session, job_id: str) -> Job:
        self.recover_stale_jobs(db, job_id)
        now = _utcnow()
        result = db.execute(
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == "pending",
                Job.retry_count < Job.max_retries,
            )
            .values(status="processing", started_at=now)
        )
        db.commit()
        job = get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if result.rowcount != 1:
            raise JobNotRunnableError(job_id, job.status)
        db.refresh(job)
        return job

    async def process_job(self, db: Session, job_id: str) -> Job:
        """Run one attempt of a job.

        Raises:
            JobNotFoundError: No such job.
            JobNotRunnableError: The job is not pending or has exhausted retries.
        """
        job = self._claim(db, job_id)
        logger.info("Processing %s job %s (attempt %d)", job.job_type, job.job_id, job.retry_count + 1)

        handler = self._handlers.get(job.job_type)
        try:
            if handler is None:
                raise RuntimeError(f"No handler registered for job type '{job.job_type}'")
            output = await handler(dict(job.input_data or {}), self)
        except Exception as exc:
            self._record_failure(db, job, exc)
            return job

        job.status = "completed"
        job.output_data = output
        job.error_message = None
        job.completed_at = _utcnow()
        db.commit()
        logger.info("Job %s completed", job.job_id)

        if job.callback_url:
            await self._send_callback(job)
        return job

    def _record_failure(self, db: Session, job: Job, exc: Exception) -> None:
        job.retry_count += 1
        job.error_message = str(exc)[:2000]
        if job.retry_count >= job.max_retries:
            job.status = "failed"
            job.completed_at = _utcnow()
            job.next_attempt_at = None
            logger.error(
                "Job %s failed permanently after %d attempts: %s", job.job_id, job.retry_count, exc
            )
        else:
            job.status = "pending"
            job.next_attempt_at = _utcnow() + compute_backoff(job.retry_count, self.retry_base_seconds)
            logger.warning(
                "Job %s failed (attempt %d/%d), retry scheduled: %s",
                job.job_id,
                job.retry_count,
                job.max_retries,
                exc,
            )
        db.commit()

    async def _send_callback(self, job: Job) -> None:
        payload = {
            "job_id": job.job_id,
            "status": job.status,
            "result": job.output_data,
            "timestamp": int(_utcnow().timestamp()),
        }
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.callback_secret:
            headers[CALLBACK_SIGNATURE_HEADER] = sign_payload(body, self.callback_secret)
        else:
            logger.warning("JOB_CALLBACK_SECRET not set; sending unsigned callback for job %s", job.job_id)

        try:
            async with self.http_client() as client:
                response = await client.post(job.callback_url, content=body, headers=headers)
            if not response.is_success:
                logger.error("Callback for job %s returned HTTP %d", job.job_id, response.status_code)
        except httpx.RequestError as exc:
            logger.error("Callback for job %s failed: %s", job.job_id, exc)

    def due_job_ids(self, db: Session, limit: int) -> list[str]:
        self.recover_stale_jobs(db)
        now = _utcnow()
        return list(
            db.execute(
                select(Job.job_id)
                .where(
                    Job.status == "pending",
                    Job.retry_count < Job.max_retries,
                    or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= now),
                )
                .order_by(Job.created_at)
                .limit(limit)
            ).scalars()
        )

    async def process_due_jobs(self, db: Session, limit: int | None = None) -> int:
        """Process pending jobs whose retry delay has elapsed. Returns attempts run."""
        limit = settings.JOB_BATCH_SIZE if limit is None else limit
        processed = 0
        for job_id in self.due_job_ids(db, limit):
            try:
                await self.process_job(db, job_id)
            except JobNotRunnableError:
                # Claimed by another worker between select and update
                continue
            processed += 1
        return processed


async def job_worker_loop(runner: JobRunner) -> None:
    """Background loop that runs due jobs every JOB_POLL_INTERVAL_SECONDS."""
    interval = settings.JOB_POLL_INTERVAL_SECONDS
    logger.info("Job worker started (poll interval: %ds)", interval)

    while True:
        try:
            db = SessionLocal()
            try:
                count = await runner.process_due_jobs(db)
                if count > 0:
                    logger.info("Job worker ran %d job(s)", count)
            finally:
                db.close()
        except Exception:
            logger.exception("Error in job worker loop")

        await asyncio.sleep(interval)
