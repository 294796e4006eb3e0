"""Webhook gateway: verify, deduplicate, normalize, dispatch, audit.

Idempotency rests on the unique ``request_id`` column. A delivery claims
its id with an INSERT; a concurrent or repeated delivery hits the unique
constraint and short-circuits. The only way to re-run a claimed id is the
conditional reclaim UPDATE, which matches records left unprocessed by a
failed dispatch (5xx) or by a claim that went stale after a crash.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voicelink.core.config import settings
from voicelink.models.webhook_record import WebhookRecord
from voicelink.providers.context import ProviderContext
from voicelink.providers.models import ErrorEvent, RawWebhookRequest, StandardEvent
from voicelink.services.jobs import queue_job
from voicelink.services.provider_settings import get_provider

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[str, str, StandardEvent], None]


class WebhookOutcome(BaseModel):
    status_code: int
    body: dict
    request_id: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventDispatcher:
    """Delivers normalized webhook events to downstream effects.

    Subscribers are called in registration order with
    ``(provider, request_id, event)``. When a forward URL is configured the
    event is also queued as a ``webhook_callback`` job. Any exception
    propagates so the gateway can answer with a retryable status.
    """

    def __init__(self, forward_url: str | None = None) -> None:
        self._subscribers: list[EventSubscriber] = []
        self.forward_url = settings.WEBHOOK_FORWARD_URL if forward_url is None else forward_url

    def subscribe(self, callback: EventSubscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventSubscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def dispatch(self, db: Session, provider: str, request_id: str, event: StandardEvent) -> None:
        for callback in list(self._subscribers):
            callback(provider, request_id, event)
        if self.forward_url:
            queue_job(
                db,
                "webhook_callback",
                {
                    "url": self.forward_url,
                    "payload": {
                        "provider": provider,
                        "request_id": request_id,
                        "event": event.model_dump(),
                    },
                },
            )


def _claim(db: Session, request_id: str, provider: str, auth_method: str) -> bool:
    """Take ownership of a request id. Returns False if someone else has it."""
    now = _utcnow()
    db.add(
        WebhookRecord(
            request_id=request_id,
            provider=provider,
            auth_method=auth_method,
            verified=True,
            processed=False,
            response_status=202,
            claimed_at=now,
        )
    )
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()

    stale_before = now - timedelta(seconds=settings.WEBHOOK_CLAIM_TTL_SECONDS)
    result = db.execute(
        update(WebhookRecord)
        .where(
            WebhookRecord.request_id == request_id,
            WebhookRecord.processed.is_(False),
            WebhookRecord.verified.is_(True),
            or_(
                WebhookRecord.response_status >= 500,
                and_(WebhookRecord.claimed_at.is_not(None), WebhookRecord.claimed_at < stale_before),
            ),
        )
        .values(claimed_at=now, response_status=202, error_message=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _get_record(db: Session, request_id: str) -> WebhookRecord:
    return db.execute(
        select(WebhookRecord).where(WebhookRecord.request_id == request_id)
    ).scalar_one()


def handle_webhook(
    db: Session,
    context: ProviderContext,
    dispatcher: EventDispatcher,
    provider: str,
    request: RawWebhookRequest,
) -> WebhookOutcome:
    """Process one inbound webhook delivery end to end.

    Raises:
        UnknownProviderError: If provider is not registered.
    """
    adapter = get_provider(db, context, provider)
    auth_method = adapter.webhook_auth_method.value
    payload = request.json_body()

    if not adapter.verify_webhook_signature(request):
        record = WebhookRecord(
            request_id=uuid.uuid4().hex,
            provider=provider,
            event_type=adapter.webhook_event_type(payload),
            payload=payload if isinstance(payload, dict) else None,
            auth_method=auth_method,
            verified=False,
            processed=False,
            response_status=401,
            error_message="Webhook signature verification failed",
        )
        db.add(record)
        db.commit()
        logger.warning("Rejected unverified %s webhook (auth=%s)", provider, auth_method)
        return WebhookOutcome(
            status_code=401,
            body={"success": False, "code": "unverified", "message": "Webhook verification failed"},
        )

    request_id = adapter.extract_request_id(request)
    if not _claim(db, request_id, provider, auth_method):
        logger.info("Duplicate %s webhook %s ignored", provider, request_id)
        return WebhookOutcome(
            status_code=200,
            body={"success": True, "status": "already_processed", "request_id": request_id},
            request_id=request_id,
        )

    event = adapter.normalize_webhook_event(payload)
    record = _get_record(db, request_id)
    record.event_type = adapter.webhook_event_type(payload)
    record.payload = payload if isinstance(payload, dict) else None
    db.commit()

    unrecognized = isinstance(event, ErrorEvent) and event.code == "unrecognized_event"
    if not unrecognized:
        try:
            dispatcher.dispatch(db, provider, request_id, event)
        except Exception as exc:
            db.rollback()
            logger.exception("Dispatch failed for %s webhook %s", provider, request_id)
            record = _get_record(db, request_id)
            record.error_message = str(exc)[:2000]
            record.response_status = 503
            db.commit()
            return WebhookOutcome(
                status_code=503,
                body={"success": False, "status": "retry", "request_id": request_id},
                request_id=request_id,
            )

    record.processed = True
    record.processed_at = _utcnow()
    record.response_status = 200
    if unrecognized:
        record.error_message = event.message
    db.commit()

    return WebhookOutcome(
        status_code=200,
        body={
            "success": True,
            "status": "ignored" if unrecognized else "processed",
            "request_id": request_id,
            "event": event.type,
        },
        request_id=request_id,
    )


def build_test_webhook(db: Session, context: ProviderContext, provider: str) -> dict:
    """Run a provider's sample payload through normalization without side effects."""
    adapter = get_provider(db, context, provider)
    payload = adapter.generate_test_payload()
    event = adapter.normalize_webhook_event(payload)
    return {
        "success": True,
        "provider": provider,
        "payload": payload,
        "event": event.model_dump(),
    }


def purge_webhook_records(db: Session, older_than_days: int | None = None) -> int:
    """Delete audit records past the retention window.

    Once a record is purged its request_id can be processed again, so the
    retention window bounds how late a duplicate can still be detected.
    """
    days = settings.WEBHOOK_RECORD_RETENTION_DAYS if older_than_days is None else older_than_days
    cutoff = _utcnow() - timedelta(days=days)
    result = db.execute(delete(WebhookRecord).where(WebhookRecord.created_at < cutoff))
    db.commit()
    if result.rowcount:
        logger.info("Purged %d webhook record(s) older than %d days", result.rowcount, days)
    return result.rowcount
