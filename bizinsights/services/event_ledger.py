"""Webhook event ledger.

WHAT:
    Durable record of every inbound delivery that can be attributed to an
    integration, keyed by (integration_id, external_id, topic).

WHY:
    Providers retry on any non-2xx and deliveries arrive concurrently and out
    of order. The unique constraint on the ledger is the only serialization
    point: whoever inserts the row first processes the event, everyone else
    sees a duplicate and acknowledges it.

    Entries move from `received` to a terminal status exactly once. The two
    exceptions are explicit:
      - a `failed` entry is re-claimed when the provider redelivers
        (conditional UPDATE failed -> received, attempts + 1)
      - the retention purge deletes old entries

REFERENCES:
    - bizinsights/services/ingestion_gateway.py (caller)
    - bizinsights/workers/arq_worker.py (scheduled_ledger_purge)
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizinsights.models import Integration, WebhookEvent, WebhookEventStatusEnum
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

MANUAL_SYNC_TOPIC = "manual_sync"

# A `received` entry older than this is treated as abandoned (worker crashed
# between claim and completion) and may be re-claimed by a redelivery.
STALE_CLAIM_AFTER = timedelta(minutes=10)

TERMINAL_STATUSES = frozenset({
    WebhookEventStatusEnum.processed,
    WebhookEventStatusEnum.failed,
    WebhookEventStatusEnum.signature_verification_failed,
    WebhookEventStatusEnum.invalid_json,
})


class LedgerTransitionError(Exception):
    """Attempt to move an entry that already reached a terminal status."""


@dataclass
class Claim:
    """Outcome of trying to record a delivery as `received`.

    `duplicate` means another attempt owns (or already finished) this
    delivery; the caller must acknowledge without writing facts.
    """

    entry: WebhookEvent
    duplicate: bool = False
    reclaimed: bool = False


def _find(db: Session, integration_id, external_id: str, topic: str) -> Optional[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.integration_id == integration_id,
            WebhookEvent.external_id == external_id,
            WebhookEvent.topic == topic,
        )
        .first()
    )


def _reclaim(db: Session, entry: WebhookEvent, now: datetime) -> bool:
    """Atomically take over a failed or abandoned entry. True if we won."""
    retryable = (WebhookEvent.status == WebhookEventStatusEnum.failed) | (
        (WebhookEvent.status == WebhookEventStatusEnum.received)
        & (WebhookEvent.received_at < now - STALE_CLAIM_AFTER)
    )
    result = db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == entry.id, retryable)
        .values(
            status=WebhookEventStatusEnum.received,
            error=None,
            attempts=WebhookEvent.attempts + 1,
            received_at=now,
            processed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(entry)
    return result.rowcount == 1


def record_received(
    db: Session,
    integration: Integration,
    topic: str,
    external_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    handled: bool = True,
) -> Claim:
    """Insert a `received` entry, or report the existing one as a duplicate.

    The insert is committed immediately so concurrent deliveries see it.
    A redelivery of a `failed` entry is re-claimed when `handled` is set.
    """
    entry = WebhookEvent(
        integration_id=integration.id,
        topic=topic,
        external_id=external_id,
        status=WebhookEventStatusEnum.received,
        received_at=utcnow(),
        meta=dict(metadata or {}),
    )
    db.add(entry)
    try:
        db.commit()
        return Claim(entry=entry)
    except IntegrityError:
        db.rollback()

    existing = _find(db, integration.id, external_id, topic)
    if existing is None:
        # Purged between our insert attempt and the lookup
        logger.warning(f"[LEDGER] Conflict on {topic} {external_id} but no entry found")
        raise LedgerTransitionError(f"Ledger conflict for {topic} {external_id}")

    if handled and _reclaim(db, existing, utcnow()):
        logger.info(
            f"[LEDGER] Re-claimed {topic} {external_id} for integration {integration.id} "
            f"(attempt {existing.attempts})"
        )
        return Claim(entry=existing, reclaimed=True)

    logger.info(f"[LEDGER] Duplicate {topic} {external_id} ({existing.status.value}), skipping")
    return Claim(entry=existing, duplicate=True)


def record_rejected(
    db: Session,
    integration: Integration,
    topic: str,
    status: WebhookEventStatusEnum,
    error: str,
    delivery_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> WebhookEvent:
    """Audit a delivery rejected before processing (bad signature, bad JSON).

    Stored under a generated external id so an unauthenticated request never
    occupies the idempotency key of the real delivery.
    """
    now = utcnow()
    entry = WebhookEvent(
        integration_id=integration.id,
        topic=topic or "unknown",
        external_id=f"rejected:{uuid.uuid4()}",
        status=status,
        error=error,
        received_at=now,
        processed_at=now,
        meta={**(metadata or {}), "delivery_id": delivery_id},
    )
    db.add(entry)
    db.commit()
    return entry


def _finish(db: Session, entry: WebhookEvent, status: WebhookEventStatusEnum, error: Optional[str]) -> None:
    if entry.status != WebhookEventStatusEnum.received:
        raise LedgerTransitionError(
            f"Entry {entry.id} is already {entry.status.value}, cannot move to {status.value}"
        )
    entry.status = status
    entry.error = error
    entry.processed_at = utcnow()


def mark_processed(db: Session, entry: WebhookEvent, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Move to `processed`. Does not commit: the caller commits with the facts."""
    _finish(db, entry, WebhookEventStatusEnum.processed, None)
    if metadata:
        entry.meta = {**(entry.meta or {}), **metadata}


def mark_failed(db: Session, entry: WebhookEvent, error: str) -> None:
    _finish(db, entry, WebhookEventStatusEnum.failed, error[:2000])
    db.commit()


def record_manual_sync(db: Session, integration: Integration, metadata: Dict[str, Any]) -> WebhookEvent:
    """Ledger marker for a user-triggered sync; also feeds rate limiting."""
    now = utcnow()
    entry = WebhookEvent(
        integration_id=integration.id,
        topic=MANUAL_SYNC_TOPIC,
        external_id=f"manual_{now:%Y%m%d%H%M%S%f}_{uuid.uuid4().hex[:8]}",
        status=WebhookEventStatusEnum.received,
        received_at=now,
        meta=dict(metadata),
    )
    db.add(entry)
    db.commit()
    return entry


def received_since(db: Session, integration: Integration, topic: str, since: datetime) -> List[datetime]:
    """received_at of entries for `topic` since `since`, oldest first."""
    rows = (
        db.query(WebhookEvent.received_at)
        .filter(
            WebhookEvent.integration_id == integration.id,
            WebhookEvent.topic == topic,
            WebhookEvent.received_at >= since,
        )
        .order_by(WebhookEvent.received_at.asc())
        .all()
    )
    return [received_at for (received_at,) in rows]


def status_counts(
    db: Session,
    integration: Integration,
    since: datetime,
    exclude_topics=(MANUAL_SYNC_TOPIC,),
) -> Dict[str, int]:
    rows = (
        db.query(WebhookEvent.status, func.count(WebhookEvent.id))
        .filter(
            WebhookEvent.integration_id == integration.id,
            WebhookEvent.received_at >= since,
            WebhookEvent.topic.notin_(list(exclude_topics)),
        )
        .group_by(WebhookEvent.status)
        .all()
    )
    counts = {status.value: 0 for status in WebhookEventStatusEnum}
    for status, count in rows:
        counts[status.value] = count
    return counts


def recent_events(db: Session, integration: Integration, limit: int = 50) -> List[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(WebhookEvent.integration_id == integration.id)
        .order_by(WebhookEvent.received_at.desc())
        .limit(limit)
        .all()
    )


def purge_older_than(db: Session, days: int, now: Optional[datetime] = None) -> int:
    """Delete entries received more than `days` ago. Returns the row count."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    deleted = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.received_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"[LEDGER] Purged {deleted} webhook events older than {cutoff:%Y-%m-%d}")
    return deleted
