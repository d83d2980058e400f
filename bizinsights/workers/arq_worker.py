"""ARQ async worker - background backfill and maintenance jobs.

WHAT:
    - process_backfill_job: one historical sync for one integration
    - scheduled_poll_sync: daily refresh of poll-only integrations (Google Analytics)
    - scheduled_ledger_purge: daily deletion of old webhook ledger entries

WHY:
    Backfills are slow and may hit provider rate limits; running them in the
    worker keeps webhook handlers fast. Transient provider failures are
    retried by arq with a growing delay; the last attempt flips the
    integration to `error`.

USAGE:
    arq bizinsights.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m bizinsights.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - bizinsights/services/historical_sync.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import UUID

from arq import Retry, cron

from bizinsights.database import SessionLocal
from bizinsights.deps import get_settings
from bizinsights.models import Integration, IntegrationStatusEnum, WebhookEvent, WebhookEventStatusEnum
from bizinsights.services import event_ledger, integration_lifecycle
from bizinsights.services.historical_sync import HistoricalSyncOrchestrator, SyncResult
from bizinsights.services.integration_lifecycle import InvalidTransitionError
from bizinsights.services.integration_metadata import load_metadata, save_metadata
from bizinsights.services.providers import ADAPTERS
from bizinsights.telemetry import capture_exception, init_sentry
from bizinsights.utils.dates import utcnow
from bizinsights.workers.arq_enqueue import QUEUE_NAME, enqueue_backfill_job, get_redis_settings

logger = logging.getLogger(__name__)

MAX_TRIES = 3
RETRY_DELAY_SECONDS = 60
POLL_SYNC_DAYS = 3


# =============================================================================
# BACKFILL JOB
# =============================================================================

async def process_backfill_job(
    ctx: Dict,
    integration_id: str,
    days: int,
    reason: str = "manual_sync",
    ledger_entry_id: Optional[str] = None,
) -> Dict:
    """Run one backfill.

    Args:
        ctx: ARQ context (`job_try` is the 1-based attempt number)
        integration_id: Integration UUID string
        days: Window size
        reason: initial_sync | manual_sync | property_change | scheduled
        ledger_entry_id: manual_sync ledger entry to close

    Returns:
        Dict with success flag and sync counts
    """
    job_try = ctx.get("job_try", 1)
    logger.info("[ARQ] Backfill %s for integration %s (%d days, try %d)", reason, integration_id, days, job_try)

    db = SessionLocal()
    try:
        integration = db.query(Integration).filter(Integration.id == UUID(integration_id)).first()
        if not integration:
            return {"success": False, "error": "Integration not found"}

        try:
            result = await HistoricalSyncOrchestrator(db).run(integration, days=days)
        except InvalidTransitionError as e:
            logger.info("[ARQ] Skipping backfill for %s: %s", integration_id, e)
            _close_ledger_entry(db, ledger_entry_id, None, str(e))
            return {"success": False, "skipped": True, "error": str(e)}

        if result.transient and job_try < MAX_TRIES:
            raise Retry(defer=RETRY_DELAY_SECONDS * job_try)

        if result.transient:
            db.refresh(integration)
            integration_lifecycle.mark_error(
                db, integration, f"Sync failed after {job_try} attempts: {result.error}"
            )

        _record_outcome(db, integration, reason, result)
        _close_ledger_entry(db, ledger_entry_id, result, result.error)
        return {"success": result.succeeded, **result.to_dict()}

    except Retry:
        raise
    except Exception as e:
        logger.exception("[ARQ] Backfill job failed for %s: %s", integration_id, e)
        capture_exception(e, extra={
            "operation": "process_backfill_job",
            "integration_id": integration_id,
            "reason": reason,
        })
        db.rollback()
        _close_ledger_entry(db, ledger_entry_id, None, str(e))
        return {"success": False, "error": str(e)}
    finally:
        db.close()


def _record_outcome(db, integration: Integration, reason: str, result: SyncResult) -> None:
    meta = load_metadata(integration)
    if reason == "initial_sync":
        if result.succeeded:
            meta.initial_sync_completed = utcnow()
            meta.initial_sync_error = None
        else:
            meta.initial_sync_error = result.error
    if reason == "manual_sync":
        meta.last_manual_sync = utcnow()
    save_metadata(integration, meta)
    db.commit()


def _close_ledger_entry(db, ledger_entry_id: Optional[str], result: Optional[SyncResult], error: Optional[str]) -> None:
    if not ledger_entry_id:
        return
    entry = db.query(WebhookEvent).filter(WebhookEvent.id == UUID(ledger_entry_id)).first()
    if not entry or entry.status != WebhookEventStatusEnum.received:
        return
    if result is not None and result.succeeded:
        event_ledger.mark_processed(db, entry, {"results": result.to_dict()})
        db.commit()
    else:
        event_ledger.mark_failed(db, entry, error or "Sync failed")


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def scheduled_poll_sync(ctx: Dict) -> Dict:
    """Enqueue a short backfill for every active integration without webhooks."""
    poll_platforms = [platform for platform, adapter in ADAPTERS.items() if not adapter.supports_webhooks]
    db = SessionLocal()
    try:
        integration_ids = [
            str(row.id)
            for row in db.query(Integration.id).filter(
                Integration.platform.in_(poll_platforms),
                Integration.status == IntegrationStatusEnum.active,
            )
        ]
    finally:
        db.close()

    results = await asyncio.gather(
        *(enqueue_backfill_job(integration_id, POLL_SYNC_DAYS, reason="scheduled") for integration_id in integration_ids),
        return_exceptions=True,
    )
    failed = [r for r in results if isinstance(r, Exception)]
    for error in failed:
        capture_exception(error, extra={"operation": "scheduled_poll_sync"})
    logger.info("[ARQ] Poll sync enqueued %d jobs (%d failed)", len(results) - len(failed), len(failed))
    return {"enqueued": len(results) - len(failed), "failed": len(failed)}


async def scheduled_ledger_purge(ctx: Dict) -> Dict:
    """Delete webhook ledger entries past the retention period."""
    db = SessionLocal()
    try:
        deleted = event_ledger.purge_older_than(db, get_settings().WEBHOOK_EVENT_RETENTION_DAYS)
        return {"deleted": deleted}
    except Exception as e:
        logger.exception("[ARQ] Ledger purge failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_ledger_purge"})
        return {"deleted": 0, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    init_sentry()
    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info(f"[ARQ] Max concurrent jobs: {WorkerSettings.max_jobs}")
    logger.info(f"[ARQ] Job timeout: {WorkerSettings.job_timeout}s")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info(f"[ARQ] Worker shutting down after {ctx.get('jobs_processed', 0)} jobs (uptime {uptime})")


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: up to 10 integrations backfilling at once
    - job_timeout=600: 10 minutes per job; the orchestrator's own provider
      timeout is shorter so a slow provider ends as a transient failure
    - max_tries=3: transient failures retried with Retry(defer=...)
    """

    functions = [
        process_backfill_job,
        scheduled_poll_sync,
        scheduled_ledger_purge,
    ]

    cron_jobs = [
        cron(scheduled_poll_sync, hour={2}, minute={0}),
        cron(scheduled_ledger_purge, hour={3}, minute={30}),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = MAX_TRIES
    health_check_interval = 30

    queue_name = QUEUE_NAME
