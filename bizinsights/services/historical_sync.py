"""Pull-based historical sync (backfill) and sync health.

WHAT:
    - HistoricalSyncOrchestrator.run(): fetch a date range from the provider
      and feed it through the same DataPoint write path as webhooks.
    - Manual sync helpers: window selection and per-integration rate limiting.
    - sync_status(): webhook/data freshness stats and a health score.

WHY:
    Backfill runs independently of webhooks and may overlap them; the
    source_key check in datapoint_writer keeps facts single. Provider calls
    are bounded by an explicit timeout. Timeouts and other transient provider
    failures send the integration back to the status it had before the sync
    and are retried by the worker; only persistent failures flip it to
    `error`.

REFERENCES:
    - bizinsights/workers/arq_worker.py (process_backfill_job)
    - bizinsights/services/integration_lifecycle.py (call_with_refresh)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from bizinsights.deps import Settings, get_settings
from bizinsights.models import DataPoint, Integration, IntegrationStatusEnum, WebhookEvent, WebhookEventStatusEnum
from bizinsights.services import event_ledger, integration_lifecycle
from bizinsights.services.datapoint_writer import write_datapoints
from bizinsights.services.integration_metadata import load_metadata, save_metadata
from bizinsights.services.providers import ProviderAdapter, ProviderAPIError, ReauthorizationRequired, build_adapter
from bizinsights.telemetry import capture_exception
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SYNC_TIMEOUT_SECONDS = 300.0
INITIAL_SYNC_DAYS = 30
INCREMENTAL_SYNC_DAYS = 30
FIRST_SYNC_DAYS = 365
FULL_SYNC_DAYS = 730

RUNNING_SYNC_WINDOW = timedelta(minutes=10)
STALE_SYNC_AFTER = timedelta(hours=48)


@dataclass
class SyncResult:
    integration_id: Any
    start: datetime
    end: datetime
    status: str = "completed"  # completed | failed | skipped
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    error: Optional[str] = None
    transient: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "fetched": self.fetched,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "error": self.error,
            "transient": self.transient,
        }


class HistoricalSyncOrchestrator:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        adapter_factory: Callable[[Integration, Settings], ProviderAdapter] = build_adapter,
        token_refresher: Optional[integration_lifecycle.TokenRefresher] = None,
        timeout: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.adapter_factory = adapter_factory
        self.token_refresher = token_refresher
        self.timeout = timeout

    async def run(
        self,
        integration: Integration,
        days: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SyncResult:
        """Backfill [start, end] (or the last `days`) for one integration.

        Raises:
            InvalidTransitionError: integration disconnected or already syncing.
        """
        end = end or utcnow()
        start = start or end - timedelta(days=days or INCREMENTAL_SYNC_DAYS)
        result = SyncResult(integration_id=integration.id, start=start, end=end)

        previous_status = integration.status
        integration_lifecycle.mark_syncing(self.db, integration)
        logger.info(
            f"[SYNC] Backfilling {integration.platform.value} integration {integration.id} "
            f"{start:%Y-%m-%d}..{end:%Y-%m-%d}"
        )

        try:
            adapter = self.adapter_factory(integration, self.settings)
            records = await asyncio.wait_for(
                integration_lifecycle.call_with_refresh(
                    self.db,
                    integration,
                    adapter,
                    lambda a: a.fetch_range(start, end),
                    self.token_refresher,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self._interrupted(integration, previous_status, result, f"Sync timed out after {self.timeout:.0f}s")
        except ReauthorizationRequired as e:
            # call_with_refresh already moved the integration to error
            result.status, result.error = "failed", str(e)
            return result
        except ProviderAPIError as e:
            if e.transient:
                return self._interrupted(integration, previous_status, result, str(e))
            return self._failed(integration, result, str(e), e)
        except Exception as e:
            logger.exception(f"[SYNC] Unexpected error fetching integration {integration.id}: {e}")
            return self._failed(integration, result, f"Unexpected sync error: {e}", e)

        result.fetched = len(records)
        self.db.refresh(integration)
        try:
            with self.db.begin_nested():
                written = write_datapoints(self.db, integration, records)
        except Exception as e:
            self.db.rollback()
            return self._failed(integration, result, f"Failed to store datapoints: {e}", e)
        result.inserted, result.skipped = written.inserted, written.skipped

        integration_lifecycle.touch(integration, end)
        meta = load_metadata(integration)
        meta.last_sync_results = result.to_dict()
        save_metadata(integration, meta)

        if integration.status == IntegrationStatusEnum.syncing:
            integration_lifecycle.mark_active(self.db, integration)
        else:
            # Disconnected while the sync ran; keep the facts, leave the status alone
            self.db.commit()
            logger.info(f"[SYNC] Integration {integration.id} became {integration.status.value} during sync")

        logger.info(
            f"[SYNC] Integration {integration.id}: fetched {result.fetched}, "
            f"inserted {result.inserted}, skipped {result.skipped} already stored"
        )
        return result

    def _interrupted(
        self,
        integration: Integration,
        previous_status: IntegrationStatusEnum,
        result: SyncResult,
        message: str,
    ) -> SyncResult:
        logger.warning(f"[SYNC] Transient failure for integration {integration.id}: {message}")
        self.db.refresh(integration)
        if integration.status == IntegrationStatusEnum.syncing:
            integration_lifecycle.mark_sync_interrupted(self.db, integration, previous_status, message)
        result.status, result.error, result.transient = "failed", message, True
        return result

    def _failed(self, integration: Integration, result: SyncResult, message: str, error: Exception) -> SyncResult:
        logger.error(f"[SYNC] Sync failed for integration {integration.id}: {message}")
        capture_exception(error, extra={
            "integration_id": str(integration.id),
            "platform": integration.platform.value,
            "stage": "backfill",
        })
        self.db.refresh(integration)
        if integration.status == IntegrationStatusEnum.syncing:
            integration_lifecycle.mark_error(self.db, integration, message)
        result.status, result.error = "failed", message
        return result


# ================================================================
# Manual sync
# ================================================================

class ManualSyncRateLimited(Exception):
    def __init__(self, retry_after: int):
        super().__init__(f"Too many sync requests. Retry in {retry_after} seconds.")
        self.retry_after = retry_after


def manual_sync_days(integration: Integration, sync_type: str) -> int:
    if sync_type == "full":
        return FULL_SYNC_DAYS
    return INCREMENTAL_SYNC_DAYS if integration.last_sync_at else FIRST_SYNC_DAYS


def check_manual_sync_allowed(
    db: Session,
    integration: Integration,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise ManualSyncRateLimited when the per-window manual sync limit is used up."""
    settings = settings or get_settings()
    now = now or utcnow()
    window = timedelta(seconds=settings.MANUAL_SYNC_WINDOW_SECONDS)
    recent = event_ledger.received_since(db, integration, event_ledger.MANUAL_SYNC_TOPIC, now - window)
    if len(recent) < settings.MANUAL_SYNC_LIMIT:
        return
    oldest = recent[-settings.MANUAL_SYNC_LIMIT]
    retry_after = max(1, int((oldest + window - now).total_seconds()) + 1)
    raise ManualSyncRateLimited(retry_after)


# ================================================================
# Health
# ================================================================

def _datapoint_stats(db: Session, integration: Integration, now: datetime) -> Dict[str, Any]:
    base = db.query(DataPoint).filter(DataPoint.integration_id == integration.id)
    total = base.count()
    last_24h = base.filter(DataPoint.created_at >= now - timedelta(hours=24)).count()
    last_7d = base.filter(DataPoint.created_at >= now - timedelta(days=7)).count()
    by_type = dict(
        db.query(DataPoint.metric_type, func.count(DataPoint.id))
        .filter(DataPoint.integration_id == integration.id)
        .group_by(DataPoint.metric_type)
        .all()
    )
    latest = db.query(func.max(DataPoint.created_at)).filter(DataPoint.integration_id == integration.id).scalar()
    return {
        "total": total,
        "last_24h": last_24h,
        "last_7d": last_7d,
        "by_metric_type": by_type,
        "latest_at": latest.isoformat() if latest else None,
        "freshness_hours": round((now - latest).total_seconds() / 3600, 1) if latest else None,
    }


def _running_sync(db: Session, integration: Integration, now: datetime) -> Optional[WebhookEvent]:
    return (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.integration_id == integration.id,
            WebhookEvent.topic == event_ledger.MANUAL_SYNC_TOPIC,
            WebhookEvent.status == WebhookEventStatusEnum.received,
            WebhookEvent.received_at >= now - RUNNING_SYNC_WINDOW,
        )
        .order_by(WebhookEvent.received_at.desc())
        .first()
    )


def health_score(success_rate: float, last_sync_at: Optional[datetime], records_24h: int, now: datetime):
    """100, minus the webhook success shortfall below 90%, 20 for a stale sync, 15 for no fresh data."""
    score = 100.0
    issues: List[str] = []
    recommendations: List[str] = []

    if success_rate < 90:
        score -= 90 - success_rate
        issues.append(f"Webhook success rate is {success_rate:.1f}%")
        recommendations.append("Check the webhook secret and recent failed events")
    if not last_sync_at or now - last_sync_at > STALE_SYNC_AFTER:
        score -= 20
        issues.append("No successful sync in the last 48 hours")
        recommendations.append("Trigger a manual sync")
    if records_24h == 0:
        score -= 15
        issues.append("No new data in the last 24 hours")
        recommendations.append("Verify the store has activity and webhooks are registered")

    return max(0, round(score)), issues, recommendations


def sync_status(db: Session, integration: Integration, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    counts = event_ledger.status_counts(db, integration, now - timedelta(days=30))
    finished = sum(counts[status.value] for status in event_ledger.TERMINAL_STATUSES)
    processed = counts[WebhookEventStatusEnum.processed.value]
    success_rate = processed / finished * 100 if finished else 100.0

    datapoints = _datapoint_stats(db, integration, now)
    running = _running_sync(db, integration, now)
    score, issues, recommendations = health_score(success_rate, integration.last_sync_at, datapoints["last_24h"], now)
    meta = load_metadata(integration)

    return {
        "integration_id": str(integration.id),
        "platform": integration.platform.value,
        "status": integration.status.value,
        "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "sync_in_progress": running is not None or integration.status == IntegrationStatusEnum.syncing,
        "current_sync": (
            {"started_at": running.received_at.isoformat(), "sync_type": (running.meta or {}).get("sync_type")}
            if running else None
        ),
        "webhooks": {
            "last_30_days": counts,
            "total": sum(counts.values()),
            "success_rate": round(success_rate, 1),
            "last_webhook_at": meta.last_webhook_at.isoformat() if meta.last_webhook_at else None,
        },
        "datapoints": datapoints,
        "last_sync_results": meta.last_sync_results,
        "last_sync_error": meta.last_sync_error.model_dump(mode="json") if meta.last_sync_error else None,
        "health": {"score": score, "issues": issues, "recommendations": recommendations},
    }
