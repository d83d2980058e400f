"""Shared DataPoint write path for webhooks and backfill.

WHAT:
    write_datapoints(db, integration, records) persists translated facts,
    skipping any whose (metric_type, source_key) already exists for the
    integration.

WHY:
    Webhooks and backfill can deliver the same business fact (an order
    created in the backfill window that also arrived by webhook). DataPoints
    are immutable and aggregation sums them, so the second copy must never be
    written. Keyless facts (running snapshots) are always written.

    The caller owns the transaction: the gateway wraps one event's writes in
    a savepoint so they commit or roll back together.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizinsights.models import DataPoint, Integration
from bizinsights.services.providers.base import DataPointRecord

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    inserted: int = 0
    skipped: int = 0

    def merge(self, other: "WriteResult") -> "WriteResult":
        return WriteResult(self.inserted + other.inserted, self.skipped + other.skipped)


def _existing_keys(db: Session, integration: Integration, records: List[DataPointRecord]) -> Set[Tuple[str, str]]:
    keys = {r.source_key for r in records if r.source_key}
    if not keys:
        return set()
    rows = (
        db.query(DataPoint.metric_type, DataPoint.source_key)
        .filter(
            DataPoint.integration_id == integration.id,
            DataPoint.source_key.in_(keys),
        )
        .all()
    )
    return {(metric_type, source_key) for metric_type, source_key in rows}


def _to_model(integration: Integration, record: DataPointRecord) -> DataPoint:
    return DataPoint(
        integration_id=integration.id,
        metric_type=record.metric_type,
        value=record.value,
        date_recorded=record.date_recorded,
        source_key=record.source_key,
        meta=dict(record.metadata),
    )


def write_datapoints(db: Session, integration: Integration, records: Iterable[DataPointRecord]) -> WriteResult:
    """Insert new facts for one integration; returns inserted/skipped counts.

    Keyed inserts run in their own savepoint so a concurrent writer that wins
    the unique constraint race turns into a skip instead of an error.
    """
    records = list(records)
    result = WriteResult()
    seen = _existing_keys(db, integration, records)

    for record in records:
        if not record.source_key:
            db.add(_to_model(integration, record))
            result.inserted += 1
            continue

        identity = (record.metric_type, record.source_key)
        if identity in seen:
            result.skipped += 1
            continue
        seen.add(identity)

        try:
            with db.begin_nested():
                db.add(_to_model(integration, record))
        except IntegrityError:
            logger.info(
                "[DATAPOINTS] %s %s already stored for integration %s",
                record.metric_type, record.source_key, integration.id,
            )
            result.skipped += 1
            continue
        result.inserted += 1

    db.flush()
    return result
