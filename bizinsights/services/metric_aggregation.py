"""Period-over-period metric aggregation for the dashboard.

WHAT:
    compute(db, organization_id, days) sums persisted DataPoints for the
    current window [now - days, now] and the previous window
    [now - 2*days, now - days), derives conversion rate and average order
    value, and classifies each metric's trend.

WHY:
    Reads only DataPoints reached through the organization's integrations
    (disconnected ones included, their history stays valid) and never calls a
    provider, so the result is deterministic for a given `now`.

    Derived metrics are never stored: conversion_rate = orders / sessions * 100
    and average_order_value = revenue / orders, both 0 on a zero denominator.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from bizinsights.models import DataPoint, Integration
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

SUMMED_METRICS = ("revenue", "orders", "customers", "sessions")
CHART_METRICS = ("revenue", "orders", "sessions")
DEFAULT_TRAFFIC_SOURCE = "Direct"


def _round(value: float) -> float:
    return round(value, 2)


def trend(change: float) -> str:
    if change > 0:
        return "up"
    if change < 0:
        return "down"
    return "neutral"


def metric_summary(current: float, previous: float) -> Dict[str, Any]:
    """{current, previous, change, change_percent, trend}; change_percent is 0 when previous is 0."""
    change = current - previous
    change_percent = (change / previous) * 100 if previous else 0.0
    return {
        "current": _round(current),
        "previous": _round(previous),
        "change": _round(change),
        "change_percent": _round(change_percent),
        "trend": trend(change),
    }


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return numerator / denominator * scale if denominator else 0.0


def _org_points(db: Session, organization_id: UUID):
    return db.query(DataPoint).join(Integration, DataPoint.integration_id == Integration.id).filter(
        Integration.organization_id == organization_id
    )


def _sums(
    db: Session,
    organization_id: UUID,
    start: datetime,
    end: datetime,
    include_end: bool,
    metric_types: Iterable[str] = SUMMED_METRICS,
) -> Dict[str, float]:
    upper = DataPoint.date_recorded <= end if include_end else DataPoint.date_recorded < end
    rows = (
        db.query(DataPoint.metric_type, func.sum(DataPoint.value))
        .join(Integration, DataPoint.integration_id == Integration.id)
        .filter(
            Integration.organization_id == organization_id,
            DataPoint.metric_type.in_(list(metric_types)),
            DataPoint.date_recorded >= start,
            upper,
        )
        .group_by(DataPoint.metric_type)
        .all()
    )
    totals = {metric: 0.0 for metric in metric_types}
    for metric_type, total in rows:
        totals[metric_type] = float(total or Decimal(0))
    return totals


def _chart_data(db: Session, organization_id: UUID, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    days: Dict[str, Dict[str, Any]] = {}
    day = start.date()
    while day <= end.date():
        key = day.isoformat()
        days[key] = {"date": key, **{metric: 0.0 for metric in CHART_METRICS}}
        day += timedelta(days=1)

    points = (
        _org_points(db, organization_id)
        .filter(
            DataPoint.metric_type.in_(CHART_METRICS),
            DataPoint.date_recorded >= start,
            DataPoint.date_recorded <= end,
        )
        .with_entities(DataPoint.metric_type, DataPoint.value, DataPoint.date_recorded)
        .all()
    )
    for metric_type, value, recorded in points:
        bucket = days.get(recorded.date().isoformat())
        if bucket is not None:
            bucket[metric_type] += float(value)

    for bucket in days.values():
        for metric in CHART_METRICS:
            bucket[metric] = _round(bucket[metric])
    return list(days.values())


def _traffic_sources(db: Session, organization_id: UUID, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    points = (
        _org_points(db, organization_id)
        .filter(
            DataPoint.metric_type == "sessions",
            DataPoint.date_recorded >= start,
            DataPoint.date_recorded <= end,
        )
        .with_entities(DataPoint.value, DataPoint.meta)
        .all()
    )
    by_source: Dict[str, float] = defaultdict(float)
    for value, meta in points:
        by_source[(meta or {}).get("source") or DEFAULT_TRAFFIC_SOURCE] += float(value)

    total = sum(by_source.values())
    return [
        {"source": source, "sessions": _round(sessions), "percentage": _round(_ratio(sessions, total, 100))}
        for source, sessions in sorted(by_source.items(), key=lambda item: item[1], reverse=True)
    ]


def compute(db: Session, organization_id: UUID, days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current-vs-previous metrics for one organization. Side-effect free."""
    if days < 1:
        raise ValueError("days must be at least 1")

    end = now or utcnow()
    start = end - timedelta(days=days)
    previous_start = start - timedelta(days=days)

    current = _sums(db, organization_id, start, end, include_end=True)
    previous = _sums(db, organization_id, previous_start, start, include_end=False)

    metrics = {metric: metric_summary(current[metric], previous[metric]) for metric in SUMMED_METRICS}
    metrics["conversion_rate"] = metric_summary(
        _ratio(current["orders"], current["sessions"], 100),
        _ratio(previous["orders"], previous["sessions"], 100),
    )
    metrics["average_order_value"] = metric_summary(
        _ratio(current["revenue"], current["orders"]),
        _ratio(previous["revenue"], previous["orders"]),
    )

    has_data = _org_points(db, organization_id).first() is not None
    logger.debug(f"[AGGREGATION] org={organization_id} days={days} has_data={has_data}")

    return {
        "metrics": metrics,
        "chart_data": _chart_data(db, organization_id, start, end),
        "traffic_sources": _traffic_sources(db, organization_id, start, end),
        "period": {"start": start.isoformat(), "end": end.isoformat(), "days": days},
        "has_data": has_data,
    }


def empty_metrics() -> Dict[str, Any]:
    return {metric: metric_summary(0.0, 0.0) for metric in (*SUMMED_METRICS, "conversion_rate", "average_order_value")}
