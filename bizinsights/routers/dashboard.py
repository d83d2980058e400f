"""Dashboard metrics endpoint.

WHAT:
    GET /dashboard/{organization_id}/metrics?days=30 returns the aggregated
    current-vs-previous metrics, daily chart series, traffic sources, the
    organization's integrations and its latest insights in one response.

WHY:
    The dashboard renders from a single request; everything here is read
    only and computed on the fly from DataPoints.

REFERENCES:
    - bizinsights/services/metric_aggregation.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_current_user, require_membership
from ..models import Insight, Integration, User
from ..services import metric_aggregation
from ..telemetry import capture_exception
from ..utils.dates import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])

INSIGHT_LIMIT = 10


def _status_message(integration_count: int, has_data: bool) -> str:
    if integration_count == 0:
        return "Connect your first integration to see real data"
    if not has_data:
        return "Integrations connected. Syncing data now..."
    plural = "s" if integration_count != 1 else ""
    return f"Live data from {integration_count} connected integration{plural}"


@router.get("/{organization_id}/metrics")
def get_dashboard_metrics(
    organization_id: UUID,
    days: int = Query(30, ge=1, le=365, description="Window size in days"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_membership(db, current_user, organization_id)

    try:
        aggregated = metric_aggregation.compute(db, organization_id, days)
    except Exception as e:
        logger.exception(f"[DASHBOARD] Aggregation failed for org {organization_id}: {e}")
        capture_exception(e, extra={"organization_id": str(organization_id), "days": days})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to compute metrics")

    integrations = (
        db.query(Integration)
        .filter(Integration.organization_id == organization_id)
        .order_by(Integration.created_at.asc())
        .all()
    )
    insights = []
    if aggregated["has_data"]:
        insights = (
            db.query(Insight)
            .filter(Insight.organization_id == organization_id)
            .order_by(Insight.created_at.desc())
            .limit(INSIGHT_LIMIT)
            .all()
        )

    return {
        **aggregated,
        "integrations": [schemas.DashboardIntegration.model_validate(i).model_dump(mode="json") for i in integrations],
        "insights": [schemas.InsightOut.model_validate(i).model_dump(mode="json") for i in insights],
        "message": _status_message(len(integrations), aggregated["has_data"]),
        "last_updated": utcnow().isoformat(),
    }
