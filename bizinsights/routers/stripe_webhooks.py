"""Stripe webhook endpoint.

POST /webhooks/stripe?org=<organization_id> verifies the `Stripe-Signature`
header (HMAC-SHA256 over "{t}.{body}", 5 minute tolerance) and ingests the
event; GET describes the endpoint.

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-manually
"""

import asyncio

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from bizinsights.database import get_db
from bizinsights.models import PlatformEnum
from bizinsights.services.ingestion_gateway import IngestionGateway
from bizinsights.services.providers.stripe import StripeAdapter

router = APIRouter(prefix="/webhooks/stripe", tags=["Stripe Webhooks"])


@router.post("")
async def receive_stripe_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    result = await asyncio.to_thread(
        IngestionGateway(db).receive,
        PlatformEnum.stripe,
        body,
        request.headers,
        request.query_params.get("org"),
    )
    return JSONResponse(status_code=result.status_code, content=result.body())


@router.get("")
async def stripe_webhook_info():
    return {
        "message": "Stripe webhook endpoint",
        "supported_events": sorted(StripeAdapter.handled_topics | StripeAdapter.disconnect_topics),
    }
