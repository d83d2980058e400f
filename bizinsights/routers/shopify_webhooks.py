"""Shopify webhook endpoint.

WHAT:
    POST /webhooks/shopify receives every subscribed topic (orders/*,
    customers/*, app/uninstalled) and hands the raw bytes to the
    IngestionGateway. GET answers verification handshakes.

WHY:
    One endpoint for all topics keeps registration simple: the topic, shop
    and delivery id travel in headers.

HEADERS:
    X-Shopify-Hmac-Sha256   base64 HMAC-SHA256 of the raw body
    X-Shopify-Shop-Domain   mystore.myshopify.com
    X-Shopify-Topic         orders/create, app/uninstalled, ...
    X-Shopify-Webhook-Id    delivery id (idempotency key)

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from bizinsights.database import get_db
from bizinsights.models import PlatformEnum
from bizinsights.services.ingestion_gateway import IngestionGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


@router.post("")
async def receive_shopify_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    # Ingestion is blocking database work; keep it off the event loop
    result = await asyncio.to_thread(
        IngestionGateway(db).receive,
        PlatformEnum.shopify,
        body,
        request.headers,
        request.query_params.get("shop"),
    )
    return JSONResponse(status_code=result.status_code, content=result.body())


@router.get("")
async def shopify_webhook_info(request: Request):
    """Echo `hub.challenge` for verification; otherwise describe the endpoint. Never mutates state."""
    challenge: Optional[str] = request.query_params.get("hub.challenge")
    if challenge:
        logger.info("[SHOPIFY_WEBHOOK] Verification challenge echoed")
        return PlainTextResponse(challenge, status_code=200)
    return {"message": "Shopify webhook endpoint"}
