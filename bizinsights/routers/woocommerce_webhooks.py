"""WooCommerce webhook endpoint.

WHAT:
    POST /webhooks/woocommerce?org=<organization_id> ingests store events.
    OPTIONS answers CORS preflight; GET describes the endpoint.

WHY:
    WooCommerce webhooks are registered per store with the organization in
    the delivery URL, since the payload does not say which tenant it is for.
    Signatures use the per-store secret generated at connect time.

REFERENCES:
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#webhooks
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from bizinsights.database import get_db
from bizinsights.models import PlatformEnum
from bizinsights.services.ingestion_gateway import IngestionGateway
from bizinsights.services.providers.woocommerce import SUPPORTED_EVENTS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/woocommerce", tags=["WooCommerce Webhooks"])

ALLOWED_HEADERS = ", ".join([
    "Content-Type",
    "X-WC-Webhook-Topic",
    "X-WC-Webhook-Signature",
    "X-WC-Webhook-Source",
    "X-WC-Webhook-Delivery-ID",
])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": ALLOWED_HEADERS,
}


@router.post("")
async def receive_woocommerce_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    result = await asyncio.to_thread(
        IngestionGateway(db).receive,
        PlatformEnum.woocommerce,
        body,
        request.headers,
        request.query_params.get("org"),
    )
    return JSONResponse(status_code=result.status_code, content=result.body(), headers=CORS_HEADERS)


@router.options("")
async def woocommerce_webhook_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.get("")
async def woocommerce_webhook_info(request: Request):
    return {
        "message": "WooCommerce webhook endpoint",
        "organization_id": request.query_params.get("org"),
        "supported_events": SUPPORTED_EVENTS,
        "signature_header": "X-WC-Webhook-Signature",
    }
