"""Inbound webhook pipeline shared by the Shopify, WooCommerce and Stripe routes.

WHAT:
    IngestionGateway.receive(platform, raw_body, headers, identifier) runs one
    delivery through:

        identify -> resolve active integration -> verify signature
        -> parse JSON -> ledger `received` -> translate -> write facts
        -> ledger `processed` + lastSyncAt

    and returns an IngestionResult carrying the HTTP status for the provider.

WHY:
    Providers retry on any non-2xx, so the status codes are the contract:
        200  accepted, duplicate, or topic not handled
        400  malformed (missing headers, bad JSON)
        401  signature mismatch
        404  no active integration
        500  translation/write failure (the provider will redeliver)

    Rejections that can be attributed to an integration are still written to
    the ledger for audit, under a generated external id.

REFERENCES:
    - bizinsights/services/event_ledger.py
    - bizinsights/services/signature_verifier.py
    - bizinsights/services/datapoint_writer.py
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qs
from uuid import UUID

from sqlalchemy.orm import Session

from bizinsights.deps import Settings, get_settings
from bizinsights.models import Integration, IntegrationStatusEnum, PlatformEnum, WebhookEventStatusEnum
from bizinsights.services import event_ledger, integration_lifecycle
from bizinsights.services.datapoint_writer import write_datapoints
from bizinsights.services.integration_metadata import load_metadata, save_metadata
from bizinsights.services.providers import ProviderAdapter, build_adapter
from bizinsights.services.providers.shopify import normalize_shop_domain
from bizinsights.services.providers.woocommerce import infer_topic
from bizinsights.services.signature_verifier import (
    SHOPIFY_SIGNATURE_HEADER,
    STRIPE_SIGNATURE_HEADER,
    get_header,
    verify,
)
from bizinsights.telemetry import capture_exception
from bizinsights.utils.dates import utcnow

logger = logging.getLogger(__name__)

# A running backfill does not pause webhook delivery
RECEIVING_STATUSES = (IntegrationStatusEnum.active, IntegrationStatusEnum.syncing)

LOG_TAGS = {
    PlatformEnum.shopify: "SHOPIFY_WEBHOOK",
    PlatformEnum.woocommerce: "WOO_WEBHOOK",
    PlatformEnum.stripe: "STRIPE_WEBHOOK",
}


@dataclass
class IngestionResult:
    accepted: bool
    status_code: int
    reason: str
    topic: Optional[str] = None
    external_id: Optional[str] = None
    duplicate: bool = False
    integration_id: Optional[UUID] = None
    datapoints_written: int = 0

    def body(self) -> Dict[str, Any]:
        if not self.accepted:
            return {"error": self.reason}
        body: Dict[str, Any] = {"success": True, "message": self.reason}
        if self.topic:
            body["topic"] = self.topic
        if self.duplicate:
            body["duplicate"] = True
        return body


@dataclass
class _Delivery:
    """What one request claims to be, before anything is trusted."""
    integration: Integration
    topic: Optional[str]
    delivery_id: Optional[str]
    secret: Optional[str]


AdapterFactory = Callable[[Integration, Settings], ProviderAdapter]


def _translation_adapter(integration: Integration, settings: Settings) -> ProviderAdapter:
    return build_adapter(integration, settings, with_credentials=False)


def _reject(status_code: int, reason: str, **kwargs: Any) -> IngestionResult:
    return IngestionResult(accepted=False, status_code=status_code, reason=reason, **kwargs)


class IngestionGateway:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        adapter_factory: AdapterFactory = _translation_adapter,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.adapter_factory = adapter_factory

    # ================================================================
    # Entry point
    # ================================================================

    def receive(
        self,
        platform: PlatformEnum,
        raw_body: bytes,
        headers: Mapping[str, str],
        identifier: Optional[str] = None,
    ) -> IngestionResult:
        tag = LOG_TAGS.get(platform, "INGESTION")

        if platform == PlatformEnum.woocommerce and self._is_woocommerce_ping(raw_body, headers):
            logger.info(f"[{tag}] Webhook creation ping acknowledged")
            return IngestionResult(accepted=True, status_code=200, reason="Webhook ping acknowledged")

        delivery_or_error = self._identify(platform, headers, identifier)
        if isinstance(delivery_or_error, IngestionResult):
            logger.warning(f"[{tag}] Rejected ({delivery_or_error.status_code}): {delivery_or_error.reason}")
            return delivery_or_error
        delivery = delivery_or_error
        integration = delivery.integration

        if not verify(
            platform,
            raw_body,
            headers,
            delivery.secret,
            stripe_tolerance=self.settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
        ):
            event_ledger.record_rejected(
                self.db,
                integration,
                delivery.topic,
                WebhookEventStatusEnum.signature_verification_failed,
                "Invalid webhook signature",
                delivery_id=delivery.delivery_id,
            )
            logger.warning(f"[{tag}] Invalid signature for integration {integration.id}")
            return _reject(401, "Invalid signature", topic=delivery.topic, integration_id=integration.id)

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            return self._invalid_payload(tag, delivery, f"Invalid JSON: {e}")
        if not isinstance(payload, dict):
            return self._invalid_payload(tag, delivery, "JSON body is not an object")

        topic, external_id, ledger_meta = self._event_identity(platform, delivery, payload, headers)
        if not topic or not external_id:
            return self._invalid_payload(tag, delivery, "Cannot determine event topic or id")

        return self._process(tag, integration, topic, external_id, payload, ledger_meta)

    # ================================================================
    # Identification
    # ================================================================

    @staticmethod
    def _is_woocommerce_ping(raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if get_header(headers, "X-WC-Webhook-Topic"):
            return False
        try:
            form = parse_qs(raw_body.decode("utf-8"), strict_parsing=True)
        except (UnicodeDecodeError, ValueError):
            return False
        return list(form) == ["webhook_id"]

    def _active_integration(self, platform: PlatformEnum, **filters: Any) -> Optional[Integration]:
        query = self.db.query(Integration).filter(
            Integration.platform == platform,
            Integration.status.in_(RECEIVING_STATUSES),
        )
        for column, value in filters.items():
            query = query.filter(getattr(Integration, column) == value)
        return query.first()

    def _identify(
        self,
        platform: PlatformEnum,
        headers: Mapping[str, str],
        identifier: Optional[str],
    ) -> Union[_Delivery, IngestionResult]:
        """Resolve the integration and the claimed topic/delivery id.

        Returns a _Delivery, or an IngestionResult rejection (400/404).
        """
        if platform == PlatformEnum.shopify:
            signature = get_header(headers, SHOPIFY_SIGNATURE_HEADER)
            shop = get_header(headers, "X-Shopify-Shop-Domain") or identifier
            topic = get_header(headers, "X-Shopify-Topic")
            if not signature or not shop or not topic:
                return _reject(400, "Missing required Shopify headers")
            integration = self._active_integration(platform, platform_account_id=normalize_shop_domain(shop))
            if not integration:
                return _reject(404, f"No active integration for shop {shop}", topic=topic)
            meta = load_metadata(integration)
            secret = (
                meta.webhook_secret
                or self.settings.SHOPIFY_WEBHOOK_SECRET
                or self.settings.SHOPIFY_CLIENT_SECRET
            )
            return _Delivery(integration, topic, get_header(headers, "X-Shopify-Webhook-Id"), secret)

        if platform in (PlatformEnum.woocommerce, PlatformEnum.stripe):
            if not identifier:
                return _reject(400, "Missing organization ID")
            if platform == PlatformEnum.stripe and not get_header(headers, STRIPE_SIGNATURE_HEADER):
                return _reject(400, "Missing stripe-signature header")
            try:
                organization_id = UUID(identifier)
            except ValueError:
                return _reject(400, "Invalid organization ID")
            integration = self._active_integration(platform, organization_id=organization_id)
            if not integration:
                return _reject(404, "Integration not found")
            meta = load_metadata(integration)
            if platform == PlatformEnum.woocommerce:
                return _Delivery(
                    integration,
                    get_header(headers, "X-WC-Webhook-Topic"),
                    get_header(headers, "X-WC-Webhook-Delivery-ID"),
                    meta.webhook_secret or self.settings.WOOCOMMERCE_WEBHOOK_SECRET,
                )
            return _Delivery(integration, None, None, meta.webhook_secret or self.settings.STRIPE_WEBHOOK_SECRET)

        return _reject(400, f"{platform.value} does not send webhooks")

    @staticmethod
    def _event_identity(
        platform: PlatformEnum,
        delivery: _Delivery,
        payload: Dict[str, Any],
        headers: Mapping[str, str],
    ) -> Tuple[Optional[str], Optional[str], Dict[str, Any]]:
        """(topic, external_id, ledger metadata) once the body is trusted."""
        if platform == PlatformEnum.stripe:
            obj = (payload.get("data") or {}).get("object") or {}
            return payload.get("type"), payload.get("id"), {
                "livemode": payload.get("livemode"),
                "api_version": payload.get("api_version"),
                "account": payload.get("account"),
                "object_id": obj.get("id") if isinstance(obj, dict) else None,
            }

        payload_id = payload.get("id")
        if platform == PlatformEnum.woocommerce:
            topic = delivery.topic or infer_topic(payload)
            external_id = delivery.delivery_id or (f"wc_{payload_id}" if payload_id is not None else None)
            return topic, external_id, {
                "source": get_header(headers, "X-WC-Webhook-Source"),
                "resource_id": payload_id,
                "topic_inferred": delivery.topic is None,
            }

        external_id = delivery.delivery_id or (str(payload_id) if payload_id is not None else None)
        return delivery.topic, external_id, {
            "shop_domain": delivery.integration.platform_account_id,
            "resource_id": payload_id,
        }

    def _invalid_payload(self, tag: str, delivery: _Delivery, error: str) -> IngestionResult:
        event_ledger.record_rejected(
            self.db,
            delivery.integration,
            delivery.topic,
            WebhookEventStatusEnum.invalid_json,
            error,
            delivery_id=delivery.delivery_id,
        )
        logger.warning(f"[{tag}] {error} (integration {delivery.integration.id})")
        return _reject(400, "Invalid payload", topic=delivery.topic, integration_id=delivery.integration.id)

    # ================================================================
    # Processing
    # ================================================================

    def _process(
        self,
        tag: str,
        integration: Integration,
        topic: str,
        external_id: str,
        payload: Dict[str, Any],
        ledger_meta: Dict[str, Any],
    ) -> IngestionResult:
        adapter = self.adapter_factory(integration, self.settings)
        disconnects = adapter.is_disconnect_topic(topic)
        handled = disconnects or adapter.handles(topic)
        result_base = {"topic": topic, "external_id": external_id, "integration_id": integration.id}

        claim = event_ledger.record_received(
            self.db, integration, topic, external_id, ledger_meta, handled=handled
        )
        if claim.duplicate:
            return IngestionResult(accepted=True, status_code=200, reason="Already processed", duplicate=True,
                                   **result_base)
        entry = claim.entry

        if disconnects:
            event_ledger.mark_processed(self.db, entry, {"action": "disconnect"})
            integration_lifecycle.disconnect(self.db, integration, reason=topic)
            logger.info(f"[{tag}] {topic}: integration {integration.id} disconnected")
            return IngestionResult(accepted=True, status_code=200, reason="Integration disconnected", **result_base)

        if not handled:
            logger.info(f"[{tag}] Unhandled topic {topic} for integration {integration.id}, recorded only")
            return IngestionResult(accepted=True, status_code=200, reason="Topic not handled", **result_base)

        try:
            records = adapter.translate(topic, payload)
            with self.db.begin_nested():
                written = write_datapoints(self.db, integration, records)
            event_ledger.mark_processed(
                self.db, entry, {"datapoints": written.inserted, "skipped": written.skipped}
            )
            self._record_liveness(integration, topic)
            integration_lifecycle.touch(integration)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.exception(f"[{tag}] Failed to process {topic} {external_id}: {e}")
            capture_exception(e, extra={
                "platform": integration.platform.value,
                "integration_id": str(integration.id),
                "topic": topic,
            })
            event_ledger.mark_failed(self.db, entry, str(e) or e.__class__.__name__)
            return _reject(500, "Processing failed", **result_base)

        logger.info(
            f"[{tag}] Processed {topic} {external_id} for integration {integration.id}: "
            f"{written.inserted} datapoints ({written.skipped} already stored)"
        )
        return IngestionResult(
            accepted=True,
            status_code=200,
            reason="Webhook processed",
            datapoints_written=written.inserted,
            **result_base,
        )

    def _record_liveness(self, integration: Integration, topic: str) -> None:
        # Row lock, then a fresh read: concurrent deliveries and lifecycle changes share this blob
        integration = (
            self.db.query(Integration)
            .filter(Integration.id == integration.id)
            .populate_existing()
            .with_for_update()
            .one()
        )
        meta = load_metadata(integration)
        meta.last_webhook_at = utcnow()
        meta.last_webhook_topic = topic
        meta.total_webhooks_processed += 1
        save_metadata(integration, meta)
