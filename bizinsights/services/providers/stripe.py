"""Stripe adapter (Stripe Connect OAuth).

WHAT:
    Maps Stripe Event envelopes to DataPoints, backfills charges and customers
    through the REST API, refreshes Connect access tokens.

WHY:
    Connected accounts authorize through Stripe Connect OAuth; the access
    token is a secret key for the connected account and can be rotated with
    the stored refresh token.

REFERENCES:
    - https://docs.stripe.com/api/events/types
    - https://docs.stripe.com/connect/oauth-reference
    - https://docs.stripe.com/currencies#zero-decimal
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bizinsights.models import PlatformEnum
from bizinsights.services.providers.base import (
    DataPointRecord,
    ProviderAdapter,
    ProviderAPIError,
    TokenBundle,
    TranslationError,
    to_decimal,
)
from bizinsights.utils.dates import parse_timestamp, to_unix_seconds

logger = logging.getLogger(__name__)

API_BASE = "https://api.stripe.com/v1"
CONNECT_TOKEN_URL = "https://connect.stripe.com/oauth/token"
CONNECT_AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"
PAGE_LIMIT = 100

ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg",
    "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})

DEAUTHORIZE_TOPIC = "account.application.deauthorized"

# (metric_type, key prefix) for events that count one occurrence
_COUNT_EVENTS = {
    "charge.failed": ("charge_failed", "charge"),
    "payment_intent.payment_failed": ("payment_failed", "payment_intent"),
    "customer.subscription.created": ("subscription_created", "subscription"),
    "invoice.payment_succeeded": ("invoice_paid", "invoice"),
    "invoice.payment_failed": ("invoice_payment_failed", "invoice"),
}


def to_major_units(amount: Any, currency: Optional[str]) -> Decimal:
    value = to_decimal(amount)
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return value
    return value / Decimal(100)


class StripeAdapter(ProviderAdapter):
    platform = PlatformEnum.stripe
    log_tag = "STRIPE"

    supports_refresh = True
    handled_topics = frozenset(
        {"charge.succeeded", "charge.refunded", "charge.dispute.created", "customer.created"} | set(_COUNT_EVENTS)
    )
    disconnect_topics = frozenset({DEAUTHORIZE_TOPIC})

    def __init__(self, account_id: str, access_token: Optional[str] = None, refresh_token: Optional[str] = None,
                 *, client_secret: Optional[str] = None, **kwargs: Any):
        super().__init__(account_id, access_token, refresh_token, **kwargs)
        # Platform secret key, used only against the Connect token endpoint
        self.client_secret = client_secret

    # ------------------------------------------------------------------
    # Webhook translation
    # ------------------------------------------------------------------

    def translate(self, topic: str, payload: Dict[str, Any]) -> List[DataPointRecord]:
        obj = (payload.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise TranslationError("Stripe event has no data.object")
        previous = (payload.get("data") or {}).get("previous_attributes") or {}
        return self._translate_object(topic, obj, processed_at=self._clock(), previous=previous)

    def _translate_object(self, topic: str, obj: Dict[str, Any], processed_at: datetime,
                          previous: Optional[Dict[str, Any]] = None) -> List[DataPointRecord]:
        object_id = obj.get("id")
        if object_id is None:
            raise TranslationError(f"{topic} object has no id")

        created = parse_timestamp(obj.get("created")) or self._clock()
        currency = obj.get("currency")

        if topic == "charge.succeeded":
            meta = {"charge_id": object_id, "currency": currency, "customer_id": obj.get("customer")}
            return [
                DataPointRecord(
                    "revenue",
                    to_major_units(obj.get("amount"), currency),
                    processed_at,
                    {**meta, "original_charge_date": created.isoformat()},
                    f"charge:{object_id}",
                ),
                DataPointRecord("charge_succeeded", to_decimal(1), created, meta, f"charge:{object_id}"),
            ]

        if topic == "charge.refunded":
            # amount_refunded is the charge's running total; store only this step's increase
            refunded = int(obj.get("amount_refunded") or 0)
            already_refunded = int((previous or {}).get("amount_refunded") or 0)
            increase = refunded - already_refunded
            if increase <= 0:
                logger.info(f"[STRIPE] charge.refunded for {object_id} without a new refunded amount")
                return []
            return [DataPointRecord(
                "refunds",
                to_major_units(increase, currency),
                processed_at,
                {"charge_id": object_id, "currency": currency, "amount_refunded_total": refunded},
                f"charge:{object_id}:{refunded}",
            )]

        if topic == "charge.dispute.created":
            return [DataPointRecord(
                "chargeback",
                to_major_units(obj.get("amount"), currency),
                created,
                {"dispute_id": object_id, "charge_id": obj.get("charge"), "reason": obj.get("reason")},
                f"dispute:{object_id}",
            )]

        if topic == "customer.created":
            meta = {"customer_id": object_id}
            key = f"customer:{object_id}"
            return [
                DataPointRecord("customers", to_decimal(1), created, meta, key),
                DataPointRecord("customer_created", to_decimal(1), created, dict(meta), key),
            ]

        if topic in _COUNT_EVENTS:
            metric_type, prefix = _COUNT_EVENTS[topic]
            meta = {f"{prefix}_id": object_id, "currency": currency}
            if topic.startswith("invoice."):
                meta["amount_paid"] = str(to_major_units(obj.get("amount_paid"), currency))
            return [DataPointRecord(metric_type, to_decimal(1), created, meta, f"{prefix}:{object_id}")]

        return []

    # ------------------------------------------------------------------
    # REST API
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise ProviderAPIError("Stripe access token missing", status_code=401)
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _list(self, resource: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Cursor pagination with starting_after while has_more."""
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            "limit": PAGE_LIMIT,
            "created[gte]": to_unix_seconds(start),
            "created[lte]": to_unix_seconds(end),
        }
        while True:
            response = await self._request("GET", f"{API_BASE}/{resource}", headers=self._headers(), params=params)
            body = response.json()
            page = body.get("data", [])
            items.extend(page)
            if not body.get("has_more") or not page:
                break
            params["starting_after"] = page[-1]["id"]
        logger.info(f"[STRIPE] Fetched {len(items)} {resource} for {self.account_id}")
        return items

    async def fetch_range(self, start: datetime, end: datetime) -> List[DataPointRecord]:
        points: List[DataPointRecord] = []
        for charge in await self._list("charges", start, end):
            created = parse_timestamp(charge.get("created")) or self._clock()
            if charge.get("status") == "succeeded" and charge.get("paid", True):
                # Historical charges are recognized when Stripe captured them
                points.extend(self._translate_object("charge.succeeded", charge, processed_at=created))
            elif charge.get("status") == "failed":
                points.extend(self._translate_object("charge.failed", charge, processed_at=created))
        for customer in await self._list("customers", start, end):
            points.extend(self._translate_object("customer.created", customer, processed_at=self._clock()))
        return points

    async def refresh_access_token(self) -> TokenBundle:
        if not self.refresh_token or not self.client_secret:
            raise ProviderAPIError("Stripe refresh token or client secret missing", status_code=401)
        response = await self._request(
            "POST",
            CONNECT_TOKEN_URL,
            data={"grant_type": "refresh_token", "refresh_token": self.refresh_token},
            auth=(self.client_secret, ""),
        )
        data = response.json()
        if not data.get("access_token"):
            raise ProviderAPIError("Stripe refresh returned no access token", status_code=401)
        logger.info(f"[STRIPE] Refreshed access token for {self.account_id}")
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", self.refresh_token),
            scope=data.get("scope"),
        )

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Connect OAuth callback: code -> access/refresh token + stripe_user_id."""
        if not self.client_secret:
            raise ProviderAPIError("Stripe client secret not configured")
        response = await self._request(
            "POST",
            CONNECT_TOKEN_URL,
            data={"grant_type": "authorization_code", "code": code},
            auth=(self.client_secret, ""),
        )
        data = response.json()
        if not data.get("access_token") or not data.get("stripe_user_id"):
            raise ProviderAPIError("Invalid Stripe token response")
        return data

