"""Tests for the integration management API.

WHAT: List/detail/disconnect, scope management, manual sync (rate limit,
      queue outage), sync status, webhook ledger browsing and the
      WooCommerce connect flow
WHY: These endpoints gate every operation on organization membership; a
     foreign integration must look exactly like a missing one

REFERENCES:
  - bizinsights/routers/integrations.py
  - bizinsights/deps.py (membership checks)
"""

import pytest

from bizinsights.models import (
    Integration,
    IntegrationStatusEnum,
    OrganizationMember,
    PlatformEnum,
    RoleEnum,
    User,
    WebhookEvent,
    WebhookEventStatusEnum,
)
from bizinsights.routers import integrations as integrations_router
from bizinsights.security import create_access_token, decrypt_secret
from bizinsights.services import event_ledger
from bizinsights.services.integration_metadata import load_metadata
from bizinsights.services.providers import ProviderAPIError, WooCommerceAdapter


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def enqueued(monkeypatch):
    """Capture enqueue_backfill_job calls instead of talking to Redis."""
    calls = []

    async def fake_enqueue(integration_id, days, reason="manual_sync", ledger_entry_id=None):
        calls.append({"integration_id": integration_id, "days": days, "reason": reason,
                      "ledger_entry_id": ledger_entry_id})
        return {"job_id": f"job-{len(calls)}", "status": "enqueued"}

    monkeypatch.setattr(integrations_router, "enqueue_backfill_job", fake_enqueue)
    return calls


@pytest.fixture
def viewer_headers(test_db_session, test_organization):
    user = User(email="viewer@example.com", name="Viewer")
    test_db_session.add(user)
    test_db_session.flush()
    test_db_session.add(OrganizationMember(
        organization_id=test_organization.id, user_id=user.id, role=RoleEnum.viewer,
    ))
    test_db_session.commit()
    return {"Authorization": f"Bearer {create_access_token(user.email)}"}


# ============================================================================
# List / detail / disconnect
# ============================================================================

class TestListAndDetail:
    def test_list(self, client, auth_headers, test_organization, shopify_integration, stripe_integration):
        response = client.get(
            "/integrations", params={"organization_id": str(test_organization.id)}, headers=auth_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {i["platform"] for i in body["integrations"]} == {"shopify", "stripe"}
        assert "access_token_enc" not in body["integrations"][0]

    def test_list_requires_membership(self, client, outsider_headers, test_organization):
        response = client.get(
            "/integrations", params={"organization_id": str(test_organization.id)}, headers=outsider_headers
        )
        assert response.status_code == 403

    def test_unauthenticated(self, client, test_organization):
        response = client.get("/integrations", params={"organization_id": str(test_organization.id)})
        assert response.status_code == 401

    def test_detail(self, client, auth_headers, shopify_integration):
        response = client.get(f"/integrations/{shopify_integration.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["platform_account_id"] == "test-store.myshopify.com"

    def test_foreign_integration_is_not_found(self, client, outsider_headers, shopify_integration):
        response = client.get(f"/integrations/{shopify_integration.id}", headers=outsider_headers)
        assert response.status_code == 404

    def test_disconnect(self, client, auth_headers, test_db_session, shopify_integration):
        response = client.delete(f"/integrations/{shopify_integration.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "disconnected"
        test_db_session.refresh(shopify_integration)
        assert shopify_integration.access_token_enc is None

        again = client.delete(f"/integrations/{shopify_integration.id}", headers=auth_headers)
        assert again.status_code == 400

    def test_viewer_cannot_disconnect(self, client, viewer_headers, shopify_integration):
        response = client.delete(f"/integrations/{shopify_integration.id}", headers=viewer_headers)
        assert response.status_code == 403


# ============================================================================
# Scopes
# ============================================================================

class TestScopes:
    def test_get_scopes(self, client, auth_headers, shopify_integration):
        response = client.get(f"/integrations/{shopify_integration.id}/scopes", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["granted_scopes"] == ["read_orders", "read_customers"]
        assert body["validation"]["valid"] is True
        assert any(scope["id"] == "read_products" for scope in body["available_scopes"])

    def test_adding_scope_requires_reconnection(self, client, auth_headers, test_db_session, shopify_integration):
        response = client.put(
            f"/integrations/{shopify_integration.id}/scopes",
            json={"scopes": ["read_orders", "read_products"]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["added"] == ["read_products"]
        assert body["removed"] == []
        assert body["requires_reconnection"] is True
        test_db_session.refresh(shopify_integration)
        assert load_metadata(shopify_integration).scope_update_pending is True

    def test_unchanged_scopes(self, client, auth_headers, shopify_integration):
        response = client.put(
            f"/integrations/{shopify_integration.id}/scopes",
            json={"scopes": ["read_orders", "read_customers"]},
            headers=auth_headers,
        )
        assert response.json()["changed"] is False

    def test_invalid_scopes_rejected(self, client, auth_headers, shopify_integration):
        response = client.put(
            f"/integrations/{shopify_integration.id}/scopes",
            json={"scopes": ["write_everything"]},
            headers=auth_headers,
        )

        assert response.status_code == 400
        validation = response.json()["detail"]["validation"]
        assert validation["invalid"] == ["write_everything"]
        assert "read_orders" in validation["missing"]

    def test_validate_endpoint_resolves_dependencies(self, client, auth_headers):
        response = client.post(
            "/integrations/scopes/validate",
            json={"platform": "shopify", "scopes": ["read_orders"]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        validation = response.json()["validation"]
        assert validation["valid"] is True
        assert "read_customers" in validation["resolved"]


# ============================================================================
# Manual sync
# ============================================================================

class TestManualSync:
    def test_sync_is_enqueued(self, client, auth_headers, test_db_session, shopify_integration, enqueued):
        response = client.post(
            f"/integrations/{shopify_integration.id}/sync", json={"sync_type": "full"}, headers=auth_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["days"] == 730
        assert body["job_id"] == "job-1"
        assert enqueued[0]["reason"] == "manual_sync"
        assert str(enqueued[0]["ledger_entry_id"]) == body["ledger_entry_id"]
        entry = test_db_session.query(WebhookEvent).filter(WebhookEvent.topic == event_ledger.MANUAL_SYNC_TOPIC).one()
        assert entry.meta["sync_type"] == "full"

    def test_first_incremental_sync_reaches_back_a_year(self, client, auth_headers, shopify_integration, enqueued):
        response = client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers)
        assert response.json()["days"] == 365

    def test_inactive_integration_rejected(self, client, auth_headers, make_integration, test_organization, enqueued):
        integration = make_integration(
            test_organization, PlatformEnum.woocommerce, "https://other.example.com",
            status=IntegrationStatusEnum.error,
        )
        response = client.post(f"/integrations/{integration.id}/sync", headers=auth_headers)

        assert response.status_code == 400
        assert enqueued == []

    def test_rate_limited(self, client, auth_headers, shopify_integration, enqueued):
        for _ in range(2):
            assert client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers).status_code == 200

        response = client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["detail"]["retry_after"] > 0

    def test_force_bypasses_rate_limit(self, client, auth_headers, shopify_integration, enqueued):
        for _ in range(2):
            client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers)

        response = client.post(
            f"/integrations/{shopify_integration.id}/sync", json={"force": True}, headers=auth_headers
        )
        assert response.status_code == 200

    def test_viewer_cannot_sync(self, client, viewer_headers, shopify_integration, enqueued):
        response = client.post(f"/integrations/{shopify_integration.id}/sync", headers=viewer_headers)
        assert response.status_code == 403

    def test_queue_outage(self, client, auth_headers, test_db_session, shopify_integration, monkeypatch):
        async def broken_enqueue(*args, **kwargs):
            raise ConnectionError("redis down")

        monkeypatch.setattr(integrations_router, "enqueue_backfill_job", broken_enqueue)

        response = client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers)

        assert response.status_code == 503
        entry = test_db_session.query(WebhookEvent).one()
        assert entry.status == WebhookEventStatusEnum.failed

    def test_sync_status(self, client, auth_headers, shopify_integration, enqueued):
        client.post(f"/integrations/{shopify_integration.id}/sync", headers=auth_headers)

        response = client.get(f"/integrations/{shopify_integration.id}/sync/status", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["sync_in_progress"] is True
        assert 0 <= body["health"]["score"] <= 100


class TestWebhookEvents:
    def test_lists_ledger_entries(self, client, auth_headers, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        event_ledger.mark_processed(test_db_session, claim.entry)
        test_db_session.commit()

        response = client.get(f"/integrations/{shopify_integration.id}/webhook-events", headers=auth_headers)

        assert response.status_code == 200
        events = response.json()
        assert len(events) == 1
        assert events[0]["topic"] == "orders/create"
        assert events[0]["status"] == "processed"


# ============================================================================
# WooCommerce connect
# ============================================================================

@pytest.fixture
def woo_store(monkeypatch):
    """Fake store: connection test passes, webhook registration returns ids."""
    state = {"registered": [], "initial_sync": []}

    async def test_connection(self):
        return {"environment": {"version": "8.5.0"}}

    async def register_webhooks(self, delivery_url, secret):
        state["registered"].append((delivery_url, secret))
        return ["11", "12", "13"]

    async def enqueue_initial_sync(db, integration):
        state["initial_sync"].append(integration.id)
        return {"job_id": "job-initial", "status": "enqueued"}

    monkeypatch.setattr(WooCommerceAdapter, "test_connection", test_connection)
    monkeypatch.setattr(WooCommerceAdapter, "register_webhooks", register_webhooks)
    monkeypatch.setattr(integrations_router, "enqueue_initial_sync", enqueue_initial_sync)
    return state


def woo_connect_body(organization):
    return {
        "organization_id": str(organization.id),
        "store_url": "shop.example.com/",
        "consumer_key": "ck_test",
        "consumer_secret": "cs_test",
    }


class TestWooCommerceConnect:
    def test_connect(self, client, auth_headers, test_db_session, test_organization, woo_store):
        response = client.post(
            "/integrations/woocommerce/connect", json=woo_connect_body(test_organization), headers=auth_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["integration"]["platform_account_id"] == "https://shop.example.com"
        assert body["webhooks_registered"] == 3
        assert body["initial_sync"]["job_id"] == "job-initial"

        delivery_url, secret = woo_store["registered"][0]
        assert delivery_url.endswith(f"/webhooks/woocommerce?org={test_organization.id}")

        integration = test_db_session.query(Integration).one()
        meta = load_metadata(integration)
        assert meta.webhook_secret == secret
        assert meta.webhook_ids == ["11", "12", "13"]
        assert decrypt_secret(
            integration.access_token_enc, context=f"woocommerce:{integration.platform_account_id}"
        ) == "ck_test:cs_test"

    def test_invalid_credentials(self, client, auth_headers, test_organization, woo_store, monkeypatch):
        async def rejected(self):
            raise ProviderAPIError("401 Unauthorized", status_code=401)

        monkeypatch.setattr(WooCommerceAdapter, "test_connection", rejected)

        response = client.post(
            "/integrations/woocommerce/connect", json=woo_connect_body(test_organization), headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid API credentials"

    def test_webhook_registration_failure_still_connects(self, client, auth_headers, test_organization,
                                                         woo_store, monkeypatch):
        async def failing_register(self, delivery_url, secret):
            raise ProviderAPIError("500", status_code=500, transient=True)

        monkeypatch.setattr(WooCommerceAdapter, "register_webhooks", failing_register)

        response = client.post(
            "/integrations/woocommerce/connect", json=woo_connect_body(test_organization), headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["webhooks_registered"] == 0
        assert response.json()["integration"]["status"] == "active"

    def test_outsider_cannot_connect(self, client, outsider_headers, test_organization, woo_store):
        response = client.post(
            "/integrations/woocommerce/connect", json=woo_connect_body(test_organization), headers=outsider_headers
        )
        assert response.status_code == 403
