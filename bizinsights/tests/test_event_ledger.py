"""Tests for the webhook event ledger and the DataPoint write path.

WHAT: Claim/duplicate/re-claim semantics, terminal transitions, retention
      purge, and source-key dedup in write_datapoints
WHY: The ledger's unique key and the DataPoint source key are the only
     things standing between a provider retry and a double-counted order
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from bizinsights.models import DataPoint, WebhookEvent, WebhookEventStatusEnum
from bizinsights.services import event_ledger
from bizinsights.services.datapoint_writer import write_datapoints
from bizinsights.services.event_ledger import LedgerTransitionError
from bizinsights.services.providers.base import DataPointRecord
from bizinsights.utils.dates import utcnow


class TestRecordReceived:
    def test_first_delivery_claims(self, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")

        assert claim.duplicate is False
        assert claim.entry.status == WebhookEventStatusEnum.received
        assert claim.entry.attempts == 1

    def test_second_delivery_is_duplicate(self, test_db_session, shopify_integration):
        first = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        second = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")

        assert second.duplicate is True
        assert second.entry.id == first.entry.id

    def test_same_id_other_topic_is_distinct(self, test_db_session, shopify_integration):
        event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "1001")
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/paid", "1001")
        assert claim.duplicate is False

    def test_failed_entry_is_reclaimed(self, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        event_ledger.mark_failed(test_db_session, claim.entry, "boom")

        again = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")

        assert again.reclaimed is True
        assert again.entry.status == WebhookEventStatusEnum.received
        assert again.entry.attempts == 2
        assert again.entry.error is None

    def test_unhandled_failed_entry_is_not_reclaimed(self, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "x/y", "wh-1")
        event_ledger.mark_failed(test_db_session, claim.entry, "boom")

        again = event_ledger.record_received(test_db_session, shopify_integration, "x/y", "wh-1", handled=False)
        assert again.duplicate is True

    def test_stale_received_entry_is_reclaimed(self, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        claim.entry.received_at = utcnow() - timedelta(minutes=11)
        test_db_session.commit()

        again = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        assert again.reclaimed is True

    def test_fresh_received_entry_is_duplicate(self, test_db_session, shopify_integration):
        event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        again = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        assert again.duplicate is True


class TestTransitions:
    def test_processed_is_terminal(self, test_db_session, shopify_integration):
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        event_ledger.mark_processed(test_db_session, claim.entry, {"datapoints": 3})
        test_db_session.commit()

        assert claim.entry.processed_at is not None
        assert claim.entry.meta["datapoints"] == 3
        with pytest.raises(LedgerTransitionError):
            event_ledger.mark_failed(test_db_session, claim.entry, "late failure")

    def test_rejected_uses_generated_id(self, test_db_session, shopify_integration):
        entry = event_ledger.record_rejected(
            test_db_session, shopify_integration, "orders/create",
            WebhookEventStatusEnum.signature_verification_failed, "Invalid webhook signature",
            delivery_id="wh-1",
        )
        assert entry.external_id.startswith("rejected:")
        assert entry.meta["delivery_id"] == "wh-1"
        assert entry.processed_at is not None


class TestManualSyncAndStats:
    def test_manual_sync_entries_and_counts(self, test_db_session, shopify_integration):
        now = utcnow()
        entry = event_ledger.record_manual_sync(test_db_session, shopify_integration, {"sync_type": "full"})
        claim = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "wh-1")
        event_ledger.mark_processed(test_db_session, claim.entry)
        test_db_session.commit()

        assert entry.topic == event_ledger.MANUAL_SYNC_TOPIC
        assert len(event_ledger.received_since(
            test_db_session, shopify_integration, event_ledger.MANUAL_SYNC_TOPIC, now - timedelta(minutes=1)
        )) == 1

        counts = event_ledger.status_counts(test_db_session, shopify_integration, now - timedelta(days=1))
        # manual_sync markers are not webhooks
        assert counts["processed"] == 1
        assert counts["received"] == 0

    def test_purge_older_than(self, test_db_session, shopify_integration):
        old = event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "old")
        old.entry.received_at = utcnow() - timedelta(days=91)
        test_db_session.commit()
        event_ledger.record_received(test_db_session, shopify_integration, "orders/create", "new")

        assert event_ledger.purge_older_than(test_db_session, 90) == 1
        remaining = [e.external_id for e in test_db_session.query(WebhookEvent).all()]
        assert remaining == ["new"]


def record(metric_type, value, source_key=None):
    return DataPointRecord(metric_type, Decimal(value), utcnow(), {}, source_key)


class TestWriteDatapoints:
    def test_keyed_facts_are_written_once(self, test_db_session, shopify_integration):
        first = write_datapoints(test_db_session, shopify_integration, [record("orders", "1", "order:1")])
        test_db_session.commit()
        second = write_datapoints(test_db_session, shopify_integration, [record("orders", "1", "order:1")])
        test_db_session.commit()

        assert (first.inserted, second.inserted, second.skipped) == (1, 0, 1)
        assert test_db_session.query(DataPoint).count() == 1

    def test_same_key_other_metric_is_written(self, test_db_session, shopify_integration):
        result = write_datapoints(test_db_session, shopify_integration, [
            record("orders", "1", "order:1"),
            record("revenue", "10", "order:1"),
        ])
        assert result.inserted == 2

    def test_duplicates_within_one_batch(self, test_db_session, shopify_integration):
        result = write_datapoints(test_db_session, shopify_integration, [
            record("orders", "1", "order:1"),
            record("orders", "1", "order:1"),
        ])
        assert (result.inserted, result.skipped) == (1, 1)

    def test_keyless_facts_always_written(self, test_db_session, shopify_integration):
        write_datapoints(test_db_session, shopify_integration, [record("customer_lifetime_value", "50")])
        write_datapoints(test_db_session, shopify_integration, [record("customer_lifetime_value", "60")])
        test_db_session.commit()
        assert test_db_session.query(DataPoint).count() == 2

    def test_keys_are_per_integration(self, test_db_session, shopify_integration, woocommerce_integration):
        write_datapoints(test_db_session, shopify_integration, [record("orders", "1", "order:1")])
        result = write_datapoints(test_db_session, woocommerce_integration, [record("orders", "1", "order:1")])
        assert result.inserted == 1
