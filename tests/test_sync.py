"""
Tests for the sync orchestrator.

Both CRMs are in-memory fakes (see conftest); the store is a real
in-memory SyncDatabase so ledger and identity map behave as in production.
"""

from datetime import datetime, timedelta, timezone

import pytest

from crm_sync.context import TenantContext
from crm_sync.errors import RemoteApiError
from crm_sync.sync.contact import LocalContact
from crm_sync.sync.engine import (
    INBOUND_FAILED_EVENT,
    OUTBOUND_FAILED_EVENT,
    SyncOutcome,
    SyncResult,
)
from crm_sync.sync.ledger import WriterSource

CTX = TenantContext("t1", "42")


def local_contact(contact_id="c-1", email="a@example.com", first_name="Ann", **kwargs):
    return LocalContact(id=contact_id, email=email, first_name=first_name, **kwargs)


class TestSyncResult:
    """Tests for SyncResult."""

    def test_wrote(self):
        assert SyncResult(SyncOutcome.CREATED).wrote
        assert SyncResult(SyncOutcome.UPDATED).wrote
        assert not SyncResult(SyncOutcome.ECHO).wrote
        assert not SyncResult(SyncOutcome.UNCHANGED).wrote


class TestOutboundPreconditions:
    """Tests for the checks that run before any remote call."""

    def test_contact_id_required(self, orchestrator):
        with pytest.raises(ValueError):
            orchestrator.sync_local_change(CTX, LocalContact(email="a@example.com"))

    def test_not_connected(self, orchestrator, connected_db, remote_crm):
        connected_db.clear_connection("t1")
        result = orchestrator.sync_local_change(CTX, local_contact())
        assert result.outcome is SyncOutcome.NOT_CONNECTED
        assert remote_crm.calls == []

    def test_unknown_tenant(self, orchestrator, remote_crm):
        result = orchestrator.sync_local_change(TenantContext("nobody"), local_contact())
        assert result.outcome is SyncOutcome.NOT_CONNECTED

    def test_no_outbound_mappings(self, orchestrator, connected_db, remote_crm):
        connected_db.replace_mappings(
            "t1",
            [{"local_field_key": "email", "remote_property": "email", "direction": "remote_to_local"}],
        )
        result = orchestrator.sync_local_change(CTX, local_contact())
        assert result.outcome is SyncOutcome.NO_MAPPINGS
        assert remote_crm.calls == []

    def test_no_values(self, orchestrator, remote_crm):
        result = orchestrator.sync_local_change(
            CTX, LocalContact(id="c-1", last_name="Lee")
        )
        assert result.outcome is SyncOutcome.NO_VALUES
        assert remote_crm.calls == []


class TestOutboundWrites:
    """Tests for local -> remote propagation."""

    def test_creates_remote_contact(self, orchestrator, connected_db, remote_crm):
        result = orchestrator.sync_local_change(CTX, local_contact(), "local:e1")

        assert result.outcome is SyncOutcome.CREATED
        assert remote_crm.writes() == [
            ("create", {"email": "a@example.com", "firstname": "Ann"})
        ]
        identity = connected_db.get_identity_by_local_id("t1", "c-1")
        assert identity["remote_contact_id"] == result.remote_contact_id
        entries = connected_db.query_ledger(
            "t1", "contact", "local", result.payload_hash
        )
        assert entries[0]["correlation_id"] == "local:e1"
        assert entries[0]["remote_contact_id"] == result.remote_contact_id

    def test_updates_contact_found_by_email(self, orchestrator, connected_db, remote_crm):
        remote_crm.add("77", email="a@example.com", firstname="Old")

        result = orchestrator.sync_local_change(CTX, local_contact())

        assert result.outcome is SyncOutcome.UPDATED
        assert result.remote_contact_id == "77"
        assert remote_crm.contacts["77"]["firstname"] == "Ann"
        assert connected_db.get_identity_by_remote_id("t1", "77")["local_contact_id"] == "c-1"

    def test_updates_contact_from_identity_map(self, orchestrator, connected_db, remote_crm):
        connected_db.upsert_identity("t1", "c-1", "88")
        remote_crm.add("88", email="old@example.com")

        result = orchestrator.sync_local_change(CTX, local_contact())

        assert result.outcome is SyncOutcome.UPDATED
        assert result.remote_contact_id == "88"
        assert ("search", "a@example.com") not in remote_crm.calls

    def test_no_unique_key_without_mapped_email(self, orchestrator, connected_db, remote_crm):
        connected_db.replace_mappings(
            "t1",
            [{"local_field_key": "first_name", "remote_property": "firstname", "direction": "bidirectional"}],
        )
        result = orchestrator.sync_local_change(CTX, local_contact())

        assert result.outcome is SyncOutcome.NO_UNIQUE_KEY
        assert remote_crm.writes() == []
        assert connected_db.get_identity_by_local_id("t1", "c-1") is None

    def test_unmapped_email_still_finds_existing_contact(
        self, orchestrator, connected_db, remote_crm
    ):
        connected_db.replace_mappings(
            "t1",
            [{"local_field_key": "first_name", "remote_property": "firstname", "direction": "bidirectional"}],
        )
        remote_crm.add("77", email="a@example.com")
        result = orchestrator.sync_local_change(CTX, local_contact())
        assert result.outcome is SyncOutcome.UPDATED
        assert remote_crm.writes() == [("update", "77", {"firstname": "Ann"})]


class TestOutboundFreshness:
    """Tests for the remote-newer guard."""

    T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_remote_newer_is_not_overwritten(self, orchestrator, connected_db, remote_crm):
        connected_db.upsert_identity("t1", "c-1", "88")
        remote_crm.add(
            "88",
            email="a@example.com",
            lastmodifieddate=(self.T0 + timedelta(seconds=5)).isoformat(),
        )

        result = orchestrator.sync_local_change(CTX, local_contact(updated_at=self.T0))

        assert result.outcome is SyncOutcome.REMOTE_NEWER
        assert result.remote_contact_id == "88"
        assert remote_crm.writes() == []

    def test_local_newer_overwrites(self, orchestrator, connected_db, remote_crm):
        connected_db.upsert_identity("t1", "c-1", "88")
        remote_crm.add("88", email="a@example.com", lastmodifieddate=self.T0.isoformat())

        result = orchestrator.sync_local_change(
            CTX, local_contact(updated_at=self.T0 + timedelta(seconds=1))
        )
        assert result.outcome is SyncOutcome.UPDATED

    def test_equal_timestamps_overwrite(self, orchestrator, connected_db, remote_crm):
        remote_crm.add("77", email="a@example.com", lastmodifieddate="1704110400000")
        result = orchestrator.sync_local_change(CTX, local_contact(updated_at=self.T0))
        assert result.outcome is SyncOutcome.UPDATED

    def test_missing_local_timestamp_skips_check(self, orchestrator, connected_db, remote_crm):
        connected_db.upsert_identity("t1", "c-1", "88")
        remote_crm.add("88", email="a@example.com")
        orchestrator.sync_local_change(CTX, local_contact())
        assert ("get", "88") not in remote_crm.calls

    def test_unparsable_remote_timestamp_overwrites(self, orchestrator, connected_db, remote_crm):
        connected_db.upsert_identity("t1", "c-1", "88")
        remote_crm.add("88", email="a@example.com", lastmodifieddate="99999999999999999999")
        result = orchestrator.sync_local_change(CTX, local_contact(updated_at=self.T0))
        assert result.outcome is SyncOutcome.UPDATED


class TestInbound:
    """Tests for remote -> local propagation."""

    def test_not_connected(self, orchestrator, connected_db, remote_crm):
        connected_db.clear_connection("t1")
        result = orchestrator.sync_remote_change(CTX, "42")
        assert result.outcome is SyncOutcome.NOT_CONNECTED
        assert remote_crm.calls == []

    def test_no_inbound_mappings(self, orchestrator, connected_db, remote_crm):
        connected_db.replace_mappings(
            "t1",
            [{"local_field_key": "email", "remote_property": "email", "direction": "local_to_remote"}],
        )
        assert orchestrator.sync_remote_change(CTX, "42").outcome is SyncOutcome.NO_MAPPINGS

    def test_no_values(self, orchestrator, remote_crm, local_crm):
        remote_crm.add("42", lastname="Lee")
        assert orchestrator.sync_remote_change(CTX, "42").outcome is SyncOutcome.NO_VALUES
        assert local_crm.calls == []

    def test_fetches_mapped_properties(self, orchestrator, connected_db, remote_crm):
        connected_db.replace_mappings(
            "t1",
            [{"local_field_key": "phone", "remote_property": "mobilephone", "direction": "remote_to_local"}],
        )
        remote_crm.add("42", mobilephone="+1")
        result = orchestrator.sync_remote_change(CTX, "42")
        assert result.outcome is SyncOutcome.CREATED

    def test_creates_local_contact(self, orchestrator, connected_db, local_crm):
        orchestrator.remote.add("42", email="a@example.com", firstname="Ann")

        result = orchestrator.sync_remote_change(CTX, 42, "remote:e1")

        assert result.outcome is SyncOutcome.CREATED
        assert local_crm.writes() == [
            ("create", {"email": "a@example.com", "first_name": "Ann"})
        ]
        assert connected_db.get_identity_by_remote_id("t1", "42")["local_contact_id"] == "c-1"
        entries = connected_db.query_ledger("t1", "contact", "remote", result.payload_hash)
        assert entries[0]["local_contact_id"] == "c-1"

    def test_updates_contact_found_by_email(self, orchestrator, remote_crm, local_crm):
        local_crm.add("c-9", email="a@example.com", first_name="Old")
        remote_crm.add("42", email="a@example.com", firstname="Ann")

        result = orchestrator.sync_remote_change(CTX, "42")

        assert result.outcome is SyncOutcome.UPDATED
        assert local_crm.writes() == [
            ("update", "c-9", {"email": "a@example.com", "first_name": "Ann"})
        ]

    def test_unchanged_contact_is_not_written(self, orchestrator, connected_db, remote_crm, local_crm):
        local_crm.add("c-9", email="a@example.com", first_name="Ann", last_name="Lee")
        connected_db.upsert_identity("t1", "c-9", "42")
        remote_crm.add("42", email="a@example.com", firstname="Ann")

        result = orchestrator.sync_remote_change(CTX, "42")

        assert result.outcome is SyncOutcome.UNCHANGED
        assert local_crm.writes() == []
        # Still recorded so the local side's event is recognised
        assert connected_db.query_ledger("t1", "contact", "remote", result.payload_hash)

    def test_fetch_failure_propagates(self, orchestrator, remote_crm):
        with pytest.raises(RemoteApiError):
            orchestrator.sync_remote_change(CTX, "404")


class TestLoopSuppression:
    """Tests for echo suppression through the ledger."""

    def test_remote_change_then_local_echo(self, orchestrator, remote_crm, local_crm):
        remote_crm.add("42", email="a@example.com", firstname="Ann")
        inbound = orchestrator.sync_remote_change(CTX, "42", "remote:e1")
        assert inbound.outcome is SyncOutcome.CREATED

        # The local CRM emits contact.created for the contact we just wrote
        echo = orchestrator.sync_local_change(
            CTX, local_contact(contact_id=inbound.local_contact_id)
        )

        assert echo.outcome is SyncOutcome.ECHO
        assert remote_crm.writes() == []

    def test_local_change_then_remote_echo(self, orchestrator, remote_crm, local_crm):
        outbound = orchestrator.sync_local_change(CTX, local_contact(), "local:e1")
        assert outbound.outcome is SyncOutcome.CREATED

        # The remote CRM sends a webhook for the contact we just wrote
        echo = orchestrator.sync_remote_change(CTX, outbound.remote_contact_id, "remote:e2")

        assert echo.outcome is SyncOutcome.ECHO
        assert local_crm.writes() == []

    def test_different_values_are_not_an_echo(self, orchestrator, remote_crm):
        remote_crm.add("42", email="a@example.com", firstname="Ann")
        inbound = orchestrator.sync_remote_change(CTX, "42")

        result = orchestrator.sync_local_change(
            CTX, local_contact(contact_id=inbound.local_contact_id, first_name="Anna")
        )
        assert result.outcome is SyncOutcome.UPDATED
        assert remote_crm.contacts["42"]["firstname"] == "Anna"

    def test_echo_window_expires(self, orchestrator, remote_crm, clock):
        remote_crm.add("42", email="a@example.com", firstname="Ann")
        inbound = orchestrator.sync_remote_change(CTX, "42")

        clock.advance(121)
        result = orchestrator.sync_local_change(
            CTX, local_contact(contact_id=inbound.local_contact_id)
        )
        assert result.outcome is SyncOutcome.UPDATED

    def test_same_writer_entry_does_not_suppress(self, orchestrator, connected_db, remote_crm):
        first = orchestrator.sync_local_change(CTX, local_contact())
        assert orchestrator.ledger.was_recently_synced(
            CTX, WriterSource.LOCAL, first.payload_hash
        )
        second = orchestrator.sync_local_change(CTX, local_contact())
        assert second.outcome is SyncOutcome.UPDATED


class TestFailureReporting:
    """Tests for logging of failed writes."""

    def test_outbound_failure_is_logged_and_raised(
        self, orchestrator, connected_db, remote_crm, caplog
    ):
        remote_crm.fail_with = RemoteApiError("boom", status=500)

        with pytest.raises(RemoteApiError):
            orchestrator.sync_local_change(CTX, local_contact(), "local:e9")

        events = connected_db.list_events(tenant_key="t1")
        assert events[0]["event_type"] == OUTBOUND_FAILED_EVENT
        assert events[0]["error_code"] == "remote_api_error"
        assert events[0]["correlation_id"] == "local:e9"
        assert events[0]["object_id"] == "c-1"
        assert connected_db.get_identity_by_local_id("t1", "c-1") is None
        assert "remote_api_error" in caplog.text

    def test_inbound_failure_is_logged_and_raised(
        self, orchestrator, connected_db, remote_crm, local_crm
    ):
        remote_crm.add("42", email="a@example.com", firstname="Ann")

        def broken(ctx, fields):
            raise RemoteApiError("local down", status=503)

        local_crm.create_contact = broken
        with pytest.raises(RemoteApiError):
            orchestrator.sync_remote_change(CTX, "42", "remote:e3")

        events = connected_db.list_events(tenant_key="t1")
        assert events[0]["event_type"] == INBOUND_FAILED_EVENT
        assert events[0]["status"] == "error"
        assert events[0]["object_id"] == "42"
        assert connected_db.get_identity_by_remote_id("t1", "42") is None
