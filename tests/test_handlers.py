"""
Tests for the entry points: webhooks, local events, OAuth flow, mappings.
"""

import base64
import hashlib
import hmac
import json
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from crm_sync.auth.oauth import OAuthClient, TokenResponse
from crm_sync.auth.state import create_signed_state
from crm_sync.auth.webhook import (
    SIGNATURE_V2_HEADER,
    SIGNATURE_V3_HEADER,
    TIMESTAMP_HEADER,
    WebhookVerifier,
)
from crm_sync.context import TenantContext
from crm_sync.errors import (
    AuthFailedError,
    MalformedPayloadError,
    MappingValidationError,
    OAuthFlowError,
    RemoteApiError,
)
from crm_sync.handlers import (
    HandlerResponse,
    LocalEventHandler,
    MappingService,
    OAuthFlow,
    WebhookHandler,
    WebhookRequest,
    decode_envelope,
)
from crm_sync.sync.engine import SyncOutcome

SECRET = "webhook-secret"
URL = "https://bridge.test/webhooks/remote"


def sign_v3(body: bytes, timestamp: int, method: str = "POST", url: str = URL) -> str:
    base = method.encode() + url.encode() + body + str(timestamp).encode()
    return base64.b64encode(hmac.new(SECRET.encode(), base, hashlib.sha256).digest()).decode()


def contact_event(event_id=1, portal_id=42, object_id=42, subscription="contact.propertyChange"):
    return {
        "eventId": event_id,
        "portalId": portal_id,
        "objectId": object_id,
        "subscriptionType": subscription,
        "occurredAt": 1_700_000_000_000,
    }


def events_of_type(db, event_type):
    return [e for e in db.list_events(limit=200) if e["event_type"] == event_type]


class TestHandlerResponse:
    """Tests for the request and response types."""

    def test_ok(self):
        assert HandlerResponse(200).ok
        assert not HandlerResponse(401).ok

    def test_request_normalizes_headers_and_body(self):
        request = WebhookRequest("POST", URL, {"x-hubspot-signature": "abc"}, "{}")
        assert request.headers[SIGNATURE_V2_HEADER] == "abc"
        assert request.body == b"{}"


class TestDecodeEnvelope:
    """Tests for decode_envelope."""

    def test_array(self):
        assert decode_envelope(b'[{"eventId": 1}]') == [{"eventId": 1}]

    def test_events_object(self):
        assert decode_envelope(b'{"events": [{"eventId": 1}]}') == [{"eventId": 1}]

    @pytest.mark.parametrize("body", [b"", b"   "])
    def test_empty_body(self, body):
        assert decode_envelope(body) == []

    @pytest.mark.parametrize("body", [b"{not json", b'{"foo": 1}', b'"text"', b"\xff\xfe"])
    def test_malformed(self, body):
        with pytest.raises(MalformedPayloadError):
            decode_envelope(body)


class TestWebhookHandler:
    """Tests for WebhookHandler."""

    @pytest.fixture
    def handler(self, connected_db, orchestrator, clock):
        verifier = WebhookVerifier(SECRET, clock=clock)
        return WebhookHandler(connected_db, orchestrator, verifier, clock=clock)

    @pytest.fixture
    def signed(self, clock):
        def build(payload, headers=None):
            body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
            timestamp = int(clock() * 1000)
            signed_headers = {
                SIGNATURE_V3_HEADER: sign_v3(body, timestamp),
                TIMESTAMP_HEADER: str(timestamp),
            }
            signed_headers.update(headers or {})
            return WebhookRequest("POST", URL, signed_headers, body)

        return build

    def test_contact_change_is_synced(self, handler, signed, connected_db, remote_crm, local_crm):
        remote_crm.add("42", email="a@example.com", firstname="Ann")

        response = handler.handle(signed([contact_event()]))

        assert response.status == 200
        assert response.body == {"ok": True, "processed": 1}
        assert local_crm.writes() == [
            ("create", {"email": "a@example.com", "first_name": "Ann"})
        ]
        logged = events_of_type(connected_db, "contact.propertyChange")
        assert logged[0]["status"] == "received"
        assert logged[0]["tenant_key"] == "t1"
        assert logged[0]["correlation_id"] == "remote:1"
        assert logged[0]["occurred_at_ms"] == 1_700_000_000_000

    def test_events_envelope(self, handler, signed, remote_crm):
        remote_crm.add("42", email="a@example.com")
        response = handler.handle(signed({"events": [contact_event()]}))
        assert response.body["processed"] == 1

    def test_missing_signature_is_rejected(self, handler, connected_db, local_crm):
        body = json.dumps([contact_event()]).encode()

        response = handler.handle(WebhookRequest("POST", URL, {}, body))

        assert response.status == 401
        assert response.body["error"] == "invalid_webhook_signature"
        assert response.body["reason"] == "Missing signature headers."
        assert local_crm.calls == []
        assert events_of_type(connected_db, "webhook.rejected")[0]["status"] == "error"

    def test_bad_signature_is_rejected(self, handler, signed, local_crm):
        request = signed([contact_event()])
        request.body = request.body.replace(b"42", b"43")
        response = handler.handle(request)
        assert response.status == 401
        assert response.body["reason"] == "Signature mismatch."

    def test_stale_timestamp_is_rejected(self, handler, signed, clock):
        request = signed([contact_event()])
        clock.advance(301)
        response = handler.handle(request)
        assert response.status == 401
        assert response.body["reason"] == "Timestamp outside window."

    def test_no_secret_rejects_everything(self, connected_db, orchestrator, signed):
        handler = WebhookHandler(connected_db, orchestrator, verifier=None)
        response = handler.handle(signed([contact_event()]))
        assert response.status == 401
        assert response.body["error"] == "invalid_webhook_signature"

    def test_signature_not_required(self, connected_db, orchestrator, remote_crm):
        remote_crm.add("42", email="a@example.com")
        handler = WebhookHandler(connected_db, orchestrator, None, require_signature=False)
        response = handler.handle(
            WebhookRequest("POST", URL, {}, json.dumps([contact_event()]))
        )
        assert response.status == 200

    def test_invalid_json(self, handler, signed):
        response = handler.handle(signed(b"{not json"))
        assert response.status == 400
        assert response.body == {"error": "Invalid JSON"}

    def test_empty_batch(self, handler, signed, connected_db):
        response = handler.handle(signed([]))
        assert response.status == 200
        assert response.body == {"ok": True, "processed": 0}
        logged = events_of_type(connected_db, "webhook.empty_payload")
        assert logged[0]["error_code"] == "no_events"
        assert logged[0]["status"] == "ignored"

    def test_unknown_account_is_ignored(self, handler, signed, connected_db, remote_crm):
        response = handler.handle(signed([contact_event(portal_id=999)]))

        assert response.body == {"ok": True, "processed": 1}
        assert remote_crm.calls == []
        logged = events_of_type(connected_db, "contact.propertyChange")
        assert logged[0]["error_code"] == "unknown_account"
        assert logged[0]["tenant_key"] is None

    def test_unsupported_subscription_is_ignored(self, handler, signed, connected_db, remote_crm):
        response = handler.handle(signed([contact_event(subscription="contact.deletion")]))

        assert response.status == 200
        assert remote_crm.calls == []
        logged = events_of_type(connected_db, "contact.deletion")
        assert logged[0]["error_code"] == "unsupported_subscription"
        assert logged[0]["tenant_key"] == "t1"

    def test_failed_event_does_not_fail_delivery(self, handler, signed, connected_db, remote_crm):
        remote_crm.add("43", email="b@example.com")
        remote_crm.fail_with = RemoteApiError("down", status=503)

        response = handler.handle(
            signed([contact_event(event_id=1), contact_event(event_id=2, object_id=43)])
        )

        assert response.status == 200
        assert response.body == {"ok": True, "processed": 2}
        failures = events_of_type(connected_db, "webhook.processing_failed")
        assert len(failures) == 2
        assert failures[0]["error_code"] == "remote_api_error"

    def test_one_failure_does_not_stop_the_batch(self, handler, signed, remote_crm, local_crm):
        remote_crm.add("43", email="b@example.com")

        response = handler.handle(
            signed(["not an object", contact_event(event_id=2, object_id=43)])
        )

        assert response.body["processed"] == 2
        assert local_crm.writes() == [("create", {"email": "b@example.com"})]


class TestLocalEventHandler:
    """Tests for the local change-event entry points."""

    @pytest.fixture
    def handler(self, orchestrator):
        return LocalEventHandler(orchestrator)

    def event(self, **contact):
        return {
            "tenant_key": "t1",
            "event_id": "e1",
            "contact": {"id": "c-1", "email": "a@example.com", "first_name": "Ann", **contact},
        }

    def test_created(self, handler, connected_db, remote_crm):
        result = handler.on_contact_created(self.event())

        assert result.outcome is SyncOutcome.CREATED
        assert remote_crm.writes() == [
            ("create", {"email": "a@example.com", "firstname": "Ann"})
        ]
        entries = connected_db.query_ledger("t1", "contact", "local", result.payload_hash)
        assert entries[0]["correlation_id"] == "local:e1"

    def test_updated(self, handler, remote_crm):
        remote_crm.add("77", email="a@example.com")
        result = handler.on_contact_updated(self.event())
        assert result.outcome is SyncOutcome.UPDATED
        assert result.remote_contact_id == "77"

    @pytest.mark.parametrize(
        "data",
        [
            {"event_id": "e1", "contact": {"id": "c-1"}},
            {"tenant_key": "", "contact": {"id": "c-1"}},
            {"tenant_key": "t1", "contact": {"email": "a@example.com"}},
            {"tenant_key": "t1"},
            None,
        ],
    )
    def test_incomplete_events_are_ignored(self, handler, remote_crm, data):
        assert handler.on_contact_updated(data) is None
        assert remote_crm.calls == []

    def test_failure_is_logged_not_raised(self, handler, remote_crm, caplog):
        remote_crm.fail_with = RemoteApiError("down", status=503)
        assert handler.on_contact_updated(self.event()) is None
        assert "[remote_api_error]" in caplog.text

    def test_out_of_range_updated_at(self, handler, remote_crm):
        result = handler.on_contact_updated(self.event(updated_at=10**20))
        assert result.outcome is SyncOutcome.CREATED
        assert remote_crm.writes() == [
            ("create", {"email": "a@example.com", "firstname": "Ann"})
        ]


class TestOAuthFlow:
    """Tests for the connect / finish / disconnect / status flow."""

    CTX = TenantContext("t1")

    @pytest.fixture
    def oauth(self):
        client = MagicMock(spec=OAuthClient)
        client.exchange_code.return_value = TokenResponse(
            access_token="ACCESS",
            expires_in=1800,
            refresh_token="REFRESH",
            scopes=["crm.objects.contacts.read"],
            remote_account_id="42",
        )
        return client

    @pytest.fixture
    def flow(self, db, oauth, clock):
        return OAuthFlow(db, "cid", "csecret", "signing", oauth=oauth, clock=clock)

    def state(self, clock, tenant_key="t1", secret="signing"):
        return create_signed_state(tenant_key, secret, now_ms=int(clock() * 1000))

    def test_start_builds_authorization_url(self, db, clock):
        flow = OAuthFlow(
            db,
            "cid",
            None,
            "signing",
            oauth=OAuthClient("cid", "", auth_base="https://auth.test"),
            scopes=["crm.objects.contacts.read", "crm.objects.contacts.write"],
            clock=clock,
        )

        url = flow.start(self.CTX, origin="https://bridge.test/")

        assert url.startswith("https://auth.test/oauth/authorize?")
        query = parse_qs(urlsplit(url).query)
        assert query["client_id"] == ["cid"]
        assert query["redirect_uri"] == ["https://bridge.test/oauth/callback"]
        assert query["scope"] == ["crm.objects.contacts.read crm.objects.contacts.write"]
        assert query["state"][0].count(".") == 1

    def test_start_then_finish(self, db, oauth, clock):
        flow = OAuthFlow(db, "cid", "csecret", "signing", oauth=oauth, clock=clock)
        oauth.authorization_url.side_effect = lambda uri, scopes, state: state
        state = flow.start(self.CTX, origin="https://bridge.test")

        status = flow.finish(self.CTX, "CODE", state, origin="https://bridge.test")

        oauth.exchange_code.assert_called_once_with("CODE", "https://bridge.test/oauth/callback")
        assert status.connected
        assert status.remote_account_id == "42"
        assert status.scopes == ["crm.objects.contacts.read"]
        assert status.token_expires_in_ms == 1_800_000
        assert db.get_connection("t1")["refresh_token"] == "REFRESH"

    def test_configured_redirect_uri_wins(self, db, oauth, clock):
        flow = OAuthFlow(
            db, "cid", "csecret", "signing", oauth=oauth,
            redirect_uri="https://fixed.test/cb", clock=clock,
        )
        flow.finish(self.CTX, "CODE", self.state(clock), origin="https://other.test")
        oauth.exchange_code.assert_called_once_with("CODE", "https://fixed.test/cb")

    @pytest.mark.parametrize(
        "client_id,client_secret,signing,code",
        [
            (None, "csecret", "signing", "missing_client_id"),
            ("cid", None, "signing", "missing_client_secret"),
            ("cid", "csecret", None, "missing_state_signing_secret"),
        ],
    )
    def test_finish_configuration_errors(self, db, oauth, clock, client_id, client_secret, signing, code):
        flow = OAuthFlow(db, client_id, client_secret, signing, oauth=oauth, clock=clock)
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", self.state(clock), origin="https://bridge.test")
        assert exc_info.value.code == code
        oauth.exchange_code.assert_not_called()

    def test_start_does_not_need_client_secret(self, db, oauth, clock):
        flow = OAuthFlow(db, "cid", None, "signing", oauth=oauth, clock=clock)
        flow.start(self.CTX, origin="https://bridge.test")
        oauth.authorization_url.assert_called_once()

    def test_start_without_redirect(self, flow):
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.start(self.CTX)
        assert exc_info.value.code == "missing_redirect_uri"

    @pytest.mark.parametrize("code,state", [(None, "s"), ("CODE", None), ("", "")])
    def test_missing_code_or_state(self, flow, code, state):
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, code, state, origin="https://bridge.test")
        assert exc_info.value.code == "missing_code_or_state"

    def test_state_for_other_tenant(self, flow, clock, oauth):
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", self.state(clock, tenant_key="t2"), origin="https://b.test")
        assert exc_info.value.code == "tenant_key_mismatch"
        oauth.exchange_code.assert_not_called()

    def test_state_signed_with_other_secret(self, flow, clock):
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", self.state(clock, secret="other"), origin="https://b.test")
        assert exc_info.value.code == "invalid_state"

    def test_expired_state(self, flow, clock):
        state = self.state(clock)
        clock.advance(601)
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", state, origin="https://b.test")
        assert exc_info.value.code == "state_expired"

    def test_remote_rejects_code(self, flow, oauth, clock, db):
        oauth.exchange_code.side_effect = AuthFailedError("bad", status=400, details="invalid_grant")
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", self.state(clock), origin="https://b.test")
        assert exc_info.value.code == "remote_oauth_failed"
        assert exc_info.value.status == 400
        assert exc_info.value.details == "invalid_grant"
        assert db.get_connection("t1") is None

    def test_missing_refresh_token(self, flow, oauth, clock, db):
        oauth.exchange_code.return_value = TokenResponse(access_token="A", expires_in=60)
        with pytest.raises(OAuthFlowError) as exc_info:
            flow.finish(self.CTX, "CODE", self.state(clock), origin="https://b.test")
        assert exc_info.value.code == "missing_refresh_token"
        assert db.get_connection("t1") is None

    def test_status_unknown_tenant(self, flow):
        status = flow.status(TenantContext("nobody"))
        assert status.to_dict() == {
            "connected": False,
            "remote_account_id": None,
            "scopes": [],
            "token_expires_in_ms": None,
            "last_error_code": None,
        }

    def test_status_expired_token_is_zero(self, flow, db, clock):
        db.upsert_connection(
            "t1",
            access_token="A",
            refresh_token="R",
            token_expires_at_ms=int(clock() * 1000) - 5_000,
            remote_account_id="42",
        )
        status = flow.status(self.CTX)
        assert status.connected
        assert status.token_expires_in_ms == 0

    def test_disconnect(self, flow, connected_db):
        assert flow.disconnect(self.CTX) is True
        status = flow.status(self.CTX)
        assert not status.connected
        assert status.remote_account_id is None
        assert connected_db.get_connection("t1") is not None

    def test_disconnect_unknown_tenant(self, flow):
        assert flow.disconnect(TenantContext("nobody")) is False


class TestMappingService:
    """Tests for MappingService."""

    CTX = TenantContext("t1")

    @pytest.fixture
    def remote(self):
        return MagicMock()

    @pytest.fixture
    def service(self, db, remote):
        return MappingService(db, remote)

    def test_save_and_list(self, service):
        saved = service.save(
            self.CTX,
            [
                {"local_field_key": "email", "remote_property": "email", "direction": "bidirectional"},
                {"local_field_key": "phone", "remote_property": "mobilephone", "direction": "remote_to_local"},
            ],
        )
        assert service.list_mappings(self.CTX) == saved
        assert [m.remote_property for m in saved] == ["email", "mobilephone"]

    def test_save_replaces_previous_set(self, service):
        service.save(
            self.CTX,
            [{"local_field_key": "email", "remote_property": "email", "direction": "bidirectional"}],
        )
        service.save(self.CTX, [])
        assert service.list_mappings(self.CTX) == []

    def test_invalid_set_leaves_store_untouched(self, service):
        service.save(
            self.CTX,
            [{"local_field_key": "email", "remote_property": "email", "direction": "bidirectional"}],
        )
        with pytest.raises(MappingValidationError):
            service.save(
                self.CTX,
                [{"local_field_key": "email", "remote_property": "email", "direction": "up"}],
            )
        assert len(service.list_mappings(self.CTX)) == 1

    def test_remote_properties(self, service, remote):
        remote.list_properties.return_value = [{"name": "email"}]
        assert service.remote_properties(self.CTX) == [{"name": "email"}]
        remote.list_properties.assert_called_once_with(self.CTX)
