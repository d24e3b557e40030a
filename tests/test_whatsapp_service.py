import json

import httpx
import pytest

from garson.fsm.events import OutboundMessage
from garson.models.whatsapp_message_log import WhatsAppMessageLog
from garson.whatsapp import cloud_provider
from garson.whatsapp.base import WhatsAppCredentials, interactive_buttons_payload, sanitize_payload
from garson.whatsapp.cloud_provider import CloudWhatsAppProvider
from garson.whatsapp.mock_provider import MockWhatsAppProvider
from garson.whatsapp.service import WhatsAppService
from tests.fixtures_data import make_session_factory

CREDENTIALS = WhatsAppCredentials(access_token="EAAG-test-token", phone_number_id="1098")


class FakeHttpClient:
    def __init__(self, responses, calls):
        self._responses = responses
        self._calls = calls

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def post(self, url, headers=None, json=None):
        self._calls.append({"url": url, "headers": headers, "json": json})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _patch_http(monkeypatch, responses):
    calls = []
    monkeypatch.setattr(cloud_provider.httpx, "Client", lambda timeout=None: FakeHttpClient(responses, calls))
    return calls


@pytest.fixture()
def db():
    Session = make_session_factory()
    session = Session()
    yield session
    session.close()


def test_cloud_without_credentials_uses_mock_provider():
    service = WhatsAppService(provider_name="cloud", credentials=WhatsAppCredentials(access_token="", phone_number_id=""))

    assert isinstance(service.provider, MockWhatsAppProvider)


def test_cloud_send_posts_interactive_buttons(monkeypatch, db):
    calls = _patch_http(monkeypatch, [httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})])
    provider = CloudWhatsAppProvider(CREDENTIALS)
    message = OutboundMessage.with_buttons("Nasıl ödemek istersiniz?", [("pay_cash", "Nakit"), ("pay_card", "Kredi Kartı")])

    log_entry = provider.send_buttons(db, tenant_id=78, to_phone="905551112233", message=message)

    assert log_entry.status == "sent"
    assert log_entry.provider_message_id == "wamid.out"
    assert calls[0]["url"].endswith("/1098/messages")
    assert calls[0]["headers"]["Authorization"] == "Bearer EAAG-test-token"
    buttons = calls[0]["json"]["interactive"]["action"]["buttons"]
    assert [button["reply"]["id"] for button in buttons] == ["pay_cash", "pay_card"]


def test_cloud_send_retries_transient_errors(monkeypatch, db):
    responses = [
        httpx.ConnectError("connection reset"),
        httpx.Response(200, json={"messages": [{"id": "wamid.retry"}]}),
    ]
    calls = _patch_http(monkeypatch, responses)

    log_entry = CloudWhatsAppProvider(CREDENTIALS).send_text(db, tenant_id=79, to_phone="905551112233", text="Merhaba")

    assert len(calls) == 2
    assert log_entry.status == "sent"


def test_failed_cloud_send_is_mirrored_to_mock_in_dev(monkeypatch, db):
    _patch_http(monkeypatch, [httpx.Response(500, text="boom") for _ in range(3)])
    service = WhatsAppService(provider_name="cloud", credentials=CREDENTIALS, fallback_to_mock=True)

    log_entry = service.send(db, tenant_id=77, to_phone="905551112233", message=OutboundMessage.plain("Merhaba"))

    assert log_entry.status == "sent"
    statuses = [row.status for row in db.query(WhatsAppMessageLog).order_by(WhatsAppMessageLog.id.asc()).all()]
    assert statuses == ["failed", "sent"]


def test_location_request_uses_interactive_location_message(db):
    service = WhatsAppService(provider_name="mock")

    log_entry = service.send(db, tenant_id=1, to_phone="905551112233", message=OutboundMessage.location_request("Konum?"))

    payload = json.loads(log_entry.payload_json)
    assert log_entry.message_type == "location_request"
    assert payload["interactive"]["type"] == "location_request_message"
    assert payload["interactive"]["action"] == {"name": "send_location"}


def test_mock_webhook_payload_becomes_text_event():
    messages = MockWhatsAppProvider().parse_webhook({"message": {"id": "m1", "from": "905551112233", "text": "1 ayran"}})

    assert messages[0]["event"] == {"text": "1 ayran", "kind": "text", "message_id": "m1"}


def test_sensitive_payload_keys_are_masked():
    sanitized = sanitize_payload({"access_token": "EAAG-secret-1234", "nested": [{"token": "abcd"}], "to": "905551112233"})

    assert sanitized == {"access_token": "****1234", "nested": [{"token": "****"}], "to": "905551112233"}


def test_buttons_payload_shape():
    payload = interactive_buttons_payload(OutboundMessage.with_buttons("Boyut?", [("opt:1", "Küçük")]))

    assert payload == {
        "type": "button",
        "body": {"text": "Boyut?"},
        "action": {"buttons": [{"type": "reply", "reply": {"id": "opt:1", "title": "Küçük"}}]},
    }
