"""StripeWebhookVerifier 단위 테스트"""
import hashlib
import hmac
import json
import time

import pytest

from core.responses import InvalidSignatureException, MalformedPayloadException
from services.webhook_verifier import StripeWebhookVerifier

SECRET = "whsec_test_secret"


def _payload(event_type: str = "checkout.session.completed", obj=None) -> bytes:
    event = {
        "id": "evt_123",
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "data": {"object": obj if obj is not None else {"id": "cs_1", "object": "checkout.session"}},
    }
    return json.dumps(event).encode("utf-8")


def _sign(payload: bytes, secret: str = SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_valid_signature_decodes_envelope():
    payload = _payload()
    verifier = StripeWebhookVerifier(SECRET)

    event = verifier.verify_and_decode(payload, _sign(payload))

    assert event.verified is True
    assert event.type == "checkout.session.completed"
    assert event.id == "evt_123"
    assert event.data["id"] == "cs_1"


def test_signature_mismatch_is_rejected():
    payload = _payload()
    verifier = StripeWebhookVerifier(SECRET)

    with pytest.raises(InvalidSignatureException) as exc_info:
        verifier.verify_and_decode(payload, _sign(payload, secret="whsec_other"))

    assert exc_info.value.status_code == 400


def test_stale_timestamp_is_rejected():
    payload = _payload()
    verifier = StripeWebhookVerifier(SECRET, tolerance=300)

    with pytest.raises(InvalidSignatureException):
        verifier.verify_and_decode(payload, _sign(payload, timestamp=int(time.time()) - 3600))


def test_missing_header_rejected_in_strict_mode():
    verifier = StripeWebhookVerifier(SECRET, strict=True)

    with pytest.raises(InvalidSignatureException):
        verifier.verify_and_decode(_payload(), None)


def test_missing_header_decodes_unverified_when_not_strict(caplog):
    verifier = StripeWebhookVerifier(SECRET, strict=False)

    with caplog.at_level("WARNING"):
        event = verifier.verify_and_decode(_payload("invoice.paid"), None)

    assert event.verified is False
    assert event.type == "invoice.paid"
    assert "verification skipped" in caplog.text


def test_no_secret_configured_skips_verification(caplog):
    verifier = StripeWebhookVerifier(None)

    with caplog.at_level("WARNING"):
        event = verifier.verify_and_decode(_payload("customer.created"), "t=1,v1=ignored")

    assert event.verified is False
    assert event.type == "customer.created"
    assert "not configured" in caplog.text


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"[1, 2, 3]",
        json.dumps({"data": {"object": {}}}).encode("utf-8"),
        json.dumps({"type": "invoice.paid", "data": {}}).encode("utf-8"),
    ],
)
def test_malformed_payload_is_rejected(body):
    verifier = StripeWebhookVerifier(None)

    with pytest.raises(MalformedPayloadException):
        verifier.verify_and_decode(body, None)
