"""Tests for webhook HMAC-SHA1 signature verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

import pytest

from pulsesync.exceptions import (
    InvalidSignatureError,
    MissingSignatureError,
    RawBodyUnavailableError,
    WebhookNotConfiguredError,
)
from pulsesync.webhooks.signature import SignatureVerifier, compute_signature

SECRET = "s3cr3t-client"
BODY = json.dumps({"dailies": [{"userId": "g-1", "summaryId": "x"}]}).encode()


def _hex(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(f"{secret}&".encode(), body, hashlib.sha1).hexdigest()


def _b64(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(f"{secret}&".encode(), body, hashlib.sha1).digest()).decode()


def _flip(signature: str, index: int) -> str:
    flipped = chr(ord(signature[index]) ^ 0x01)
    return signature[:index] + flipped + signature[index + 1:]


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier({"garmin": SECRET, "fitbit": SECRET})


class TestComputeSignature:
    def test_key_is_secret_plus_ampersand(self):
        assert compute_signature(SECRET, BODY, "hex") == _hex(BODY)
        assert compute_signature(SECRET, BODY, "base64") == _b64(BODY)

    def test_unknown_encoding(self):
        with pytest.raises(ValueError):
            compute_signature(SECRET, BODY, "base32")


class TestVerify:
    def test_valid_garmin_hex(self, verifier):
        assert verifier.verify("garmin", BODY, _hex(BODY)) is True

    def test_valid_fitbit_base64(self, verifier):
        assert verifier.verify("fitbit", BODY, _b64(BODY)) is True

    def test_garmin_rejects_base64_encoding(self, verifier):
        with pytest.raises(InvalidSignatureError):
            verifier.verify("garmin", BODY, _b64(BODY))

    @pytest.mark.parametrize("index", [0, 7, 19, 39])
    def test_flipped_signature_character_fails(self, verifier, index):
        with pytest.raises(InvalidSignatureError):
            verifier.verify("garmin", BODY, _flip(_hex(BODY), index))

    @pytest.mark.parametrize("index", [0, 5, len(BODY) // 2, len(BODY) - 1])
    def test_flipped_body_byte_fails(self, verifier, index):
        tampered = bytearray(BODY)
        tampered[index] ^= 0x01
        with pytest.raises(InvalidSignatureError):
            verifier.verify("fitbit", bytes(tampered), _b64(BODY))

    def test_wrong_secret_fails(self, verifier):
        with pytest.raises(InvalidSignatureError):
            verifier.verify("garmin", BODY, _hex(BODY, secret="other"))

    def test_missing_header(self, verifier):
        with pytest.raises(MissingSignatureError) as exc_info:
            verifier.verify("garmin", BODY, None)
        assert exc_info.value.status_code == 401

    def test_raw_body_unavailable(self, verifier):
        with pytest.raises(RawBodyUnavailableError) as exc_info:
            verifier.verify("fitbit", None, _b64(BODY))
        assert exc_info.value.status_code == 400

    def test_mismatch_logs_signature_not_secret(self, verifier, caplog):
        caplog.set_level("WARNING", logger="pulsesync.webhooks.signature")
        bad = _flip(_hex(BODY), 0)
        with pytest.raises(InvalidSignatureError):
            verifier.verify("garmin", BODY, bad)
        assert bad in caplog.text
        assert SECRET not in caplog.text


class TestUnconfigured:
    def test_missing_secret_rejected(self):
        verifier = SignatureVerifier({"garmin": None, "fitbit": SECRET})
        with pytest.raises(WebhookNotConfiguredError) as exc_info:
            verifier.verify("garmin", BODY, _hex(BODY))
        assert exc_info.value.status_code == 503

    def test_allow_unsigned_accepts_with_warning(self, caplog):
        caplog.set_level("WARNING", logger="pulsesync.webhooks.signature")
        verifier = SignatureVerifier({"garmin": None}, allow_unsigned=True)

        assert verifier.verify("garmin", BODY, None) is False
        assert "WITHOUT signature verification" in caplog.text

    def test_allow_unsigned_does_not_bypass_configured_secret(self):
        verifier = SignatureVerifier({"garmin": SECRET}, allow_unsigned=True)
        with pytest.raises(MissingSignatureError):
            verifier.verify("garmin", BODY, None)

    def test_from_settings(self, settings):
        verifier = SignatureVerifier.from_settings(settings)
        assert verifier.verify("garmin", BODY, _hex(BODY, settings.garmin_client_secret))
