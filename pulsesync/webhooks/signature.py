"""Webhook signature verification for Garmin and Fitbit.

Both providers sign the exact raw request body with HMAC-SHA1, keyed by the
OAuth client secret followed by ``&`` (an OAuth 1.0-style signing key with
an empty token secret).  They differ only in the header and the encoding:

    Garmin:  X-Garmin-Signature, hex
    Fitbit:  X-Fitbit-Signature, base64

Verification must run on the bytes as received, before any JSON parsing.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass

from pulsesync.config import Settings
from pulsesync.exceptions import (
    InvalidSignatureError,
    MissingSignatureError,
    RawBodyUnavailableError,
    UnsupportedProviderError,
    WebhookNotConfiguredError,
)

logger = logging.getLogger("pulsesync.webhooks.signature")


@dataclass(frozen=True)
class SignatureScheme:
    header: str
    encoding: str  # "hex" | "base64"


SIGNATURE_SCHEMES: dict[str, SignatureScheme] = {
    "garmin": SignatureScheme(header="X-Garmin-Signature", encoding="hex"),
    "fitbit": SignatureScheme(header="X-Fitbit-Signature", encoding="base64"),
}


def compute_signature(secret: str, body: bytes, encoding: str) -> str:
    """HMAC-SHA1 of ``body`` keyed by ``secret + "&"``, hex or base64 encoded."""
    digest = hmac.new(f"{secret}&".encode(), body, hashlib.sha1).digest()
    if encoding == "hex":
        return digest.hex()
    if encoding == "base64":
        return base64.b64encode(digest).decode()
    raise ValueError(f"Unknown signature encoding: {encoding}")


class SignatureVerifier:
    """Checks provider webhook signatures against per-provider secrets.

    With no secret configured for a provider, requests are rejected unless
    ``allow_unsigned`` was explicitly enabled (development only), in which
    case each unsigned request is accepted with a warning.
    """

    def __init__(self, secrets: dict[str, str | None], allow_unsigned: bool = False) -> None:
        self._secrets = secrets
        self._allow_unsigned = allow_unsigned
        if allow_unsigned:
            missing = [p for p in SIGNATURE_SCHEMES if not secrets.get(p)]
            if missing:
                logger.warning(
                    "Unsigned webhooks ENABLED for %s — signature verification is off. "
                    "Never run this configuration in production.",
                    ", ".join(missing),
                )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignatureVerifier":
        return cls(
            {provider: settings.provider_secret(provider) for provider in SIGNATURE_SCHEMES},
            allow_unsigned=settings.allow_unsigned_webhooks,
        )

    def scheme(self, provider: str) -> SignatureScheme:
        try:
            return SIGNATURE_SCHEMES[provider]
        except KeyError:
            raise UnsupportedProviderError(provider) from None

    def verify(self, provider: str, raw_body: bytes | None, signature: str | None) -> bool:
        """Verify one webhook request.

        Returns:
            True if the signature was checked and matched, False if the
            request was accepted unsigned (fail-open development mode).

        Raises:
            WebhookNotConfiguredError: No secret and unsigned mode is off.
            MissingSignatureError:     The signature header is absent.
            RawBodyUnavailableError:   The raw bytes were not captured.
            InvalidSignatureError:     The signature does not match.
        """
        scheme = self.scheme(provider)
        secret = self._secrets.get(provider)

        if not secret:
            if self._allow_unsigned:
                logger.warning(
                    "%s webhook secret not set — accepting webhook WITHOUT signature verification",
                    provider,
                )
                return False
            logger.error("%s webhook rejected: no signing secret configured", provider)
            raise WebhookNotConfiguredError(f"{provider} webhooks are not configured")

        if not signature:
            raise MissingSignatureError(f"Missing {provider} webhook signature")

        if raw_body is None:
            logger.error(
                "%s webhook: raw body not available — it must be read before any parsing",
                provider,
            )
            raise RawBodyUnavailableError("Raw body not available")

        expected = compute_signature(secret, raw_body, scheme.encoding)
        if not hmac.compare_digest(signature.encode(), expected.encode()):
            logger.warning("%s webhook signature mismatch: signature=%r", provider, signature)
            raise InvalidSignatureError(f"Invalid {provider} webhook signature")

        return True
