"""Exception hierarchy shared by the webhook, queue, and sync layers."""

from __future__ import annotations


class PulseSyncError(Exception):
    """Base class for all PulseSync errors."""


# ---------- Webhooks ----------


class WebhookError(PulseSyncError):
    """A webhook request was rejected before any work was enqueued."""

    status_code: int = 400


class MissingSignatureError(WebhookError):
    status_code = 401


class InvalidSignatureError(WebhookError):
    status_code = 401


class RawBodyUnavailableError(WebhookError):
    """The raw request bytes were consumed before verification could run."""

    status_code = 400


class WebhookNotConfiguredError(WebhookError):
    """No signing secret is configured and unsigned webhooks are not allowed."""

    status_code = 503


# ---------- Providers / connections ----------


class UnsupportedProviderError(PulseSyncError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class ProviderAPIError(PulseSyncError):
    """A provider API call failed. Transient by default; the job queue retries."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


# ---------- Job queue ----------


class JobTimeoutError(PulseSyncError):
    pass
