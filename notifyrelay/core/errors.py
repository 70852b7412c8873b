from __future__ import annotations


class NotifyRelayError(Exception):
    """Base error for notifyrelay."""


class ProviderConfigError(NotifyRelayError):
    """Missing or invalid delivery provider configuration."""


class DatabaseError(NotifyRelayError):
    """Persistence layer failure."""


class DispatchError(NotifyRelayError):
    """Channel dispatch did not deliver the notification."""


class TransientDispatchError(DispatchError):
    """Dispatch failed in a way that may succeed on a later attempt."""


class DispatchTimeoutError(TransientDispatchError):
    """Dispatch exceeded its time budget."""


class StaleEndpointError(DispatchError):
    """Push endpoint reported permanently gone (404/410)."""

    def __init__(self, subscription_id: int, status_code: int | None = None, message: str | None = None) -> None:
        self.subscription_id = subscription_id
        self.status_code = status_code
        super().__init__(message or f"subscription {subscription_id} is no longer valid")


class PreferenceBlockedError(NotifyRelayError):
    """User preferences disallow the job's current channel."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"User disabled {channel}")
