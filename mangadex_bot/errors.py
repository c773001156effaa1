"""
Error taxonomy shared by the catalog client, the store and the notifier.
"""

from __future__ import annotations

from typing import List, Optional


class BotError(Exception):
    """Base class for every error raised by mangadex-bot."""


class ConfigError(BotError):
    """Configuration is missing or invalid (startup only)."""


# ──────────────────────────────────────────────────────────────────────────
# Upstream (catalog) errors
# ──────────────────────────────────────────────────────────────────────────

class TransientError(BotError):
    """Retryable failure: network error, timeout, 5xx."""


class RateLimitedError(TransientError):
    """Upstream asked us to slow down; wait ``retry_after`` seconds."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalError(BotError):
    """Non-retryable within the current cycle (bad response, auth failure)."""


class ApiError(FatalError):
    """The MangaDex API answered with ``"result": "error"``."""

    def __init__(self, errors: List[dict]):
        self.errors = errors
        if not errors:
            message = "An error was returned by the MangaDex API."
        elif len(errors) == 1:
            detail = errors[0].get("detail") or errors[0].get("title") or "unknown error"
            message = f"An error was returned by the MangaDex API: {detail}"
        else:
            message = "Many errors were returned by the MangaDex API, see logs for more information."
        super().__init__(message)


class PersistenceFailure(FatalError):
    """Seen-set write failed; the batch must not be considered committed."""


# ──────────────────────────────────────────────────────────────────────────
# Delivery errors
# ──────────────────────────────────────────────────────────────────────────

class DeliveryError(BotError):
    """Raised by a sink when a message could not be sent."""


class TransientDeliveryError(DeliveryError):
    """Delivery may succeed if retried later."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalDeliveryError(DeliveryError):
    """Delivery will never succeed for this target (unknown channel, forbidden)."""
