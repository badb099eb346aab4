"""
SugarSentry — error types.

Every failure the poller and monitor loops can hit maps onto one of these.
None of them is fatal: the loops log and carry on at the next tick.
"""


class SugarSentryError(Exception):
    """Base class for all SugarSentry errors."""


class AuthError(SugarSentryError):
    """Dexcom account-id lookup or session login failed."""


class FetchError(SugarSentryError):
    """Glucose readings could not be fetched (network, HTTP status, bad body)."""


class ParseError(SugarSentryError):
    """A Dexcom payload or timestamp string was malformed."""


class StoreError(SugarSentryError):
    """Reading from or writing to the SQLite store failed."""


class DeliveryError(SugarSentryError):
    """A push notification could not be delivered."""
