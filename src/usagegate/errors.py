"""Exception types raised by the usage gate."""


class UsageGateError(Exception):
    """Base class for all usage gate errors."""


class StoreUnavailable(UsageGateError):
    """
    The key/value store timed out or could not be reached.

    Raised by store clients only. The cache, quota ledger and rate limiter
    catch it and degrade to their fail-open outcome.
    """

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        message = f"Store unavailable during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidIdentity(UsageGateError, ValueError):
    """Identity fields are missing or malformed for cache key derivation."""


class PeriodMisconfiguration(UsageGateError, ValueError):
    """An action has no usable period/limit configuration."""
