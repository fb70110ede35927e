"""
Skew Engine Errors
==================

Failure taxonomy for the OI skew pipeline.

Every pipeline stage raises one of these. The single-symbol pipeline catches
them at its boundary and turns them into a terminal `error` progress event,
the batch scheduler catches them per symbol. Messages are surfaced to clients
verbatim, so keep them human readable.
"""
from typing import Optional


class SkewEngineError(Exception):
    """Base class for every skew pipeline failure."""

    reason = "SKEW_ENGINE_ERROR"

    def __init__(self, message: str, symbol: Optional[str] = None, details: Optional[str] = None):
        self.message = message
        self.symbol = symbol
        self.details = details
        super().__init__(message)

    def to_dict(self):
        """Convert to API response format."""
        return {
            "reason": self.reason,
            "message": self.message,
            "symbol": self.symbol,
            "details": self.details,
        }


class AuthMissingCredentials(SkewEngineError):
    """Venue credentials are not configured. Fatal, no pipeline may start."""
    reason = "AUTH_MISSING_CREDENTIALS"


class ChainNotFound(SkewEngineError):
    """The venue returned no usable option chain for the symbol."""
    reason = "CHAIN_NOT_FOUND"


class NoExpirationFound(SkewEngineError):
    """No Regular / End-Of-Month expiration with dte >= 0 remained."""
    reason = "NO_EXPIRATION_FOUND"


class NoCandidatesInDeltaRange(SkewEngineError):
    """Phase 1 produced no balanced call/put set inside the delta band."""
    reason = "NO_CANDIDATES_IN_DELTA_RANGE"


class PartialOiTimeout(SkewEngineError):
    """Phase 2 window elapsed without open interest on both sides."""
    reason = "PARTIAL_OI_TIMEOUT"

    def __init__(self, call_count: int, put_count: int, symbol: Optional[str] = None):
        self.call_count = call_count
        self.put_count = put_count
        super().__init__(
            f"Timeout: Got OI for {call_count} calls and {put_count} puts",
            symbol=symbol,
        )


class UpstreamUnavailable(SkewEngineError):
    """Network or venue failure during a fetch or a feed operation."""
    reason = "UPSTREAM_UNAVAILABLE"


class ConnectionLost(SkewEngineError):
    """The requesting client went away. Transport-level, never a pipeline failure."""
    reason = "CONNECTION_LOST"
