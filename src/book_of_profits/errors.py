"""Error taxonomy shared by the store, the chain adapters and the session."""

from __future__ import annotations


class BopError(Exception):
    """Base class for every error raised by Book of Profits."""


# ---------------------------------------------------------------------------
# Persistence / authentication (fail-fast)
# ---------------------------------------------------------------------------


class AuthError(BopError):
    """Wrong or missing password for an encrypted data file."""


class CorruptionError(BopError):
    """The data file is unreadable or does not hold a valid state."""


class VersionError(CorruptionError):
    """The data file uses a format version this build does not understand."""


class StoreIOError(BopError):
    """Writing the data file failed. The previous file is left intact."""


# ---------------------------------------------------------------------------
# User input
# ---------------------------------------------------------------------------


class ValidationError(BopError):
    """Malformed address, URL, alias or other command input."""


class UnsupportedOperation(BopError):
    """The chain family does not offer the requested capability."""


# ---------------------------------------------------------------------------
# Network (fail-soft during aggregation)
# ---------------------------------------------------------------------------


class ChainError(BopError):
    """An RPC call failed or returned malformed data.

    ``retry_after`` carries the server's back-off hint (in seconds) when it
    answered with HTTP 429.
    """

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(ChainError):
    """The request never produced a usable HTTP response."""


class RpcError(ChainError):
    """The node answered with a JSON-RPC ``error`` object."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class PriceUnavailable(BopError):
    """No unit price could be resolved for a token."""
