"""Exception taxonomy for the execution core.

Every error is classified where it happens and propagated unchanged.  The
order-rejection family keeps the upstream message so callers can map it to
an actionable hint ("top up wallet", "re-authorize signer").
"""

from __future__ import annotations

from typing import Any


class PolyExecError(Exception):
    """Base class for all errors raised by :mod:`polyexec`."""


class ConfigurationError(PolyExecError):
    """Required secret or setting is missing or malformed."""


class DerivationError(PolyExecError):
    """User identity could not be turned into a derivation index."""


class InvariantViolation(PolyExecError):
    """An internal invariant was broken; the operation must abort."""


class TransportError(PolyExecError):
    """Network level failure while talking to an upstream service.

    Parameters
    ----------
    message:
        Human readable description.
    reason:
        One of ``"network"``, ``"timeout"``, ``"redirect_loop"`` or ``"http"``.
    request_sent:
        ``False`` only when the failure is known to have happened before the
        request left the process (e.g. connection refused).  When in doubt the
        request counts as sent.
    """

    def __init__(self, message: str, reason: str = "network", request_sent: bool = True) -> None:
        super().__init__(message)
        self.reason = reason
        self.request_sent = request_sent


class WalletNotDeployed(PolyExecError):
    """The user's Safe has no bytecode on chain yet."""


class AuthorizationError(PolyExecError):
    """The derived signer is not (or could not be made) a Safe owner.

    ``transaction`` holds the :class:`~polyexec.wallet.safe.AuthorizationTransaction`
    in its last known state when the failure happened during relaying.
    """

    def __init__(self, message: str, transaction: Any = None) -> None:
        super().__init__(message)
        self.transaction = transaction


class AuthorizationTimeout(AuthorizationError):
    """The relay did not execute the owner-add transaction in time."""


class AuthorizationRejected(AuthorizationError):
    """The relay refused or reverted the owner-add transaction."""


class OrderRejected(PolyExecError):
    """The exchange rejected an order.

    Attributes
    ----------
    status_code:
        HTTP status of the upstream response, when there was one.
    raw:
        The parsed upstream body, preserved for diagnostics.
    """

    def __init__(self, message: str, status_code: int | None = None, raw: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.raw = raw


class InsufficientFunds(OrderRejected):
    """Funding Safe lacks balance or exchange allowance."""


class BelowMinimumSize(OrderRejected):
    """Order size is below the market minimum."""


class InvalidPrice(OrderRejected):
    """Price is outside the market's tick bounds."""


class InvalidSignature(OrderRejected, AuthorizationError):
    """Signer is not accepted for the maker wallet."""


class Throttled(OrderRejected):
    """Upstream rate limit hit (HTTP 429 or redirect loop)."""


class UnclassifiedRejection(OrderRejected):
    """Rejection that matched no known rule."""


class OrderTransportFailed(OrderRejected):
    """The order never produced an exchange answer."""


__all__ = [
    "PolyExecError",
    "ConfigurationError",
    "DerivationError",
    "InvariantViolation",
    "TransportError",
    "WalletNotDeployed",
    "AuthorizationError",
    "AuthorizationTimeout",
    "AuthorizationRejected",
    "OrderRejected",
    "InsufficientFunds",
    "BelowMinimumSize",
    "InvalidPrice",
    "InvalidSignature",
    "Throttled",
    "UnclassifiedRejection",
    "OrderTransportFailed",
]
