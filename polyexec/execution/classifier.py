"""Map exchange responses and transport failures to order outcomes.

The rules are plain data: an ordered tuple of :class:`Rule` objects, first
match wins.  Upstream wording changes are absorbed by editing the table, not
the pipeline.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional, Sequence, Tuple

from ..errors import (
    BelowMinimumSize,
    InsufficientFunds,
    InvalidPrice,
    InvalidSignature,
    OrderTransportFailed,
    Throttled,
    TransportError,
    UnclassifiedRejection,
)
from .transport import TransportResponse


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TRANSPORT_FAILED = "transport_failed"


class FailureKind(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BELOW_MINIMUM_SIZE = "below_minimum_size"
    INVALID_PRICE = "invalid_price"
    INVALID_SIGNATURE = "invalid_signature"
    THROTTLED = "throttled"
    UNCLASSIFIED = "unclassified"
    TIMEOUT = "timeout"
    NETWORK = "network"


@dataclass(frozen=True)
class Rule:
    """Match an upstream rejection by HTTP status or message pattern."""

    kind: FailureKind
    patterns: Tuple[str, ...] = ()
    statuses: FrozenSet[int] = field(default_factory=frozenset)

    def matches(self, status: int | None, message: str) -> bool:
        if status is not None and status in self.statuses:
            return True
        return any(re.search(p, message, re.IGNORECASE) for p in self.patterns)


DEFAULT_RULES: Tuple[Rule, ...] = (
    Rule(FailureKind.THROTTLED, (r"too many requests", r"rate limit"), frozenset({429})),
    Rule(
        FailureKind.INSUFFICIENT_FUNDS,
        (
            r"not enough balance",
            r"not enough allowance",
            r"not_enough_balance",
            r"insufficient (balance|funds|allowance)",
        ),
    ),
    Rule(FailureKind.INVALID_PRICE, (r"tick[ _]size",)),
    Rule(FailureKind.BELOW_MINIMUM_SIZE, (r"min(imum)? size", r"\bminimum\b", r"min_size")),
    Rule(
        FailureKind.INVALID_PRICE,
        (r"invalid price", r"price.*\b(min|max):", r"invalid_price"),
    ),
    Rule(
        FailureKind.INVALID_SIGNATURE,
        (
            r"invalid signature",
            r"invalid_signature",
            r"signature.*(mismatch|invalid)",
            r"signer.*mismatch",
            r"has to be the (owner|address)",
        ),
    ),
)


_EXCEPTIONS = {
    FailureKind.INSUFFICIENT_FUNDS: InsufficientFunds,
    FailureKind.BELOW_MINIMUM_SIZE: BelowMinimumSize,
    FailureKind.INVALID_PRICE: InvalidPrice,
    FailureKind.INVALID_SIGNATURE: InvalidSignature,
    FailureKind.THROTTLED: Throttled,
    FailureKind.UNCLASSIFIED: UnclassifiedRejection,
    FailureKind.TIMEOUT: OrderTransportFailed,
    FailureKind.NETWORK: OrderTransportFailed,
}


@dataclass(frozen=True)
class OrderResult:
    """Classified outcome of one submit or cancel call.

    ``message`` is the caller-facing text; ``upstream_message`` keeps the
    exchange's own wording untouched.
    """

    outcome: Outcome
    reason: Optional[FailureKind] = None
    order_id: Optional[str] = None
    message: str = ""
    upstream_message: str = ""
    http_status: Optional[int] = None
    exchange_status: Optional[str] = None
    raw: Any = None
    client_order_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED

    def raise_for_outcome(self) -> "OrderResult":
        """Return ``self`` when accepted, else raise the matching :class:`OrderRejected`."""
        if self.accepted:
            return self
        exc_type = _EXCEPTIONS.get(self.reason, UnclassifiedRejection)
        raise exc_type(self.message or self.upstream_message, status_code=self.http_status, raw=self.raw)


def upstream_message(body: Any) -> str:
    """Extract the exchange's error text from a decoded body."""
    if isinstance(body, dict):
        for key in ("error", "errorMsg", "message", "detail"):
            value = body.get(key)
            if value:
                return str(value)
        return ""
    if isinstance(body, str):
        return body.strip()
    return ""


def match_rules(status: int | None, message: str, rules: Iterable[Rule] = DEFAULT_RULES) -> FailureKind:
    for rule in rules:
        if rule.matches(status, message):
            return rule.kind
    return FailureKind.UNCLASSIFIED


def _describe(kind: FailureKind, upstream: str, funder: str | None, signer: str | None) -> str:
    if kind is FailureKind.INSUFFICIENT_FUNDS:
        return (
            f"insufficient balance or allowance: Safe wallet {funder or '<unknown>'} must hold "
            f"enough USDC.e and approve the exchange contract ({upstream})"
        )
    if kind is FailureKind.INVALID_SIGNATURE:
        return (
            f"signature rejected: signer {signer or '<unknown>'} is not accepted for Safe "
            f"{funder or '<unknown>'}; re-run owner authorization ({upstream})"
        )
    if kind is FailureKind.THROTTLED:
        return f"throttled by exchange ({upstream or 'HTTP 429'})"
    return upstream


def _order_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("orderID", "orderId", "order_id"):
        value = body.get(key)
        if value:
            return str(value)
    return None


def classify_response(
    response: TransportResponse,
    funder: str | None = None,
    signer: str | None = None,
    rules: Sequence[Rule] = DEFAULT_RULES,
) -> OrderResult:
    """Classify an order-placement response.

    An order is accepted only on a non-error status whose body carries a
    non-empty order id and no error text.  Anything else is a rejection; a
    missing id is never read as success.
    """

    body = response.body
    upstream = upstream_message(body)
    order_id = _order_id(body)
    exchange_status = body.get("status") if isinstance(body, dict) else None
    success_flag = body.get("success", True) if isinstance(body, dict) else True

    if response.ok and order_id and not upstream and success_flag is not False:
        return OrderResult(
            Outcome.ACCEPTED,
            order_id=order_id,
            http_status=response.status,
            exchange_status=exchange_status,
            raw=body,
        )

    if not upstream:
        upstream = (
            "response carried no order id" if response.ok else f"HTTP {response.status} without error text"
        )
    kind = match_rules(response.status, upstream, rules)
    return OrderResult(
        Outcome.REJECTED,
        reason=kind,
        order_id=order_id,
        message=_describe(kind, upstream, funder, signer),
        upstream_message=upstream,
        http_status=response.status,
        exchange_status=exchange_status,
        raw=body,
    )


def classify_cancel_response(
    response: TransportResponse,
    order_id: str,
    rules: Sequence[Rule] = DEFAULT_RULES,
) -> OrderResult:
    """Classify a cancel response; success means ``order_id`` is listed as canceled."""
    body = response.body
    canceled = body.get("canceled") if isinstance(body, dict) else None
    if response.ok and isinstance(canceled, list) and order_id in canceled:
        return OrderResult(Outcome.ACCEPTED, order_id=order_id, http_status=response.status, raw=body)

    upstream = upstream_message(body)
    not_canceled = body.get("not_canceled") if isinstance(body, dict) else None
    if not upstream and isinstance(not_canceled, dict) and order_id in not_canceled:
        upstream = str(not_canceled[order_id])
    if not upstream:
        upstream = f"order {order_id} not reported as canceled"
    kind = match_rules(response.status, upstream, rules)
    return OrderResult(
        Outcome.REJECTED,
        reason=kind,
        order_id=order_id,
        message=_describe(kind, upstream, None, None),
        upstream_message=upstream,
        http_status=response.status,
        raw=body,
    )


def classify_transport_error(exc: TransportError) -> OrderResult:
    """Turn a transport failure into a ``TRANSPORT_FAILED`` result.

    Redirect loops are how the upstream edge throttles, so they carry
    ``THROTTLED`` rather than a generic network reason.
    """

    if exc.reason == "redirect_loop":
        kind = FailureKind.THROTTLED
        message = f"throttled: redirect loop ({exc})"
    elif exc.reason == "timeout":
        kind = FailureKind.TIMEOUT
        message = f"timed out: {exc}"
    else:
        kind = FailureKind.NETWORK
        message = f"network failure: {exc}"
    return OrderResult(Outcome.TRANSPORT_FAILED, reason=kind, message=message, upstream_message=str(exc))


__all__ = [
    "DEFAULT_RULES",
    "FailureKind",
    "OrderResult",
    "Outcome",
    "Rule",
    "classify_cancel_response",
    "classify_response",
    "classify_transport_error",
    "match_rules",
    "upstream_message",
]
