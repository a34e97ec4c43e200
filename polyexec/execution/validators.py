from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .order_manager import OrderIntent

# Binary-outcome markets quote strictly inside (0, 1); these are the
# outermost ticks the exchange accepts.
MIN_PRICE = 0.001
MAX_PRICE = 0.999


def parse_token_id(token_id: str) -> int:
    """Return the integer outcome-token id from a decimal or ``0x`` string."""
    text = str(token_id).strip()
    try:
        value = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
    except ValueError:
        raise ValueError(f"token id must be a decimal or 0x-hex integer: {token_id!r}") from None
    if value < 0:
        raise ValueError("token id must be non-negative")
    return value


def validate_intent(intent: "OrderIntent") -> None:
    """Raise ``ValueError`` if ``intent`` is structurally unusable.

    Only checks what signing needs: a known side, an integer token id and
    finite positive price and size.  Market bounds (tick size, minimum size,
    the open price interval) are enforced by the exchange and come back as
    classified rejections.
    """

    parse_token_id(intent.token_id)
    if not (isinstance(intent.price, (int, float)) and math.isfinite(intent.price)) or intent.price <= 0:
        raise ValueError(f"price must be a positive finite number, got {intent.price!r}")
    if not (isinstance(intent.size, (int, float)) and math.isfinite(intent.size)) or intent.size <= 0:
        raise ValueError(f"size must be a positive finite number, got {intent.size!r}")
    if not intent.order_type:
        raise ValueError("order type is required")


def price_with_slippage(side: str, reference: float, tolerance: float) -> float:
    """Widen ``reference`` by ``tolerance`` against the taker and clamp to tick bounds.

    Buys pay up to ``reference * (1 + tolerance)``, sells accept down to
    ``reference * (1 - tolerance)``.  The result never leaves
    ``[MIN_PRICE, MAX_PRICE]``.
    """

    if tolerance < 0:
        raise ValueError("tolerance must be non-negative")
    side_u = str(side).upper()
    if side_u == "BUY":
        price = reference * (1 + tolerance)
    elif side_u == "SELL":
        price = reference * (1 - tolerance)
    else:
        raise ValueError(f"side must be BUY or SELL, got {side!r}")
    return round(min(MAX_PRICE, max(MIN_PRICE, price)), 6)


__all__ = ["MIN_PRICE", "MAX_PRICE", "parse_token_id", "price_with_slippage", "validate_intent"]
