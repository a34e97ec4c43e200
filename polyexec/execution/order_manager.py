from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Deque, Dict, List, Optional

from ..errors import InvariantViolation


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(slots=True)
class OrderIntent:
    """What the caller wants traded.

    ``size`` is in outcome shares; ``neg_risk`` routes the order to the
    neg-risk exchange contract.
    """

    token_id: str
    side: Side
    price: float
    size: float
    neg_risk: bool = False
    order_type: str = "FOK"

    def __post_init__(self) -> None:
        if not isinstance(self.side, Side):
            try:
                self.side = Side(str(self.side).upper())
            except ValueError:
                raise ValueError(f"side must be BUY or SELL, got {self.side!r}") from None


class OrderState(Enum):
    """Lifecycle states for an order inside the pipeline."""

    BUILT = auto()
    ADMITTED = auto()
    SIGNED = auto()
    SUBMITTED = auto()
    ACCEPTED = auto()
    REJECTED = auto()
    TRANSPORT_FAILED = auto()


TERMINAL_STATES = frozenset({OrderState.ACCEPTED, OrderState.REJECTED, OrderState.TRANSPORT_FAILED})

# SUBMITTED -> ADMITTED is a bounded retry of an already signed order.
_TRANSITIONS = {
    OrderState.BUILT: {OrderState.ADMITTED},
    OrderState.ADMITTED: {OrderState.SIGNED, OrderState.SUBMITTED},
    OrderState.SIGNED: {OrderState.SUBMITTED},
    OrderState.SUBMITTED: {
        OrderState.ADMITTED,
        OrderState.ACCEPTED,
        OrderState.REJECTED,
        OrderState.TRANSPORT_FAILED,
    },
}


@dataclass(slots=True)
class TrackedOrder:
    """An order (or cancel request) as seen by :class:`OrderManager`."""

    client_id: str
    kind: str
    intent: Optional[OrderIntent] = None
    target_order_id: Optional[str] = None
    order_id: Optional[str] = None
    state: OrderState = field(default=OrderState.BUILT)
    history: List[OrderState] = field(default_factory=lambda: [OrderState.BUILT])
    attempts: int = 0

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class OrderManager:
    """Track order lifecycle and refuse illegal transitions.

    Only the latest ``max_finished`` terminal orders are kept; older ones are
    evicted as new orders finish.
    """

    def __init__(self, max_finished: int = 1000) -> None:
        if max_finished < 0:
            raise ValueError("max_finished must be >= 0")
        self.orders: Dict[str, TrackedOrder] = {}
        self.max_finished = max_finished
        self._finished: Deque[str] = deque()

    def create(self, intent: OrderIntent | None = None, kind: str = "submit",
               target_order_id: str | None = None) -> TrackedOrder:
        """Register a new order in ``BUILT`` state."""
        order = TrackedOrder(uuid.uuid4().hex, kind, intent, target_order_id)
        self.orders[order.client_id] = order
        return order

    def advance(self, client_id: str, state: OrderState, order_id: str | None = None) -> TrackedOrder:
        """Move ``client_id`` to ``state``; terminal states are final."""
        order = self.orders[client_id]
        if state not in _TRANSITIONS.get(order.state, set()):
            raise InvariantViolation(
                f"order {client_id}: illegal transition {order.state.name} -> {state.name}"
            )
        order.state = state
        order.history.append(state)
        if state is OrderState.SUBMITTED:
            order.attempts += 1
        if order_id is not None:
            order.order_id = order_id
        if state in TERMINAL_STATES:
            self._finished.append(client_id)
            while len(self._finished) > self.max_finished:
                self.orders.pop(self._finished.popleft(), None)
        return order

    def discard(self, client_id: str) -> None:
        """Forget an order that will never reach a terminal state."""
        self.orders.pop(client_id, None)

    def open_orders(self) -> List[TrackedOrder]:
        return [o for o in self.orders.values() if not o.terminal]

    def forget_terminal(self) -> int:
        """Drop finished orders; returns how many were removed."""
        done = [cid for cid, o in self.orders.items() if o.terminal]
        for cid in done:
            del self.orders[cid]
        self._finished.clear()
        return len(done)


__all__ = ["Side", "OrderIntent", "OrderState", "TERMINAL_STATES", "TrackedOrder", "OrderManager"]
