import pytest

from polyexec.errors import InvariantViolation
from polyexec.execution.order_manager import OrderIntent, OrderManager, OrderState


def _intent() -> OrderIntent:
    return OrderIntent("123", "BUY", 0.5, 10)


def test_state_transitions() -> None:
    om = OrderManager()
    order = om.create(_intent())
    assert om.orders[order.client_id].state is OrderState.BUILT
    om.advance(order.client_id, OrderState.ADMITTED)
    om.advance(order.client_id, OrderState.SIGNED)
    om.advance(order.client_id, OrderState.SUBMITTED)
    om.advance(order.client_id, OrderState.ACCEPTED, order_id="O1")
    tracked = om.orders[order.client_id]
    assert tracked.state is OrderState.ACCEPTED
    assert tracked.order_id == "O1"
    assert tracked.attempts == 1
    assert tracked.history == [
        OrderState.BUILT,
        OrderState.ADMITTED,
        OrderState.SIGNED,
        OrderState.SUBMITTED,
        OrderState.ACCEPTED,
    ]


def test_terminal_state_is_final() -> None:
    om = OrderManager()
    order = om.create(_intent())
    for state in (OrderState.ADMITTED, OrderState.SIGNED, OrderState.SUBMITTED, OrderState.REJECTED):
        om.advance(order.client_id, state)
    with pytest.raises(InvariantViolation):
        om.advance(order.client_id, OrderState.ACCEPTED)
    with pytest.raises(InvariantViolation):
        om.advance(order.client_id, OrderState.ADMITTED)


def test_cannot_skip_admission() -> None:
    om = OrderManager()
    order = om.create(_intent())
    with pytest.raises(InvariantViolation):
        om.advance(order.client_id, OrderState.SUBMITTED)


def test_retry_and_cleanup() -> None:
    om = OrderManager()
    o1 = om.create(_intent())
    o2 = om.create(kind="cancel", target_order_id="O9")
    for state in (OrderState.ADMITTED, OrderState.SIGNED, OrderState.SUBMITTED, OrderState.ADMITTED, OrderState.SUBMITTED):
        om.advance(o1.client_id, state)
    assert om.orders[o1.client_id].attempts == 2
    om.advance(o1.client_id, OrderState.TRANSPORT_FAILED)

    assert [o.client_id for o in om.open_orders()] == [o2.client_id]
    assert om.forget_terminal() == 1
    assert list(om.orders) == [o2.client_id]


def test_finished_history_is_bounded() -> None:
    om = OrderManager(max_finished=2)
    ids = []
    for _ in range(3):
        order = om.create(_intent())
        for state in (OrderState.ADMITTED, OrderState.SUBMITTED, OrderState.TRANSPORT_FAILED):
            om.advance(order.client_id, state)
        ids.append(order.client_id)
    pending = om.create(_intent())
    assert list(om.orders) == ids[1:] + [pending.client_id]

    om.discard(pending.client_id)
    assert om.open_orders() == []
    with pytest.raises(ValueError):
        OrderManager(max_finished=-1)
