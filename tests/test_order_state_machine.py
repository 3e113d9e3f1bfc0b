"""Tests for the order state machine — every (state, action, role) combination."""

import itertools

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from gigstream.errors import Forbidden, InvalidTransition
from gigstream.models.market import PackageType
from gigstream.models.order import ActorRole, Order, OrderStatus
from gigstream.orders.state_machine import OrderAction, OrderStateMachine


S = OrderStatus
A = OrderAction
R = ActorRole

EXPECTED = {
    (S.PENDING, A.DELIVER, R.SELLER): S.DELIVERED,
    (S.IN_PROGRESS, A.DELIVER, R.SELLER): S.DELIVERED,
    (S.DELIVERED, A.COMPLETE, R.BUYER): S.COMPLETED,
    (S.PENDING, A.CANCEL, R.BUYER): S.CANCELLED,
    (S.PENDING, A.CANCEL, R.ADMIN): S.CANCELLED,
    (S.IN_PROGRESS, A.CANCEL, R.BUYER): S.CANCELLED,
    (S.IN_PROGRESS, A.CANCEL, R.ADMIN): S.CANCELLED,
}

# Roles that can perform an action from some state
CAPABLE = {
    A.DELIVER: {R.SELLER},
    A.COMPLETE: {R.BUYER},
    A.CANCEL: {R.BUYER, R.ADMIN},
}


def _make_order(status: OrderStatus = OrderStatus.IN_PROGRESS) -> Order:
    return Order(
        order_id="ord-1",
        gig_id="gig-1",
        buyer_id="buyer",
        seller_id="seller",
        package_type=PackageType.BASIC,
        price=Decimal("50.00"),
        service_fee=Decimal("5.00"),
        total_amount=Decimal("55.00"),
        status=status,
    )


class TestTransitionTable:
    @pytest.mark.parametrize(
        "state,action,role",
        list(itertools.product(OrderStatus, OrderAction, ActorRole)),
    )
    def test_every_combination(
        self, state: OrderStatus, action: OrderAction, role: ActorRole,
    ) -> None:
        expected = EXPECTED.get((state, action, role))
        if expected is not None:
            assert OrderStateMachine.decide(state, action, {role}) == expected
        elif role not in CAPABLE[action]:
            with pytest.raises(Forbidden):
                OrderStateMachine.decide(state, action, {role})
        else:
            with pytest.raises(InvalidTransition):
                OrderStateMachine.decide(state, action, {role})

    def test_no_roles_is_forbidden(self) -> None:
        with pytest.raises(Forbidden):
            OrderStateMachine.decide(S.IN_PROGRESS, A.CANCEL, set())

    def test_any_matching_role_suffices(self) -> None:
        # Seller who is also an admin may cancel
        assert OrderStateMachine.decide(S.IN_PROGRESS, A.CANCEL, {R.SELLER, R.ADMIN}) == S.CANCELLED

    def test_terminal_states_have_no_exits(self) -> None:
        for state in (S.COMPLETED, S.CANCELLED, S.DISPUTED):
            assert OrderStateMachine.valid_transitions(state) == {}

    def test_is_terminal(self) -> None:
        assert OrderStateMachine.is_terminal(S.COMPLETED)
        assert OrderStateMachine.is_terminal(S.CANCELLED)
        assert not OrderStateMachine.is_terminal(S.DELIVERED)


class TestParseTarget:
    def test_requestable_targets(self) -> None:
        assert OrderStateMachine.parse_target("DELIVERED") == A.DELIVER
        assert OrderStateMachine.parse_target(S.COMPLETED) == A.COMPLETE
        assert OrderStateMachine.parse_target("CANCELLED") == A.CANCEL

    @pytest.mark.parametrize("target", ["DISPUTED", "PENDING", "IN_PROGRESS", "SHIPPED", ""])
    def test_unrequestable_targets(self, target: str) -> None:
        with pytest.raises(InvalidTransition):
            OrderStateMachine.parse_target(target)


class TestApply:
    def test_deliver_by_seller(self) -> None:
        order = _make_order()
        previous = OrderStateMachine.apply(order, "DELIVERED", order.roles_of("seller"))
        assert previous == S.IN_PROGRESS
        assert order.status == S.DELIVERED
        assert order.completed_utc is None

    def test_deliver_forbidden_for_everyone_but_seller(self) -> None:
        for actor in ("buyer", "stranger"):
            order = _make_order()
            with pytest.raises(Forbidden):
                OrderStateMachine.apply(order, "DELIVERED", order.roles_of(actor))
            assert order.status == S.IN_PROGRESS

    def test_deliver_forbidden_for_admin(self) -> None:
        order = _make_order()
        with pytest.raises(Forbidden):
            OrderStateMachine.apply(order, "DELIVERED", order.roles_of("root", is_admin=True))

    def test_complete_stamps_completed_utc(self) -> None:
        order = _make_order(S.DELIVERED)
        when = datetime(2026, 3, 4, tzinfo=timezone.utc)
        OrderStateMachine.apply(order, "COMPLETED", order.roles_of("buyer"), now=when)
        assert order.status == S.COMPLETED
        assert order.completed_utc == when

    def test_complete_requires_delivery(self) -> None:
        order = _make_order(S.IN_PROGRESS)
        with pytest.raises(InvalidTransition):
            OrderStateMachine.apply(order, "COMPLETED", order.roles_of("buyer"))
        assert order.completed_utc is None

    def test_cancel_after_delivery_rejected(self) -> None:
        order = _make_order(S.DELIVERED)
        with pytest.raises(InvalidTransition):
            OrderStateMachine.apply(order, "CANCELLED", order.roles_of("buyer"))

    def test_force_dispute_from_any_state(self) -> None:
        for state in OrderStatus:
            order = _make_order(state)
            previous = OrderStateMachine.force_dispute(order)
            assert previous == state
            assert order.status == S.DISPUTED
