"""Order state machine — role-gated status transitions.

Order lifecycle:
    PENDING / IN_PROGRESS --DELIVER (seller)--> DELIVERED
    DELIVERED --COMPLETE (buyer)--> COMPLETED
    PENDING / IN_PROGRESS --CANCEL (buyer or admin)--> CANCELLED
    any state --> DISPUTED   (only through the dispute handler)

COMPLETED and CANCELLED are terminal. DISPUTED has no outgoing
transition.

Every allowed move is one row of ``_TRANSITIONS``, keyed by
(current state, action, actor role). Anything not in the table is
rejected: Forbidden when none of the actor's roles may ever perform the
action, InvalidTransition otherwise.

Pure computation: validates and applies in memory. Persistence, audit
events and notifications belong to the service layer.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from gigstream.errors import Forbidden, InvalidTransition
from gigstream.models.order import ActorRole, Order, OrderStatus


class OrderAction(str, enum.Enum):
    """Action a participant can request on an order."""
    DELIVER = "DELIVER"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"


# Target status a caller may request → the action it stands for.
# DISPUTED is deliberately absent: disputes go through DisputeHandler.
_ACTION_FOR_TARGET: dict[OrderStatus, OrderAction] = {
    OrderStatus.DELIVERED: OrderAction.DELIVER,
    OrderStatus.COMPLETED: OrderAction.COMPLETE,
    OrderStatus.CANCELLED: OrderAction.CANCEL,
}

_TRANSITIONS: dict[tuple[OrderStatus, OrderAction, ActorRole], OrderStatus] = {
    (OrderStatus.PENDING, OrderAction.DELIVER, ActorRole.SELLER): OrderStatus.DELIVERED,
    (OrderStatus.IN_PROGRESS, OrderAction.DELIVER, ActorRole.SELLER): OrderStatus.DELIVERED,
    (OrderStatus.DELIVERED, OrderAction.COMPLETE, ActorRole.BUYER): OrderStatus.COMPLETED,
    (OrderStatus.PENDING, OrderAction.CANCEL, ActorRole.BUYER): OrderStatus.CANCELLED,
    (OrderStatus.PENDING, OrderAction.CANCEL, ActorRole.ADMIN): OrderStatus.CANCELLED,
    (OrderStatus.IN_PROGRESS, OrderAction.CANCEL, ActorRole.BUYER): OrderStatus.CANCELLED,
    (OrderStatus.IN_PROGRESS, OrderAction.CANCEL, ActorRole.ADMIN): OrderStatus.CANCELLED,
}

# Roles that may perform each action from at least one state
_PERMITTED_ROLES: dict[OrderAction, frozenset[ActorRole]] = {
    action: frozenset(role for (_, a, role) in _TRANSITIONS if a == action)
    for action in OrderAction
}

_TERMINAL = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class OrderStateMachine:
    """Authorizes and applies order status transitions."""

    @staticmethod
    def parse_target(target: Union[OrderStatus, str]) -> OrderAction:
        """Map a requested status to its action.

        Raises InvalidTransition for unknown values and for statuses that
        cannot be requested directly (PENDING, IN_PROGRESS, DISPUTED).
        """
        try:
            status = OrderStatus(target)
        except ValueError as e:
            raise InvalidTransition(f"Unknown order status: {target}") from e
        action = _ACTION_FOR_TARGET.get(status)
        if action is None:
            raise InvalidTransition(
                f"{status.value} cannot be requested as a status change"
            )
        return action

    @staticmethod
    def decide(
        current: OrderStatus,
        action: OrderAction,
        roles: Iterable[ActorRole],
    ) -> OrderStatus:
        """Look up the next state for (current, action, any of roles).

        Raises Forbidden or InvalidTransition when no row matches.
        """
        roles = frozenset(roles)
        for role in sorted(roles, key=lambda r: r.value):
            nxt = _TRANSITIONS.get((current, action, role))
            if nxt is not None:
                return nxt

        if not roles & _PERMITTED_ROLES[action]:
            allowed = ", ".join(sorted(r.value for r in _PERMITTED_ROLES[action]))
            raise Forbidden(f"{action.value} requires role: {allowed}")

        sources = sorted(
            {s.value for (s, a, r) in _TRANSITIONS if a == action and r in roles}
        )
        raise InvalidTransition(
            f"Cannot {action.value} an order in {current.value}. "
            f"Allowed from: [{', '.join(sources)}]"
        )

    @classmethod
    def apply(
        cls,
        order: Order,
        target: Union[OrderStatus, str],
        roles: Iterable[ActorRole],
        now: Optional[datetime] = None,
    ) -> OrderStatus:
        """Validate and apply a transition in place. Returns the prior status.

        COMPLETED stamps ``completed_utc``.
        """
        action = cls.parse_target(target)
        nxt = cls.decide(order.status, action, roles)
        previous = order.status
        order.status = nxt
        if nxt == OrderStatus.COMPLETED:
            order.completed_utc = now or datetime.now(timezone.utc)
        return previous

    @staticmethod
    def force_dispute(order: Order) -> OrderStatus:
        """Put an order into DISPUTED from any state. Returns the prior status."""
        previous = order.status
        order.status = OrderStatus.DISPUTED
        return previous

    @staticmethod
    def is_terminal(state: OrderStatus) -> bool:
        return state in _TERMINAL

    @staticmethod
    def valid_transitions(state: OrderStatus) -> dict[OrderAction, dict[ActorRole, OrderStatus]]:
        """Every (action, role) → next state available from ``state``."""
        result: dict[OrderAction, dict[ActorRole, OrderStatus]] = {}
        for (src, action, role), nxt in _TRANSITIONS.items():
            if src == state:
                result.setdefault(action, {})[role] = nxt
        return result
