"""Dispute handler — opens a dispute and forces the order into DISPUTED.

Either participant (buyer or seller) may open a dispute at any time.
Opening one unconditionally sets the order to DISPUTED, whatever its
current status, terminal states included. An order may collect several
disputes. How a dispute is resolved is not decided here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from gigstream.errors import Forbidden, OrderNotFound, ValidationError
from gigstream.models.order import ActorRole, Dispute, Order, OrderStatus
from gigstream.orders.state_machine import OrderStateMachine
from gigstream.persistence.locks import KeyedLocks, order_key
from gigstream.persistence.state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisputeOutcome:
    dispute: Dispute
    order: Order
    previous_status: OrderStatus


class DisputeHandler:
    """Validates and records disputes.

    The dispute row and the DISPUTED status are written in one store
    transaction inside the order's serialization scope.
    """

    def __init__(self, store: StateStore, locks: KeyedLocks) -> None:
        self._store = store
        self._locks = locks

    @staticmethod
    def validate_fields(order_id: str, reason: str, description: str) -> list[str]:
        """Return missing-field errors (empty = OK)."""
        errors: list[str] = []
        for name, value in (
            ("order_id", order_id), ("reason", reason), ("description", description),
        ):
            if not isinstance(value, str) or not value.strip():
                errors.append(f"Missing field: {name}")
        return errors

    def open_dispute(
        self,
        order_id: str,
        actor_id: str,
        reason: str,
        description: str,
        now: Optional[datetime] = None,
    ) -> DisputeOutcome:
        errors = self.validate_fields(order_id, reason, description)
        if errors:
            raise ValidationError("; ".join(errors))
        if now is None:
            now = datetime.now(timezone.utc)

        with self._locks.hold(order_key(order_id)):
            order = self._store.get_order(order_id)
            if order is None:
                raise OrderNotFound(f"Order not found: {order_id}")
            roles = order.roles_of(actor_id)
            if not roles & {ActorRole.BUYER, ActorRole.SELLER}:
                raise Forbidden("Only the buyer or seller of an order can open a dispute")

            dispute = Dispute(
                dispute_id=f"dsp_{uuid4().hex[:12]}",
                order_id=order_id,
                initiator_id=actor_id,
                reason=reason.strip(),
                description=description.strip(),
                created_utc=now,
            )
            previous = OrderStateMachine.force_dispute(order)
            with self._store.transaction():
                self._store.insert_dispute(dispute)
                self._store.update_order(order)

        if OrderStateMachine.is_terminal(previous):
            logger.warning(
                "Order %s forced to DISPUTED from terminal state %s",
                order_id, previous.value,
            )
        return DisputeOutcome(dispute=dispute, order=order, previous_status=previous)
