"""Payment ledger — records money movements against orders.

Payment capture itself happens at an external processor before an order
is created; by the time the ledger sees an order, funds are confirmed.
The ledger writes one ORDER_PAYMENT entry per order, for the full
total_amount, in the same store transaction as the order row.

Storage is the shared StateStore, so ledger rows commit or roll back
together with the order that produced them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from gigstream.models.compensation import (
    PaymentEntry,
    PaymentEntryStatus,
    PaymentEntryType,
)
from gigstream.models.order import Order
from gigstream.persistence.state_store import StateStore
from gigstream.policy.resolver import PolicyResolver


class PaymentLedger:
    """Ledger of payment entries backed by the state store.

    Usage:
        ledger = PaymentLedger(store, resolver)
        with store.transaction():
            store.insert_order(order)
            ledger.record_order_payment(order)
    """

    def __init__(self, store: StateStore, resolver: PolicyResolver) -> None:
        self._store = store
        self._params = resolver.pricing_params()

    def record_order_payment(
        self,
        order: Order,
        now: Optional[datetime] = None,
    ) -> PaymentEntry:
        """Write the ORDER_PAYMENT entry for a newly created order.

        The payer is the buyer; amount is the order's total_amount.
        """
        if order.total_amount <= Decimal("0"):
            raise ValueError("Payment amount must be positive")
        if now is None:
            now = datetime.now(timezone.utc)

        entry = PaymentEntry(
            entry_id=f"pay_{uuid4().hex[:12]}",
            order_id=order.order_id,
            user_id=order.buyer_id,
            entry_type=PaymentEntryType.ORDER_PAYMENT,
            amount=order.total_amount,
            currency=self._params.currency,
            payment_method=self._params.payment_method,
            status=PaymentEntryStatus.COMPLETED,
            description=f"Payment for order #{order.order_id}",
            created_utc=now,
        )
        self._store.insert_payment(entry)
        return entry

    def entries_for_order(self, order_id: str) -> List[PaymentEntry]:
        return self._store.payments_for_order(order_id)

    def total_collected(self) -> Decimal:
        """Sum of completed ORDER_PAYMENT entries (all time)."""
        return sum(
            (
                e.amount for e in self._store.list_payments()
                if e.entry_type == PaymentEntryType.ORDER_PAYMENT
                and e.status == PaymentEntryStatus.COMPLETED
            ),
            Decimal("0"),
        )
