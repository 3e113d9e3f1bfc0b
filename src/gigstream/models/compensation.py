"""Compensation models — price quotes and payment ledger entries.

All monetary values use Decimal for exact arithmetic. No floats in finance.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from gigstream.models.market import Package


class PaymentEntryType(str, enum.Enum):
    """Capture happens upstream; the ledger only records the order payment."""
    ORDER_PAYMENT = "ORDER_PAYMENT"


class PaymentEntryStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class PriceQuote:
    """Priced package selection.

    Invariant: total_amount == price + service_fee.
    """
    package: Package
    price: Decimal
    service_fee: Decimal
    total_amount: Decimal
    delivery_days: int
    delivery_date: datetime


@dataclass(frozen=True)
class PaymentEntry:
    """One row of the payment ledger."""
    entry_id: str
    order_id: str
    user_id: str
    entry_type: PaymentEntryType
    amount: Decimal
    currency: str
    payment_method: str
    status: PaymentEntryStatus
    description: str = ""
    created_utc: Optional[datetime] = None
