"""Order and dispute models.

Order lifecycle:
    IN_PROGRESS → DELIVERED → COMPLETED
    PENDING / IN_PROGRESS → CANCELLED
    any state → DISPUTED   (dispute handler only)

Orders are created once and never deleted. After creation only
``status`` and ``completed_utc`` change.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from gigstream.models.market import PackageType


class OrderStatus(str, enum.Enum):
    """Lifecycle state of an order."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class PaymentStatus(str, enum.Enum):
    """Payment is confirmed before an order exists and never changes after."""
    COMPLETED = "COMPLETED"


class ActorRole(str, enum.Enum):
    """Role an actor holds with respect to one order."""
    BUYER = "BUYER"
    SELLER = "SELLER"
    ADMIN = "ADMIN"


class DisputeStatus(str, enum.Enum):
    OPEN = "OPEN"


@dataclass
class Order:
    """A purchase of one package from one listing.

    Invariant: total_amount == price + service_fee.
    """
    order_id: str
    gig_id: str
    buyer_id: str
    seller_id: str
    package_type: PackageType
    price: Decimal
    service_fee: Decimal
    total_amount: Decimal
    status: OrderStatus = OrderStatus.IN_PROGRESS
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    delivery_date: Optional[datetime] = None
    requirements: dict[str, str] = field(default_factory=dict)
    max_revisions: int = 0
    created_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    idempotency_key: Optional[str] = None

    def roles_of(self, actor_id: str, is_admin: bool = False) -> frozenset[ActorRole]:
        """Resolve every role ``actor_id`` holds on this order."""
        roles: set[ActorRole] = set()
        if actor_id == self.buyer_id:
            roles.add(ActorRole.BUYER)
        if actor_id == self.seller_id:
            roles.add(ActorRole.SELLER)
        if is_admin:
            roles.add(ActorRole.ADMIN)
        return frozenset(roles)

    def counterparty_of(self, actor_id: str) -> str:
        return self.seller_id if actor_id == self.buyer_id else self.buyer_id


@dataclass(frozen=True)
class Dispute:
    """A dispute raised by one participant of an order."""
    dispute_id: str
    order_id: str
    initiator_id: str
    reason: str
    description: str
    status: DisputeStatus = DisputeStatus.OPEN
    created_utc: Optional[datetime] = None
