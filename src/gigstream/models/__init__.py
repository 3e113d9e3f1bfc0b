"""Core data models for GigStream."""

from gigstream.models.market import (
    AggregateScope,
    GigListing,
    Package,
    PackageType,
    RatingAggregate,
    UserAccount,
)
from gigstream.models.order import (
    ActorRole,
    Dispute,
    DisputeStatus,
    Order,
    OrderStatus,
    PaymentStatus,
)
from gigstream.models.compensation import (
    PaymentEntry,
    PaymentEntryStatus,
    PaymentEntryType,
    PriceQuote,
)
from gigstream.models.review import Review
from gigstream.models.notification import Notification, NotificationType

__all__ = [
    "AggregateScope",
    "GigListing",
    "Package",
    "PackageType",
    "RatingAggregate",
    "UserAccount",
    "ActorRole",
    "Dispute",
    "DisputeStatus",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "PaymentEntry",
    "PaymentEntryStatus",
    "PaymentEntryType",
    "PriceQuote",
    "Review",
    "Notification",
    "NotificationType",
]
