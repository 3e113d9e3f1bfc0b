"""Catalogue models — gig listings, their packages, and user accounts.

A listing offers up to three packages (BASIC / STANDARD / PREMIUM), each
with its own price and delivery time. Buyers order exactly one package.

Listings and user accounts each carry a rating aggregate (average rating
and review count). These are derived, cached values: they are stored in
the aggregate table and projected onto the entity on read. Nothing but
the aggregate recomputation engine writes them.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class PackageType(str, enum.Enum):
    """Package tier offered on a listing."""
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class AggregateScope(str, enum.Enum):
    """Which entity a rating aggregate belongs to."""
    LISTING = "listing"
    PROVIDER = "provider"


@dataclass(frozen=True)
class Package:
    """One purchasable package on a listing.

    delivery_time is free-form text such as "3_DAYS"; the pricing
    calculator extracts the leading day count.
    """
    name: PackageType
    price: Decimal
    delivery_time: str
    revisions: int = 0
    description: str = ""


@dataclass
class GigListing:
    """A service listing posted by a seller."""
    gig_id: str
    seller_id: str
    title: str
    packages: list[Package] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    # Derived aggregate (read-only projection)
    rating: float = 0.0
    total_reviews: int = 0

    def package(self, package_type: PackageType) -> Optional[Package]:
        for pkg in self.packages:
            if pkg.name == package_type:
                return pkg
        return None


@dataclass
class UserAccount:
    """A marketplace account. Any account may buy; sellers own listings."""
    user_id: str
    display_name: str = ""
    is_admin: bool = False
    created_utc: Optional[datetime] = None
    # Derived provider aggregate (read-only projection)
    rating: float = 0.0
    total_reviews: int = 0


@dataclass(frozen=True)
class RatingAggregate:
    """Average rating and review count for one listing or provider."""
    scope: AggregateScope
    key: str
    rating: float = 0.0
    total_reviews: int = 0
