"""Review model — at most one review per order, written by the buyer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Review:
    review_id: str
    order_id: str
    gig_id: str
    reviewer_id: str
    seller_id: str
    rating: int
    comment: str
    is_public: bool = True
    created_utc: Optional[datetime] = None
