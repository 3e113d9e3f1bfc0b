"""Review ledger — one review per completed order, by its buyer.

Submission preconditions, in order:
    rating is an integer in [rating_min, rating_max]  else ValidationError
    comment has at least min_comment_length chars     else ValidationError
    the order exists                                  else OrderNotFound
    the reviewer is the order's buyer                 else Forbidden
    the order is COMPLETED                            else OrderNotCompleted
    the order has no review yet                       else AlreadyReviewed

The "no review yet" check runs inside the order's serialization scope
and is backed by the store's unique order_id index, so two racing
submissions for one order produce exactly one review.

Deletion is administrator-only. The listing and provider aggregates are
fully recomputed by the AggregateEngine in the same store transaction as
the insert or delete, so a failed recompute (lock timeout, integrity
violation, flush failure) leaves no review behind. Scopes are always
taken order, then listing, then provider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from gigstream.errors import (
    AlreadyReviewed,
    DuplicateRecord,
    Forbidden,
    OrderNotCompleted,
    OrderNotFound,
    ReviewNotFound,
    ValidationError,
)
from gigstream.models.market import RatingAggregate
from gigstream.models.order import ActorRole, OrderStatus
from gigstream.models.review import Review
from gigstream.persistence.locks import KeyedLocks, order_key
from gigstream.persistence.state_store import StateStore
from gigstream.policy.resolver import PolicyResolver
from gigstream.reviews.aggregates import AggregateEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewOutcome:
    review: Review
    listing_aggregate: RatingAggregate
    provider_aggregate: RatingAggregate


class ReviewLedger:
    """Accepts and removes reviews, keeping aggregates consistent."""

    def __init__(
        self,
        store: StateStore,
        locks: KeyedLocks,
        aggregates: AggregateEngine,
        resolver: PolicyResolver,
    ) -> None:
        self._store = store
        self._locks = locks
        self._aggregates = aggregates
        self._params = resolver.review_params()

    def validate_input(self, rating: Any, comment: Any) -> list[str]:
        """Return input errors (empty = OK)."""
        errors: list[str] = []
        # bool is an int subclass; True is not a rating
        if not isinstance(rating, int) or isinstance(rating, bool):
            errors.append(f"Rating must be an integer, got {rating!r}")
        elif not (self._params.rating_min <= rating <= self._params.rating_max):
            errors.append(
                f"Rating must be between {self._params.rating_min} "
                f"and {self._params.rating_max}, got {rating}"
            )
        if not isinstance(comment, str) or len(comment.strip()) < self._params.min_comment_length:
            errors.append(
                f"Comment must be at least {self._params.min_comment_length} characters"
            )
        return errors

    def submit(
        self,
        order_id: str,
        reviewer_id: str,
        rating: int,
        comment: str,
        now: Optional[datetime] = None,
    ) -> ReviewOutcome:
        errors = self.validate_input(rating, comment)
        if errors:
            raise ValidationError("; ".join(errors))
        if now is None:
            now = datetime.now(timezone.utc)

        with self._locks.hold(order_key(order_id)):
            order = self._store.get_order(order_id)
            if order is None:
                raise OrderNotFound(f"Order not found: {order_id}")
            if ActorRole.BUYER not in order.roles_of(reviewer_id):
                raise Forbidden("Only the buyer can review an order")
            if order.status != OrderStatus.COMPLETED:
                raise OrderNotCompleted(
                    f"Order must be completed to review (status: {order.status.value})"
                )
            if self._store.review_for_order(order_id) is not None:
                raise AlreadyReviewed(f"Order already reviewed: {order_id}")

            review = Review(
                review_id=f"rev_{uuid4().hex[:12]}",
                order_id=order_id,
                gig_id=order.gig_id,
                reviewer_id=reviewer_id,
                seller_id=order.seller_id,
                rating=rating,
                comment=comment.strip(),
                is_public=True,
                created_utc=now,
            )
            with self._aggregates.hold_keys(review.gig_id, review.seller_id):
                with self._store.transaction():
                    try:
                        self._store.insert_review(review)
                    except DuplicateRecord as e:
                        raise AlreadyReviewed(str(e)) from e
                    listing_agg, provider_agg = self._aggregates.refresh_pair(
                        review.gig_id, review.seller_id,
                    )

        logger.info(
            "Review %s recorded for order %s (rating %d)",
            review.review_id, order_id, rating,
        )
        return ReviewOutcome(
            review=review,
            listing_aggregate=listing_agg,
            provider_aggregate=provider_agg,
        )

    def delete(self, review_id: str, actor_id: str) -> ReviewOutcome:
        """Administrator-only removal, followed by full recomputation."""
        actor = self._store.get_user(actor_id)
        if actor is None or not actor.is_admin:
            raise Forbidden("Only an administrator can delete reviews")

        review = self._store.get_review(review_id)
        if review is None:
            raise ReviewNotFound(f"Review not found: {review_id}")

        with self._locks.hold(order_key(review.order_id)):
            with self._aggregates.hold_keys(review.gig_id, review.seller_id):
                with self._store.transaction():
                    try:
                        self._store.delete_review(review_id)
                    except KeyError as e:
                        raise ReviewNotFound(f"Review not found: {review_id}") from e
                    listing_agg, provider_agg = self._aggregates.refresh_pair(
                        review.gig_id, review.seller_id,
                    )

        logger.info("Review %s deleted by %s", review_id, actor_id)
        return ReviewOutcome(
            review=review,
            listing_aggregate=listing_agg,
            provider_aggregate=provider_agg,
        )

    def review_for_order(self, order_id: str) -> Optional[Review]:
        return self._store.review_for_order(order_id)
