"""Aggregate recomputation engine — listing and provider ratings.

A listing's rating/total_reviews and a provider's rating/total_reviews
are caches of the review set: the mean and count of the reviews scoped
by gig_id and by seller_id. They are recomputed synchronously after
every review insert or delete.

Recomputation is a full scan-and-average, never an incremental running
update, so there is no accumulated floating-point drift.

Concurrency: scan-then-write is not atomic on its own. Two recomputes
for the same key that interleave can each scan before the other's insert
is visible and the later write loses a review. Every recompute therefore
runs inside the KeyedLocks scope for its key ("listing:<gig_id>" or
"provider:<seller_id>"). When both are needed they are taken together,
listing before provider, and the review change plus both writes commit
in one store transaction.

Before writing, the result is checked: a negative count, a non-zero
rating with no reviews, or a mean outside the rating bounds raises
IntegrityViolation and nothing is written.
"""

from __future__ import annotations

import logging
from typing import ContextManager, Sequence

from gigstream.errors import IntegrityViolation
from gigstream.models.market import AggregateScope, RatingAggregate
from gigstream.models.review import Review
from gigstream.persistence.locks import KeyedLocks, listing_key, provider_key
from gigstream.persistence.state_store import StateStore
from gigstream.policy.resolver import PolicyResolver


logger = logging.getLogger(__name__)


def compute_aggregate(
    scope: AggregateScope, key: str, reviews: Sequence[Review],
) -> RatingAggregate:
    """Mean and count of ``reviews``. Zero reviews → rating 0.0."""
    total = len(reviews)
    rating = sum(r.rating for r in reviews) / total if total > 0 else 0.0
    return RatingAggregate(scope=scope, key=key, rating=float(rating), total_reviews=total)


class AggregateEngine:
    """Sole writer of rating aggregates.

    Usage:
        engine = AggregateEngine(store, locks, resolver)
        listing_agg, provider_agg = engine.recompute_for(review.gig_id, review.seller_id)
    """

    def __init__(
        self, store: StateStore, locks: KeyedLocks, resolver: PolicyResolver,
    ) -> None:
        self._store = store
        self._locks = locks
        self._params = resolver.review_params()

    def validate(self, aggregate: RatingAggregate) -> None:
        """Raise IntegrityViolation if the aggregate is impossible."""
        problems: list[str] = []
        if aggregate.total_reviews < 0:
            problems.append(f"negative review count {aggregate.total_reviews}")
        elif aggregate.total_reviews == 0 and aggregate.rating != 0.0:
            problems.append(f"rating {aggregate.rating} with zero reviews")
        elif aggregate.total_reviews > 0 and not (
            self._params.rating_min <= aggregate.rating <= self._params.rating_max
        ):
            problems.append(
                f"rating {aggregate.rating} outside "
                f"[{self._params.rating_min}, {self._params.rating_max}]"
            )
        if problems:
            logger.critical(
                "Integrity violation on %s aggregate %s: %s; write aborted",
                aggregate.scope.value, aggregate.key, "; ".join(problems),
            )
            raise IntegrityViolation(
                f"{aggregate.scope.value} {aggregate.key}: {'; '.join(problems)}"
            )

    def hold_keys(self, gig_id: str, seller_id: str) -> ContextManager[None]:
        """Serialization scope for both aggregates one review touches."""
        return self._locks.hold_all(listing_key(gig_id), provider_key(seller_id))

    def refresh(self, scope: AggregateScope, key: str) -> RatingAggregate:
        """Scan, validate, write. The caller holds the key's scope."""
        reviews = self._store.reviews_for(scope, key)
        aggregate = compute_aggregate(scope, key, reviews)
        self.validate(aggregate)
        self._store.write_aggregate(aggregate)
        logger.debug(
            "Recomputed %s %s: rating=%.4f total=%d",
            scope.value, key, aggregate.rating, aggregate.total_reviews,
        )
        return aggregate

    def refresh_pair(
        self, gig_id: str, seller_id: str,
    ) -> tuple[RatingAggregate, RatingAggregate]:
        """Both writes in one transaction. The caller holds ``hold_keys``."""
        with self._store.transaction():
            listing = self.refresh(AggregateScope.LISTING, gig_id)
            provider = self.refresh(AggregateScope.PROVIDER, seller_id)
        return listing, provider

    def recompute(self, scope: AggregateScope, key: str) -> RatingAggregate:
        """Full scan, validate, write — serialized per (scope, key)."""
        lock_key = listing_key(key) if scope == AggregateScope.LISTING else provider_key(key)
        with self._locks.hold(lock_key):
            return self.refresh(scope, key)

    def recompute_for(
        self, gig_id: str, seller_id: str,
    ) -> tuple[RatingAggregate, RatingAggregate]:
        """Recompute the listing and provider aggregates a review touches."""
        with self.hold_keys(gig_id, seller_id):
            return self.refresh_pair(gig_id, seller_id)

    def recompute_all(self) -> list[RatingAggregate]:
        """Rebuild every aggregate, including listings/providers with no reviews."""
        results: list[RatingAggregate] = []
        for listing in self._store.list_listings():
            results.append(self.recompute(AggregateScope.LISTING, listing.gig_id))
        for user in self._store.list_users():
            results.append(self.recompute(AggregateScope.PROVIDER, user.user_id))
        return results

    def drift(self) -> list[str]:
        """Describe every stored aggregate that disagrees with its review set."""
        problems: list[str] = []
        keys = [(AggregateScope.LISTING, g.gig_id) for g in self._store.list_listings()]
        keys += [(AggregateScope.PROVIDER, u.user_id) for u in self._store.list_users()]
        for scope, key in keys:
            stored = self._store.get_aggregate(scope, key)
            expected = compute_aggregate(scope, key, self._store.reviews_for(scope, key))
            if (stored.rating, stored.total_reviews) != (expected.rating, expected.total_reviews):
                problems.append(
                    f"{scope.value} {key}: stored rating={stored.rating} "
                    f"total={stored.total_reviews}, expected rating={expected.rating} "
                    f"total={expected.total_reviews}"
                )
        return problems
