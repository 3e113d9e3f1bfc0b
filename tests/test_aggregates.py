"""Tests for rating aggregates — proves full recomputation and concurrent convergence."""

import threading

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from gigstream.errors import IntegrityViolation
from gigstream.models.market import AggregateScope, GigListing, Package, PackageType, RatingAggregate, UserAccount
from gigstream.models.order import Order, OrderStatus
from gigstream.models.review import Review
from gigstream.persistence.locks import KeyedLocks
from gigstream.persistence.state_store import StateStore
from gigstream.policy.resolver import PolicyResolver
from gigstream.reviews.aggregates import AggregateEngine, compute_aggregate
from gigstream.reviews.ledger import ReviewLedger


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _review(review_id: str, rating: int, gig_id: str = "gig-1", seller_id: str = "seller") -> Review:
    return Review(
        review_id=review_id,
        order_id=f"order-{review_id}",
        gig_id=gig_id,
        reviewer_id="buyer",
        seller_id=seller_id,
        rating=rating,
        comment="Perfectly fine work",
        created_utc=datetime(2026, 3, 1, tzinfo=timezone.utc),
    )


def _completed_order(i: int) -> Order:
    return Order(
        order_id=f"o{i}",
        gig_id="gig-1",
        buyer_id=f"buyer-{i}",
        seller_id="seller",
        package_type=PackageType.BASIC,
        price=Decimal("50.00"),
        service_fee=Decimal("5.00"),
        total_amount=Decimal("55.00"),
        status=OrderStatus.COMPLETED,
    )


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def store() -> StateStore:
    s = StateStore()
    s.insert_user(UserAccount(user_id="seller"))
    s.insert_listing(GigListing(
        gig_id="gig-1", seller_id="seller", title="Logo design",
        packages=[Package(name=PackageType.BASIC, price=Decimal("50"), delivery_time="3_DAYS")],
    ))
    return s


@pytest.fixture
def engine(store: StateStore, resolver: PolicyResolver) -> AggregateEngine:
    return AggregateEngine(store, KeyedLocks(timeout_seconds=2.0), resolver)


class TestComputeAggregate:
    def test_empty_is_zero(self) -> None:
        agg = compute_aggregate(AggregateScope.LISTING, "gig-1", [])
        assert agg.rating == 0.0
        assert agg.total_reviews == 0

    def test_mean_and_count(self) -> None:
        reviews = [_review("a", 5), _review("b", 4), _review("c", 3)]
        agg = compute_aggregate(AggregateScope.LISTING, "gig-1", reviews)
        assert agg.rating == 4.0
        assert agg.total_reviews == 3


class TestRecompute:
    def test_recompute_reads_review_set(self, store: StateStore, engine: AggregateEngine) -> None:
        store.insert_review(_review("a", 5))
        store.insert_review(_review("b", 2))
        listing, provider = engine.recompute_for("gig-1", "seller")
        assert listing.rating == 3.5
        assert provider.total_reviews == 2
        assert store.get_listing("gig-1").rating == 3.5

    def test_drift_detected_and_repaired(self, store: StateStore, engine: AggregateEngine) -> None:
        store.insert_review(_review("a", 5))
        problems = engine.drift()
        assert len(problems) == 2
        engine.recompute_all()
        assert engine.drift() == []

    def test_recompute_all_covers_unreviewed_entities(
        self, store: StateStore, engine: AggregateEngine,
    ) -> None:
        results = engine.recompute_all()
        assert {(a.scope, a.key) for a in results} == {
            (AggregateScope.LISTING, "gig-1"),
            (AggregateScope.PROVIDER, "seller"),
        }
        assert all(a.total_reviews == 0 and a.rating == 0.0 for a in results)


class TestIntegrity:
    @pytest.mark.parametrize(
        "rating,total",
        [(0.0, -1), (3.0, 0), (0.5, 2), (5.5, 1)],
    )
    def test_impossible_aggregate_rejected(
        self, engine: AggregateEngine, rating: float, total: int,
    ) -> None:
        with pytest.raises(IntegrityViolation):
            engine.validate(RatingAggregate(
                scope=AggregateScope.LISTING, key="gig-1", rating=rating, total_reviews=total,
            ))

    def test_violation_aborts_write(
        self, store: StateStore, engine: AggregateEngine, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        store.insert_review(_review("a", 4))
        engine.recompute_for("gig-1", "seller")
        bad = RatingAggregate(scope=AggregateScope.LISTING, key="gig-1", rating=9.0, total_reviews=1)
        monkeypatch.setattr(
            "gigstream.reviews.aggregates.compute_aggregate", lambda scope, key, reviews: bad,
        )
        with pytest.raises(IntegrityViolation):
            engine.recompute(AggregateScope.LISTING, "gig-1")
        assert store.get_listing("gig-1").rating == 4.0

    def test_pair_written_together_or_not_at_all(
        self, store: StateStore, engine: AggregateEngine, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        store.insert_review(_review("a", 4))
        engine.recompute_for("gig-1", "seller")
        store.insert_review(_review("b", 2))
        real = compute_aggregate

        def bad_provider(scope, key, reviews):
            if scope == AggregateScope.PROVIDER:
                return RatingAggregate(scope=scope, key=key, rating=-1.0, total_reviews=2)
            return real(scope, key, reviews)

        monkeypatch.setattr("gigstream.reviews.aggregates.compute_aggregate", bad_provider)
        with pytest.raises(IntegrityViolation):
            engine.recompute_for("gig-1", "seller")
        # The listing write that preceded the failure was undone
        assert store.get_listing("gig-1").total_reviews == 1
        assert store.get_user("seller").total_reviews == 1


class TestConcurrentSubmissions:
    def test_concurrent_reviews_converge(self, store: StateStore, resolver: PolicyResolver) -> None:
        """N concurrent submissions on one listing yield count N and the exact mean."""
        ratings = [1, 2, 3, 4, 5] * 6
        for i in range(len(ratings)):
            store.insert_order(_completed_order(i))
        locks = KeyedLocks(timeout_seconds=10.0)
        ledger = ReviewLedger(store, locks, AggregateEngine(store, locks, resolver), resolver)

        barrier = threading.Barrier(len(ratings))
        failures: list[BaseException] = []

        def submit(i: int) -> None:
            try:
                barrier.wait()
                ledger.submit(f"o{i}", f"buyer-{i}", ratings[i], "Concurrent review text")
            except BaseException as e:
                failures.append(e)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(len(ratings))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert failures == []
        listing = store.get_listing("gig-1")
        assert listing.total_reviews == len(ratings)
        assert listing.rating == sum(ratings) / len(ratings)
        seller = store.get_user("seller")
        assert seller.total_reviews == len(ratings)
        assert seller.rating == sum(ratings) / len(ratings)

    def test_submit_during_paused_scan_is_not_lost(
        self, store: StateStore, resolver: PolicyResolver, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A second submit cannot commit between the first one's scan and write."""
        for i in range(2):
            store.insert_order(_completed_order(i))
        locks = KeyedLocks(timeout_seconds=10.0)
        ledger = ReviewLedger(store, locks, AggregateEngine(store, locks, resolver), resolver)

        scanned = threading.Event()
        resume = threading.Event()
        real_scan = store.reviews_for

        def paused_scan(scope: AggregateScope, key: str) -> list[Review]:
            reviews = real_scan(scope, key)
            if scope == AggregateScope.LISTING and not scanned.is_set():
                scanned.set()
                resume.wait(5.0)
            return reviews

        monkeypatch.setattr(store, "reviews_for", paused_scan)
        failures: list[BaseException] = []

        def submit(i: int, rating: int) -> None:
            try:
                ledger.submit(f"o{i}", f"buyer-{i}", rating, "Interleaved review text")
            except BaseException as e:
                failures.append(e)

        first = threading.Thread(target=submit, args=(0, 5))
        first.start()
        assert scanned.wait(5.0)
        second = threading.Thread(target=submit, args=(1, 1))
        second.start()
        second.join(0.2)
        assert second.is_alive()
        resume.set()
        first.join()
        second.join()

        assert failures == []
        listing = store.get_listing("gig-1")
        assert listing.total_reviews == 2
        assert listing.rating == 3.0
        assert store.get_user("seller").total_reviews == 2
