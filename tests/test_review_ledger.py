"""Tests for the review ledger — proves review preconditions and aggregate refresh."""

import pytest
from decimal import Decimal
from pathlib import Path

from gigstream.errors import (
    AlreadyReviewed,
    Forbidden,
    OrderNotCompleted,
    OrderNotFound,
    ReviewNotFound,
    ValidationError,
)
from gigstream.models.market import AggregateScope, GigListing, Package, PackageType, UserAccount
from gigstream.models.order import Order, OrderStatus
from gigstream.persistence.locks import KeyedLocks
from gigstream.persistence.state_store import StateStore
from gigstream.policy.resolver import PolicyResolver
from gigstream.reviews.aggregates import AggregateEngine
from gigstream.reviews.ledger import ReviewLedger


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _make_order(
    order_id: str,
    status: OrderStatus = OrderStatus.COMPLETED,
    gig_id: str = "gig-1",
) -> Order:
    return Order(
        order_id=order_id,
        gig_id=gig_id,
        buyer_id="buyer",
        seller_id="seller",
        package_type=PackageType.BASIC,
        price=Decimal("50.00"),
        service_fee=Decimal("5.00"),
        total_amount=Decimal("55.00"),
        status=status,
    )


@pytest.fixture
def store() -> StateStore:
    s = StateStore()
    s.insert_user(UserAccount(user_id="buyer"))
    s.insert_user(UserAccount(user_id="seller"))
    s.insert_user(UserAccount(user_id="admin", is_admin=True))
    for gig_id in ("gig-1", "gig-2"):
        s.insert_listing(GigListing(
            gig_id=gig_id, seller_id="seller", title="Logo design",
            packages=[Package(name=PackageType.BASIC, price=Decimal("50"), delivery_time="3_DAYS")],
        ))
    return s


@pytest.fixture
def ledger(store: StateStore) -> ReviewLedger:
    resolver = PolicyResolver.from_config_dir(CONFIG_DIR)
    locks = KeyedLocks(timeout_seconds=1.0)
    return ReviewLedger(store, locks, AggregateEngine(store, locks, resolver), resolver)


class TestSubmit:
    def test_first_review_sets_aggregates(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1"))
        outcome = ledger.submit("o1", "buyer", 5, "Fantastic work, thank you")
        assert outcome.listing_aggregate.rating == 5.0
        assert outcome.listing_aggregate.total_reviews == 1
        assert store.get_listing("gig-1").rating == 5.0
        assert store.get_listing("gig-1").total_reviews == 1
        assert store.get_user("seller").rating == 5.0
        assert store.get_user("seller").total_reviews == 1

    def test_provider_aggregate_spans_listings(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1", gig_id="gig-1"))
        store.insert_order(_make_order("o2", gig_id="gig-2"))
        ledger.submit("o1", "buyer", 5, "Fantastic work, thank you")
        outcome = ledger.submit("o2", "buyer", 2, "Late and sloppy delivery")
        assert outcome.listing_aggregate.rating == 2.0
        assert outcome.provider_aggregate.rating == 3.5
        assert outcome.provider_aggregate.total_reviews == 2
        assert store.get_listing("gig-1").rating == 5.0

    def test_comment_is_trimmed(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1"))
        outcome = ledger.submit("o1", "buyer", 4, "   Solid work overall   ")
        assert outcome.review.comment == "Solid work overall"

    def test_second_review_rejected_and_aggregates_unchanged(
        self, store: StateStore, ledger: ReviewLedger,
    ) -> None:
        store.insert_order(_make_order("o1"))
        ledger.submit("o1", "buyer", 4, "Great work, thanks!")
        before = (
            store.get_aggregate(AggregateScope.LISTING, "gig-1"),
            store.get_aggregate(AggregateScope.PROVIDER, "seller"),
        )
        with pytest.raises(AlreadyReviewed):
            ledger.submit("o1", "buyer", 1, "Changed my mind entirely")
        after = (
            store.get_aggregate(AggregateScope.LISTING, "gig-1"),
            store.get_aggregate(AggregateScope.PROVIDER, "seller"),
        )
        assert before == after
        assert len(store.list_reviews()) == 1

    def test_non_buyer_forbidden(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1"))
        for actor in ("seller", "admin", "stranger"):
            with pytest.raises(Forbidden):
                ledger.submit("o1", actor, 5, "Fantastic work, thank you")

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.DISPUTED],
    )
    def test_order_must_be_completed(
        self, store: StateStore, ledger: ReviewLedger, status: OrderStatus,
    ) -> None:
        store.insert_order(_make_order("o1", status=status))
        with pytest.raises(OrderNotCompleted):
            ledger.submit("o1", "buyer", 5, "Fantastic work, thank you")

    def test_unknown_order(self, ledger: ReviewLedger) -> None:
        with pytest.raises(OrderNotFound):
            ledger.submit("nope", "buyer", 5, "Fantastic work, thank you")

    @pytest.mark.parametrize("rating", [0, 6, -1, 4.5, "5", True, None])
    def test_invalid_rating(self, store: StateStore, ledger: ReviewLedger, rating) -> None:
        store.insert_order(_make_order("o1"))
        with pytest.raises(ValidationError):
            ledger.submit("o1", "buyer", rating, "Fantastic work, thank you")

    @pytest.mark.parametrize("comment", ["", "too short", "         x", None])
    def test_short_comment(self, store: StateStore, ledger: ReviewLedger, comment) -> None:
        store.insert_order(_make_order("o1"))
        with pytest.raises(ValidationError):
            ledger.submit("o1", "buyer", 5, comment)

    def test_comment_at_minimum_length(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1"))
        outcome = ledger.submit("o1", "buyer", 3, "x" * 10)
        assert outcome.review.rating == 3


class TestDelete:
    def test_deleting_sole_review_zeroes_aggregates(
        self, store: StateStore, ledger: ReviewLedger,
    ) -> None:
        store.insert_order(_make_order("o1"))
        review = ledger.submit("o1", "buyer", 5, "Fantastic work, thank you").review
        outcome = ledger.delete(review.review_id, "admin")
        assert outcome.listing_aggregate.rating == 0.0
        assert outcome.listing_aggregate.total_reviews == 0
        assert store.get_listing("gig-1").rating == 0.0
        assert store.get_listing("gig-1").total_reviews == 0
        assert store.get_user("seller").total_reviews == 0

    def test_delete_recomputes_remaining_mean(self, store: StateStore, ledger: ReviewLedger) -> None:
        for oid in ("o1", "o2", "o3"):
            store.insert_order(_make_order(oid))
        ledger.submit("o1", "buyer", 5, "Fantastic work, thank you")
        ledger.submit("o2", "buyer", 3, "Acceptable but slow work")
        worst = ledger.submit("o3", "buyer", 1, "Did not follow the brief").review
        ledger.delete(worst.review_id, "admin")
        assert store.get_listing("gig-1").rating == 4.0
        assert store.get_listing("gig-1").total_reviews == 2

    def test_non_admin_forbidden(self, store: StateStore, ledger: ReviewLedger) -> None:
        store.insert_order(_make_order("o1"))
        review = ledger.submit("o1", "buyer", 5, "Fantastic work, thank you").review
        for actor in ("buyer", "seller", "ghost"):
            with pytest.raises(Forbidden):
                ledger.delete(review.review_id, actor)
        assert store.get_review(review.review_id) is not None

    def test_unknown_review(self, ledger: ReviewLedger) -> None:
        with pytest.raises(ReviewNotFound):
            ledger.delete("rev_missing", "admin")

    def test_order_can_be_reviewed_again_after_delete(
        self, store: StateStore, ledger: ReviewLedger,
    ) -> None:
        store.insert_order(_make_order("o1"))
        review = ledger.submit("o1", "buyer", 1, "Terrible first impression").review
        ledger.delete(review.review_id, "admin")
        outcome = ledger.submit("o1", "buyer", 4, "Resolved and now happy")
        assert outcome.listing_aggregate.rating == 4.0
        assert ledger.review_for_order("o1").review_id == outcome.review.review_id
