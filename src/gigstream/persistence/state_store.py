"""State store — transactional persistence for users, listings, orders,
payments, reviews, disputes, and rating aggregates.

Guarantees:
- Every single-entity read or write is atomic. Entities are copied in
  and out, so callers never share mutable state with the store.
- ``transaction()`` groups several writes: either all of them become
  visible or none. Each write records the prior value of the row it
  touches in an undo log, and any exception replays that log.
- Every lock acquisition is bounded by the configured timeout and raises
  PersistenceTimeout on expiry.
- Unique indexes: review.order_id, order.idempotency_key, and primary
  keys of every table.
- Rating aggregates live in their own table and are projected onto
  listings and accounts on read. Only ``write_aggregate`` changes them.

Optional file persistence: with a ``storage_path`` the full state is
written as JSON after every transaction that changed something, and
loaded on construction.
A failed write rolls the in-memory state back and raises
TransientPersistenceError (fail-closed).
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional

from gigstream.errors import DuplicateRecord, PersistenceTimeout, TransientPersistenceError
from gigstream.models.compensation import (
    PaymentEntry,
    PaymentEntryStatus,
    PaymentEntryType,
)
from gigstream.models.market import (
    AggregateScope,
    GigListing,
    Package,
    PackageType,
    RatingAggregate,
    UserAccount,
)
from gigstream.models.order import (
    Dispute,
    DisputeStatus,
    Order,
    OrderStatus,
    PaymentStatus,
)
from gigstream.models.review import Review


logger = logging.getLogger(__name__)

_MISSING = object()


class StateStore:
    """In-process transactional store with optional JSON persistence.

    Usage:
        store = StateStore(storage_path=Path("data/state.json"))
        with store.transaction():
            store.insert_order(order)
            store.insert_payment(entry)
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._storage_path = storage_path
        self._timeout = timeout_seconds
        self._lock = threading.RLock()
        self._undo: Optional[dict[tuple[str, Any], Any]] = None

        self._users: dict[str, UserAccount] = {}
        self._listings: dict[str, GigListing] = {}
        self._orders: dict[str, Order] = {}
        self._payments: dict[str, PaymentEntry] = {}
        self._reviews: dict[str, Review] = {}
        self._disputes: dict[str, Dispute] = {}
        self._aggregates: dict[tuple[AggregateScope, str], RatingAggregate] = {}
        self._idempotency: dict[str, str] = {}

        if storage_path is not None and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # Locking and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self._timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise PersistenceTimeout(f"Store busy: no lock within {wait:.2f}s")
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator[StateStore]:
        """Atomic unit of work. Nested calls join the outer transaction."""
        with self._locked(timeout):
            if self._undo is not None:
                yield self
                return

            undo: dict[tuple[str, Any], Any] = {}
            self._undo = undo
            try:
                yield self
                if undo:
                    self._flush()
            except BaseException:
                self._rollback(undo)
                raise
            finally:
                self._undo = None

    @contextmanager
    def _write(self) -> Iterator[None]:
        """Single write; commits on its own outside a transaction."""
        with self.transaction():
            yield

    def _remember(self, table: str, key: Any) -> None:
        """Log a row's value before its first change in this transaction.

        Rows are replaced, never mutated in place, so keeping the old
        reference is enough to restore it.
        """
        undo = self._undo
        if undo is None:
            raise RuntimeError("Store write outside a transaction")
        marker = (table, key)
        if marker not in undo:
            undo[marker] = getattr(self, f"_{table}").get(key, _MISSING)

    def _rollback(self, undo: dict[tuple[str, Any], Any]) -> None:
        for (table, key), previous in undo.items():
            rows = getattr(self, f"_{table}")
            if previous is _MISSING:
                rows.pop(key, None)
            else:
                rows[key] = previous

    def _flush(self) -> None:
        if self._storage_path is None:
            return
        try:
            self._save_to_file(self._storage_path)
        except OSError as e:
            logger.error("State file write failed: %s", e)
            raise TransientPersistenceError(f"Persistence failure: {e}") from e

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._locked():
            user = self._users.get(user_id)
            return self._project_user(user) if user else None

    def insert_user(self, user: UserAccount) -> None:
        with self._write():
            if user.user_id in self._users:
                raise DuplicateRecord(f"User already exists: {user.user_id}")
            self._remember("users", user.user_id)
            self._users[user.user_id] = copy.deepcopy(user)

    def list_users(self) -> list[UserAccount]:
        with self._locked():
            return [self._project_user(u) for u in self._users.values()]

    def _project_user(self, user: UserAccount) -> UserAccount:
        agg = self._aggregates.get((AggregateScope.PROVIDER, user.user_id))
        projected = copy.deepcopy(user)
        projected.rating = agg.rating if agg else 0.0
        projected.total_reviews = agg.total_reviews if agg else 0
        return projected

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def get_listing(self, gig_id: str) -> Optional[GigListing]:
        with self._locked():
            listing = self._listings.get(gig_id)
            return self._project_listing(listing) if listing else None

    def insert_listing(self, listing: GigListing) -> None:
        with self._write():
            if listing.gig_id in self._listings:
                raise DuplicateRecord(f"Listing already exists: {listing.gig_id}")
            self._remember("listings", listing.gig_id)
            self._listings[listing.gig_id] = copy.deepcopy(listing)

    def list_listings(self) -> list[GigListing]:
        with self._locked():
            return [self._project_listing(g) for g in self._listings.values()]

    def _project_listing(self, listing: GigListing) -> GigListing:
        agg = self._aggregates.get((AggregateScope.LISTING, listing.gig_id))
        projected = copy.deepcopy(listing)
        projected.rating = agg.rating if agg else 0.0
        projected.total_reviews = agg.total_reviews if agg else 0
        return projected

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._locked():
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def insert_order(self, order: Order) -> None:
        with self._write():
            if order.order_id in self._orders:
                raise DuplicateRecord(f"Order already exists: {order.order_id}")
            key = order.idempotency_key
            if key is not None:
                if key in self._idempotency:
                    raise DuplicateRecord(f"Idempotency key already used: {key}")
                self._remember("idempotency", key)
                self._idempotency[key] = order.order_id
            self._remember("orders", order.order_id)
            self._orders[order.order_id] = copy.deepcopy(order)

    def update_order(self, order: Order) -> None:
        """Replace an existing order. Orders are never deleted."""
        with self._write():
            if order.order_id not in self._orders:
                raise KeyError(f"Unknown order: {order.order_id}")
            self._remember("orders", order.order_id)
            self._orders[order.order_id] = copy.deepcopy(order)

    def find_order_by_idempotency_key(self, key: str) -> Optional[Order]:
        with self._locked():
            order_id = self._idempotency.get(key)
            return copy.deepcopy(self._orders[order_id]) if order_id else None

    def list_orders(self) -> list[Order]:
        with self._locked():
            return [copy.deepcopy(o) for o in self._orders.values()]

    def orders_for_user(self, user_id: str) -> list[Order]:
        with self._locked():
            return [
                copy.deepcopy(o) for o in self._orders.values()
                if user_id in (o.buyer_id, o.seller_id)
            ]

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def insert_payment(self, entry: PaymentEntry) -> None:
        with self._write():
            if entry.entry_id in self._payments:
                raise DuplicateRecord(f"Payment entry already exists: {entry.entry_id}")
            self._remember("payments", entry.entry_id)
            self._payments[entry.entry_id] = entry

    def payments_for_order(self, order_id: str) -> list[PaymentEntry]:
        with self._locked():
            return [p for p in self._payments.values() if p.order_id == order_id]

    def list_payments(self) -> list[PaymentEntry]:
        with self._locked():
            return list(self._payments.values())

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def insert_review(self, review: Review) -> None:
        with self._write():
            if review.review_id in self._reviews:
                raise DuplicateRecord(f"Review already exists: {review.review_id}")
            if any(r.order_id == review.order_id for r in self._reviews.values()):
                raise DuplicateRecord(f"Order already reviewed: {review.order_id}")
            self._remember("reviews", review.review_id)
            self._reviews[review.review_id] = review

    def get_review(self, review_id: str) -> Optional[Review]:
        with self._locked():
            return self._reviews.get(review_id)

    def review_for_order(self, order_id: str) -> Optional[Review]:
        with self._locked():
            return next(
                (r for r in self._reviews.values() if r.order_id == order_id), None,
            )

    def delete_review(self, review_id: str) -> Review:
        with self._write():
            self._remember("reviews", review_id)
            review = self._reviews.pop(review_id, None)
            if review is None:
                raise KeyError(f"Unknown review: {review_id}")
            return review

    def reviews_for(self, scope: AggregateScope, key: str) -> list[Review]:
        """Full scan of the review set an aggregate is derived from."""
        with self._locked():
            if scope == AggregateScope.LISTING:
                return [r for r in self._reviews.values() if r.gig_id == key]
            return [r for r in self._reviews.values() if r.seller_id == key]

    def list_reviews(self) -> list[Review]:
        with self._locked():
            return list(self._reviews.values())

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def insert_dispute(self, dispute: Dispute) -> None:
        with self._write():
            if dispute.dispute_id in self._disputes:
                raise DuplicateRecord(f"Dispute already exists: {dispute.dispute_id}")
            self._remember("disputes", dispute.dispute_id)
            self._disputes[dispute.dispute_id] = dispute

    def disputes_for_order(self, order_id: str) -> list[Dispute]:
        with self._locked():
            return [d for d in self._disputes.values() if d.order_id == order_id]

    def list_disputes(self) -> list[Dispute]:
        with self._locked():
            return list(self._disputes.values())

    # ------------------------------------------------------------------
    # Rating aggregates
    # ------------------------------------------------------------------

    def get_aggregate(self, scope: AggregateScope, key: str) -> RatingAggregate:
        with self._locked():
            return self._aggregates.get(
                (scope, key), RatingAggregate(scope=scope, key=key),
            )

    def write_aggregate(self, aggregate: RatingAggregate) -> None:
        with self._write():
            self._remember("aggregates", (aggregate.scope, aggregate.key))
            self._aggregates[(aggregate.scope, aggregate.key)] = aggregate

    def list_aggregates(self) -> list[RatingAggregate]:
        with self._locked():
            return list(self._aggregates.values())

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _save_to_file(self, path: Path) -> None:
        data = {
            "users": [user_to_dict(u) for u in self._users.values()],
            "listings": [listing_to_dict(g) for g in self._listings.values()],
            "orders": [order_to_dict(o) for o in self._orders.values()],
            "payments": [payment_to_dict(p) for p in self._payments.values()],
            "reviews": [review_to_dict(r) for r in self._reviews.values()],
            "disputes": [dispute_to_dict(d) for d in self._disputes.values()],
            "aggregates": [
                {
                    "scope": a.scope.value,
                    "key": a.key,
                    "rating": a.rating,
                    "total_reviews": a.total_reviews,
                }
                for a in self._aggregates.values()
            ],
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True, ensure_ascii=False)
        tmp.replace(path)

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        for raw in data.get("users", []):
            user = UserAccount(
                user_id=raw["user_id"],
                display_name=raw.get("display_name", ""),
                is_admin=bool(raw.get("is_admin", False)),
                created_utc=_parse_dt(raw.get("created_utc")),
            )
            self._users[user.user_id] = user
        for raw in data.get("listings", []):
            listing = GigListing(
                gig_id=raw["gig_id"],
                seller_id=raw["seller_id"],
                title=raw.get("title", ""),
                packages=[
                    Package(
                        name=PackageType(p["name"]),
                        price=Decimal(p["price"]),
                        delivery_time=p.get("delivery_time", ""),
                        revisions=int(p.get("revisions", 0)),
                        description=p.get("description", ""),
                    )
                    for p in raw.get("packages", [])
                ],
                created_utc=_parse_dt(raw.get("created_utc")),
            )
            self._listings[listing.gig_id] = listing
        for raw in data.get("orders", []):
            order = Order(
                order_id=raw["order_id"],
                gig_id=raw["gig_id"],
                buyer_id=raw["buyer_id"],
                seller_id=raw["seller_id"],
                package_type=PackageType(raw["package_type"]),
                price=Decimal(raw["price"]),
                service_fee=Decimal(raw["service_fee"]),
                total_amount=Decimal(raw["total_amount"]),
                status=OrderStatus(raw["status"]),
                payment_status=PaymentStatus(raw["payment_status"]),
                delivery_date=_parse_dt(raw.get("delivery_date")),
                requirements=dict(raw.get("requirements", {})),
                max_revisions=int(raw.get("max_revisions", 0)),
                created_utc=_parse_dt(raw.get("created_utc")),
                completed_utc=_parse_dt(raw.get("completed_utc")),
                idempotency_key=raw.get("idempotency_key"),
            )
            self._orders[order.order_id] = order
            if order.idempotency_key is not None:
                self._idempotency[order.idempotency_key] = order.order_id
        for raw in data.get("payments", []):
            entry = PaymentEntry(
                entry_id=raw["entry_id"],
                order_id=raw["order_id"],
                user_id=raw["user_id"],
                entry_type=PaymentEntryType(raw["entry_type"]),
                amount=Decimal(raw["amount"]),
                currency=raw["currency"],
                payment_method=raw["payment_method"],
                status=PaymentEntryStatus(raw["status"]),
                description=raw.get("description", ""),
                created_utc=_parse_dt(raw.get("created_utc")),
            )
            self._payments[entry.entry_id] = entry
        for raw in data.get("reviews", []):
            review = Review(
                review_id=raw["review_id"],
                order_id=raw["order_id"],
                gig_id=raw["gig_id"],
                reviewer_id=raw["reviewer_id"],
                seller_id=raw["seller_id"],
                rating=int(raw["rating"]),
                comment=raw["comment"],
                is_public=bool(raw.get("is_public", True)),
                created_utc=_parse_dt(raw.get("created_utc")),
            )
            self._reviews[review.review_id] = review
        for raw in data.get("disputes", []):
            dispute = Dispute(
                dispute_id=raw["dispute_id"],
                order_id=raw["order_id"],
                initiator_id=raw["initiator_id"],
                reason=raw["reason"],
                description=raw["description"],
                status=DisputeStatus(raw.get("status", "OPEN")),
                created_utc=_parse_dt(raw.get("created_utc")),
            )
            self._disputes[dispute.dispute_id] = dispute
        for raw in data.get("aggregates", []):
            agg = RatingAggregate(
                scope=AggregateScope(raw["scope"]),
                key=raw["key"],
                rating=float(raw["rating"]),
                total_reviews=int(raw["total_reviews"]),
            )
            self._aggregates[(agg.scope, agg.key)] = agg


# ----------------------------------------------------------------------
# Serialization helpers
# ----------------------------------------------------------------------

def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def user_to_dict(user: UserAccount) -> dict[str, Any]:
    return {
        "user_id": user.user_id,
        "display_name": user.display_name,
        "is_admin": user.is_admin,
        "created_utc": _dt(user.created_utc),
    }


def listing_to_dict(listing: GigListing) -> dict[str, Any]:
    # Aggregates are persisted in their own table, never on the listing
    return {
        "gig_id": listing.gig_id,
        "seller_id": listing.seller_id,
        "title": listing.title,
        "packages": [
            {
                "name": p.name.value,
                "price": str(p.price),
                "delivery_time": p.delivery_time,
                "revisions": p.revisions,
                "description": p.description,
            }
            for p in listing.packages
        ],
        "created_utc": _dt(listing.created_utc),
    }


def order_to_dict(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.order_id,
        "gig_id": order.gig_id,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "package_type": order.package_type.value,
        "price": str(order.price),
        "service_fee": str(order.service_fee),
        "total_amount": str(order.total_amount),
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "delivery_date": _dt(order.delivery_date),
        "requirements": dict(order.requirements),
        "max_revisions": order.max_revisions,
        "created_utc": _dt(order.created_utc),
        "completed_utc": _dt(order.completed_utc),
        "idempotency_key": order.idempotency_key,
    }


def payment_to_dict(entry: PaymentEntry) -> dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "order_id": entry.order_id,
        "user_id": entry.user_id,
        "entry_type": entry.entry_type.value,
        "amount": str(entry.amount),
        "currency": entry.currency,
        "payment_method": entry.payment_method,
        "status": entry.status.value,
        "description": entry.description,
        "created_utc": _dt(entry.created_utc),
    }


def review_to_dict(review: Review) -> dict[str, Any]:
    return {
        "review_id": review.review_id,
        "order_id": review.order_id,
        "gig_id": review.gig_id,
        "reviewer_id": review.reviewer_id,
        "seller_id": review.seller_id,
        "rating": review.rating,
        "comment": review.comment,
        "is_public": review.is_public,
        "created_utc": _dt(review.created_utc),
    }


def dispute_to_dict(dispute: Dispute) -> dict[str, Any]:
    return {
        "dispute_id": dispute.dispute_id,
        "order_id": dispute.order_id,
        "initiator_id": dispute.initiator_id,
        "reason": dispute.reason,
        "description": dispute.description,
        "status": dispute.status.value,
        "created_utc": _dt(dispute.created_utc),
    }
