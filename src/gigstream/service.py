"""GigStream service — unified facade for the order and reputation engine.

This is the primary interface for programmatic access. It orchestrates:
- Order creation (pricing, order row + payment ledger entry in one
  transaction, seller notification)
- Role-gated status transitions (deliver, complete, cancel)
- Disputes (force DISPUTED)
- Reviews and the listing / provider rating aggregates
- Audit trail (append-only event log)
- Notifications (fire-and-forget)

All operations produce typed results. Domain errors never escape as
exceptions: they come back as a failed ServiceResult carrying the typed
error. Notification failures are the only thing logged and discarded.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Union
from uuid import uuid4

from gigstream.compensation.ledger import PaymentLedger
from gigstream.compensation.pricing import PricingCalculator, to_money
from gigstream.errors import (
    DuplicateRecord,
    GigNotFound,
    IdempotencyKeyReused,
    MarketplaceError,
    OrderNotFound,
    TransientPersistenceError,
    UserNotFound,
    ValidationError,
)
from gigstream.models.market import GigListing, Package, PackageType, UserAccount
from gigstream.models.notification import NotificationType
from gigstream.models.order import Order, OrderStatus, PaymentStatus
from gigstream.notifications.dispatcher import (
    InboxNotifier,
    NotificationDispatcher,
    Notifier,
)
from gigstream.orders.disputes import DisputeHandler
from gigstream.orders.state_machine import OrderStateMachine
from gigstream.persistence.event_log import EventKind, EventLog, EventRecord
from gigstream.persistence.locks import KeyedLocks, order_key
from gigstream.persistence.state_store import (
    StateStore,
    dispute_to_dict,
    order_to_dict,
    payment_to_dict,
    review_to_dict,
)
from gigstream.policy.resolver import PolicyResolver
from gigstream.reviews.aggregates import AggregateEngine
from gigstream.reviews.ledger import ReviewLedger


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[MarketplaceError] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    @staticmethod
    def failure(error: MarketplaceError) -> ServiceResult:
        return ServiceResult(success=False, errors=[str(error)], error=error)


def _order_link(order_id: str) -> str:
    return f"/dashboard/orders/{order_id}"


class MarketplaceService:
    """Order lifecycle and reputation facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = MarketplaceService(resolver)

        service.register_user("seller-1")
        service.create_listing("gig-1", "seller-1", "Logo design", packages)

        result = service.create_order("gig-1", "buyer-1", "BASIC")
        order_id = result.data["order_id"]
        service.transition_order_status(order_id, "seller-1", "DELIVERED")
        service.transition_order_status(order_id, "buyer-1", "COMPLETED")
        service.submit_review(order_id, "buyer-1", 5, "Excellent, fast work")

    Persistence (optional):
        service = MarketplaceService(resolver, state_store=store, event_log=log)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        state_store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        notifier: Optional[Notifier] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._resolver = resolver
        concurrency = resolver.concurrency_params()
        self._concurrency = concurrency

        self._store = state_store or StateStore(
            timeout_seconds=concurrency.persistence_timeout_seconds,
        )
        self._event_log = event_log or EventLog()
        self._locks = KeyedLocks(timeout_seconds=concurrency.lock_timeout_seconds)

        self._notifier = notifier or InboxNotifier()
        self._dispatcher = NotificationDispatcher(self._notifier, executor=executor)

        self._pricing = PricingCalculator(resolver)
        self._payments = PaymentLedger(self._store, resolver)
        self._disputes = DisputeHandler(self._store, self._locks)
        self._aggregates = AggregateEngine(self._store, self._locks, resolver)
        self._reviews = ReviewLedger(self._store, self._locks, self._aggregates, resolver)

        # Continue numbering from a persisted log to avoid ID collisions
        self._event_counter = itertools.count(self._event_log.count + 1)
        self._event_counter_lock = threading.Lock()
        # Set when an audit append fails after its state change committed
        self._audit_degraded: bool = False

    # ------------------------------------------------------------------
    # Accounts and catalogue
    # ------------------------------------------------------------------

    def register_user(
        self,
        user_id: str,
        display_name: str = "",
        is_admin: bool = False,
    ) -> ServiceResult:
        """Register a marketplace account."""
        uid = (user_id or "").strip()
        if not uid:
            return ServiceResult.failure(ValidationError("user_id must not be empty"))
        user = UserAccount(
            user_id=uid,
            display_name=display_name or uid,
            is_admin=is_admin,
            created_utc=datetime.now(timezone.utc),
        )
        try:
            self._store.insert_user(user)
        except MarketplaceError as e:
            return ServiceResult.failure(e)
        warning = self._record_event(
            EventKind.USER_REGISTERED, uid, {"user_id": uid, "is_admin": is_admin},
        )
        return self._ok({"user_id": uid}, warning)

    def create_listing(
        self,
        gig_id: str,
        seller_id: str,
        title: str,
        packages: list[Package],
    ) -> ServiceResult:
        """Publish a listing with its packages."""
        if self._store.get_user(seller_id) is None:
            return ServiceResult.failure(UserNotFound(f"Seller not found: {seller_id}"))

        errors: list[str] = []
        if not (gig_id or "").strip():
            errors.append("gig_id must not be empty")
        if not packages:
            errors.append("A listing needs at least one package")
        names = [p.name for p in packages]
        if len(set(names)) != len(names):
            errors.append("Package types must be unique per listing")
        for p in packages:
            if to_money(p.price) <= Decimal("0"):
                errors.append(f"{p.name.value} price must be positive")
            if p.revisions < 0:
                errors.append(f"{p.name.value} revisions must be >= 0")
        if errors:
            return ServiceResult.failure(ValidationError("; ".join(errors)))

        listing = GigListing(
            gig_id=gig_id,
            seller_id=seller_id,
            title=title,
            packages=list(packages),
            created_utc=datetime.now(timezone.utc),
        )
        try:
            self._store.insert_listing(listing)
        except MarketplaceError as e:
            return ServiceResult.failure(e)
        warning = self._record_event(
            EventKind.LISTING_CREATED, seller_id, {"gig_id": gig_id, "title": title},
        )
        return self._ok({"gig_id": gig_id}, warning)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._store.get_user(user_id)

    def get_listing(self, gig_id: str) -> Optional[GigListing]:
        return self._store.get_listing(gig_id)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(
        self,
        gig_id: str,
        buyer_id: str,
        package_type: Union[PackageType, str],
        requirements: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ServiceResult:
        """Price and place an order.

        Order row and payment entry commit together. With an idempotency
        key, transient persistence failures are retried and a replayed
        request returns the original order without new rows.
        """
        attempts = self._concurrency.create_order_max_attempts if idempotency_key else 1
        for attempt in range(1, attempts + 1):
            try:
                order, replayed = self._create_order_once(
                    gig_id, buyer_id, package_type, requirements, idempotency_key,
                )
            except TransientPersistenceError as e:
                if attempt >= attempts:
                    logger.error("Order creation failed after %d attempt(s): %s", attempt, e)
                    return ServiceResult.failure(e)
                logger.warning(
                    "Transient failure creating order (attempt %d/%d): %s",
                    attempt, attempts, e,
                )
                continue
            except MarketplaceError as e:
                return ServiceResult.failure(e)

            data: dict[str, Any] = {
                "order_id": order.order_id,
                "price": str(order.price),
                "service_fee": str(order.service_fee),
                "total_amount": str(order.total_amount),
                "status": order.status.value,
                "delivery_date": order.delivery_date.isoformat() if order.delivery_date else None,
            }
            if replayed:
                data["replayed"] = True
                return ServiceResult(success=True, data=data)

            warning = self._record_order_created(order)
            listing = self._store.get_listing(order.gig_id)
            title = listing.title if listing else order.gig_id
            self._dispatcher.dispatch(
                order.seller_id,
                NotificationType.ORDER_PLACED,
                "New Order",
                f"You have received a new order for {title}",
                _order_link(order.order_id),
            )
            return self._ok(data, warning)

        # Unreachable: the loop always returns
        raise AssertionError("create_order retry loop exited without a result")

    def _create_order_once(
        self,
        gig_id: str,
        buyer_id: str,
        package_type: Union[PackageType, str],
        requirements: Optional[Mapping[str, str]],
        idempotency_key: Optional[str],
    ) -> tuple[Order, bool]:
        if not (buyer_id or "").strip():
            raise ValidationError("buyer_id must not be empty")
        reqs = self._validate_requirements(requirements)

        if idempotency_key is not None:
            existing = self._store.find_order_by_idempotency_key(idempotency_key)
            if existing is not None:
                return self._replay(existing, gig_id, buyer_id, package_type), True

        listing = self._store.get_listing(gig_id)
        if listing is None:
            raise GigNotFound(f"Gig not found: {gig_id}")
        if listing.seller_id == buyer_id:
            raise ValidationError("Sellers cannot order their own gig")

        now = datetime.now(timezone.utc)
        quote = self._pricing.quote(listing.packages, package_type, now=now)
        order = Order(
            order_id=f"ord_{uuid4().hex[:12]}",
            gig_id=listing.gig_id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            package_type=quote.package.name,
            price=quote.price,
            service_fee=quote.service_fee,
            total_amount=quote.total_amount,
            status=OrderStatus.IN_PROGRESS,
            payment_status=PaymentStatus.COMPLETED,
            delivery_date=quote.delivery_date,
            requirements=reqs,
            max_revisions=quote.package.revisions,
            created_utc=now,
            idempotency_key=idempotency_key,
        )

        try:
            with self._store.transaction(
                timeout=self._concurrency.persistence_timeout_seconds,
            ):
                self._store.insert_order(order)
                self._payments.record_order_payment(order, now=now)
        except DuplicateRecord:
            # Lost an idempotency-key race to a concurrent retry
            if idempotency_key is None:
                raise
            existing = self._store.find_order_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return self._replay(existing, gig_id, buyer_id, package_type), True

        logger.info(
            "Order %s created: gig=%s buyer=%s total=%s",
            order.order_id, gig_id, buyer_id, order.total_amount,
        )
        return order, False

    @staticmethod
    def _replay(
        existing: Order,
        gig_id: str,
        buyer_id: str,
        package_type: Union[PackageType, str],
    ) -> Order:
        try:
            wanted = PackageType(package_type)
        except ValueError:
            wanted = None
        if (existing.gig_id, existing.buyer_id, existing.package_type) != (
            gig_id, buyer_id, wanted,
        ):
            raise IdempotencyKeyReused(
                f"Idempotency key already used for order {existing.order_id}"
            )
        return existing

    @staticmethod
    def _validate_requirements(requirements: Optional[Mapping[str, str]]) -> dict[str, str]:
        if requirements is None:
            return {}
        if not isinstance(requirements, Mapping):
            raise ValidationError("requirements must be a mapping of string to string")
        for k, v in requirements.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise ValidationError("requirements must be a mapping of string to string")
        return dict(requirements)

    def transition_order_status(
        self,
        order_id: str,
        actor_id: str,
        target_status: Union[OrderStatus, str],
    ) -> ServiceResult:
        """Move an order to DELIVERED, COMPLETED, or CANCELLED.

        The actor's roles on the order are resolved (buyer, seller,
        admin) and checked against the transition table.
        """
        try:
            with self._locks.hold(order_key(order_id)):
                order = self._store.get_order(order_id)
                if order is None:
                    raise OrderNotFound(f"Order not found: {order_id}")
                actor = self._store.get_user(actor_id)
                roles = order.roles_of(actor_id, is_admin=bool(actor and actor.is_admin))
                previous = OrderStateMachine.apply(order, target_status, roles)
                self._store.update_order(order)
        except MarketplaceError as e:
            return ServiceResult.failure(e)

        logger.info(
            "Order %s: %s -> %s by %s",
            order_id, previous.value, order.status.value, actor_id,
        )
        warning = self._record_event(
            EventKind.ORDER_TRANSITION,
            actor_id,
            {"order_id": order_id, "from": previous.value, "to": order.status.value},
        )
        self._notify_transition(order, actor_id)
        return self._ok({"order": order_to_dict(order)}, warning)

    def _notify_transition(self, order: Order, actor_id: str) -> None:
        listing = self._store.get_listing(order.gig_id)
        title = listing.title if listing else order.gig_id
        link = _order_link(order.order_id)
        if order.status == OrderStatus.DELIVERED:
            self._dispatcher.dispatch(
                order.buyer_id, NotificationType.ORDER_DELIVERED,
                "Order Delivered", f"Your order for {title} has been delivered", link,
            )
        elif order.status == OrderStatus.COMPLETED:
            self._dispatcher.dispatch(
                order.seller_id, NotificationType.ORDER_COMPLETED,
                "Order Completed", f"Your order for {title} has been marked complete", link,
            )
        elif order.status == OrderStatus.CANCELLED:
            for user_id in (order.buyer_id, order.seller_id):
                if user_id != actor_id:
                    self._dispatcher.dispatch(
                        user_id, NotificationType.ORDER_CANCELLED,
                        "Order Cancelled", f"The order for {title} was cancelled", link,
                    )

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._store.get_order(order_id)

    def orders_for_user(self, user_id: str) -> list[Order]:
        return self._store.orders_for_user(user_id)

    def payments_for_order(self, order_id: str) -> list[dict[str, Any]]:
        return [payment_to_dict(p) for p in self._payments.entries_for_order(order_id)]

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def create_dispute(
        self,
        order_id: str,
        actor_id: str,
        reason: str,
        description: str,
    ) -> ServiceResult:
        """Open a dispute. The order becomes DISPUTED whatever its status."""
        try:
            outcome = self._disputes.open_dispute(order_id, actor_id, reason, description)
        except MarketplaceError as e:
            return ServiceResult.failure(e)

        dispute = outcome.dispute
        logger.info(
            "Dispute %s opened on order %s by %s (was %s)",
            dispute.dispute_id, order_id, actor_id, outcome.previous_status.value,
        )
        warning = self._record_event(
            EventKind.DISPUTE_OPENED,
            actor_id,
            {
                "order_id": order_id,
                "dispute_id": dispute.dispute_id,
                "from": outcome.previous_status.value,
                "reason": dispute.reason,
            },
        )
        self._dispatcher.dispatch(
            outcome.order.counterparty_of(actor_id),
            NotificationType.DISPUTE_OPENED,
            "Dispute Opened",
            f"A dispute was opened on your order: {dispute.reason}",
            _order_link(order_id),
        )
        return self._ok({"dispute_id": dispute.dispute_id}, warning)

    def disputes_for_order(self, order_id: str) -> list[dict[str, Any]]:
        return [dispute_to_dict(d) for d in self._store.disputes_for_order(order_id)]

    # ------------------------------------------------------------------
    # Reviews and aggregates
    # ------------------------------------------------------------------

    def submit_review(
        self,
        order_id: str,
        reviewer_id: str,
        rating: int,
        comment: str,
    ) -> ServiceResult:
        """Review a completed order and refresh both rating aggregates."""
        try:
            outcome = self._reviews.submit(order_id, reviewer_id, rating, comment)
        except MarketplaceError as e:
            return ServiceResult.failure(e)

        review = outcome.review
        warning = self._record_event(
            EventKind.REVIEW_SUBMITTED,
            reviewer_id,
            {
                "order_id": order_id,
                "review_id": review.review_id,
                "gig_id": review.gig_id,
                "seller_id": review.seller_id,
                "rating": review.rating,
            },
        )
        warning = self._record_aggregates(outcome, reviewer_id) or warning
        listing = self._store.get_listing(review.gig_id)
        title = listing.title if listing else review.gig_id
        self._dispatcher.dispatch(
            review.seller_id,
            NotificationType.REVIEW_RECEIVED,
            "New Review",
            f"You received a {review.rating}-star review for {title}",
            f"/gig/{review.gig_id}",
        )
        return self._ok(
            {
                "review_id": review.review_id,
                "listing_rating": outcome.listing_aggregate.rating,
                "listing_total_reviews": outcome.listing_aggregate.total_reviews,
                "provider_rating": outcome.provider_aggregate.rating,
                "provider_total_reviews": outcome.provider_aggregate.total_reviews,
            },
            warning,
        )

    def delete_review(self, review_id: str, actor_id: str) -> ServiceResult:
        """Administrator removal of a review; aggregates are recomputed."""
        try:
            outcome = self._reviews.delete(review_id, actor_id)
        except MarketplaceError as e:
            return ServiceResult.failure(e)

        warning = self._record_event(
            EventKind.REVIEW_DELETED,
            actor_id,
            {
                "review_id": review_id,
                "order_id": outcome.review.order_id,
                "gig_id": outcome.review.gig_id,
                "seller_id": outcome.review.seller_id,
            },
        )
        warning = self._record_aggregates(outcome, actor_id) or warning
        return self._ok({"ok": True}, warning)

    def reviews_for_listing(self, gig_id: str) -> list[dict[str, Any]]:
        return [
            review_to_dict(r) for r in self._store.list_reviews() if r.gig_id == gig_id
        ]

    def recompute_aggregates(self) -> ServiceResult:
        """Rebuild every listing and provider aggregate from the review set."""
        try:
            results = self._aggregates.recompute_all()
        except MarketplaceError as e:
            return ServiceResult.failure(e)
        return ServiceResult(success=True, data={"recomputed": len(results)})

    def aggregate_drift(self) -> list[str]:
        return self._aggregates.drift()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def notifications(self, user_id: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Most recent in-app notifications (newest first)."""
        if not isinstance(self._notifier, InboxNotifier):
            return []
        size = limit or self._resolver.inbox_page_size()
        return [
            {
                "notification_id": n.notification_id,
                "type": n.type.value,
                "title": n.title,
                "message": n.message,
                "link": n.link,
                "is_read": n.is_read,
            }
            for n in self._notifier.recent(user_id, size)
        ]

    def mark_notifications_read(
        self, user_id: str, notification_id: Optional[str] = None,
    ) -> ServiceResult:
        if not isinstance(self._notifier, InboxNotifier):
            return ServiceResult.failure(ValidationError("No in-app inbox configured"))
        if notification_id is None:
            changed = self._notifier.mark_all_read(user_id)
        else:
            changed = 1 if self._notifier.mark_read(user_id, notification_id) else 0
        return ServiceResult(success=True, data={"marked": changed})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for o in self._store.list_orders():
            counts[o.status.value] = counts.get(o.status.value, 0) + 1
        return {
            "policy_version": self._resolver.version,
            "users": len(self._store.list_users()),
            "listings": len(self._store.list_listings()),
            "orders": counts,
            "reviews": len(self._store.list_reviews()),
            "disputes": len(self._store.list_disputes()),
            "payments_collected": str(self._payments.total_collected()),
            "events": self._event_log.count,
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ok(data: dict[str, Any], warning: Optional[str]) -> ServiceResult:
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        """Monotonically increasing unique event ID."""
        with self._event_counter_lock:
            return f"EVT-{next(self._event_counter):08d}"

    def _record_event(
        self, kind: EventKind, actor_id: str, payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event after its state change committed.

        The change is already durable, so a failed append is not rolled
        back: the service is flagged degraded and a warning is returned.
        """
        try:
            self._event_log.append(
                EventRecord.create(
                    event_id=self._next_event_id(),
                    event_kind=kind,
                    actor_id=actor_id,
                    payload=payload,
                )
            )
            return None
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("Audit append failed for %s: %s", kind.value, e)
            return f"Audit degraded: {e}; state committed but event not recorded"

    def _record_order_created(self, order: Order) -> Optional[str]:
        warning = self._record_event(
            EventKind.ORDER_CREATED,
            order.buyer_id,
            {
                "order_id": order.order_id,
                "gig_id": order.gig_id,
                "seller_id": order.seller_id,
                "package_type": order.package_type.value,
                "total_amount": str(order.total_amount),
            },
        )
        for entry in self._payments.entries_for_order(order.order_id):
            warning = self._record_event(
                EventKind.PAYMENT_RECORDED,
                entry.user_id,
                {
                    "order_id": order.order_id,
                    "entry_id": entry.entry_id,
                    "type": entry.entry_type.value,
                    "amount": str(entry.amount),
                },
            ) or warning
        return warning

    def _record_aggregates(self, outcome: Any, actor_id: str) -> Optional[str]:
        warning: Optional[str] = None
        for agg in (outcome.listing_aggregate, outcome.provider_aggregate):
            warning = self._record_event(
                EventKind.AGGREGATE_RECOMPUTED,
                actor_id,
                {
                    "scope": agg.scope.value,
                    "key": agg.key,
                    "rating": agg.rating,
                    "total_reviews": agg.total_reviews,
                },
            ) or warning
        return warning

