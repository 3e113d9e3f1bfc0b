#!/usr/bin/env python3
"""GigStream invariant checks against the policy file and a saved state file."""

import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from gigstream.compensation.pricing import to_money
from gigstream.models.market import AggregateScope
from gigstream.models.order import OrderStatus
from gigstream.persistence.state_store import StateStore
from gigstream.reviews.aggregates import compute_aggregate


ROOT = Path(__file__).resolve().parents[1]
POLICY_PATH = ROOT / "config" / "marketplace_policy.json"
DATA_DIR = ROOT / "data"


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_policy(policy: dict, errors: list[str]) -> None:
    """Validate the marketplace policy file."""
    pricing = policy.get("pricing", {})
    try:
        fee_rate = Decimal(str(pricing.get("fee_rate")))
    except InvalidOperation:
        errors.append(f"pricing.fee_rate is not a decimal: {pricing.get('fee_rate')!r}")
    else:
        if not (Decimal("0") <= fee_rate < Decimal("1")):
            errors.append(f"pricing.fee_rate must be in [0, 1), got {fee_rate}")
    if int(pricing.get("default_delivery_days", 0)) < 1:
        errors.append("pricing.default_delivery_days must be >= 1")

    reviews = policy.get("reviews", {})
    r_min = reviews.get("rating_min")
    r_max = reviews.get("rating_max")
    if (r_min, r_max) != (1, 5):
        errors.append(f"reviews rating bounds must be [1, 5], got [{r_min}, {r_max}]")
    if int(reviews.get("min_comment_length", 0)) < 1:
        errors.append("reviews.min_comment_length must be >= 1")

    concurrency = policy.get("concurrency", {})
    for name in ("persistence_timeout_seconds", "lock_timeout_seconds"):
        if float(concurrency.get(name, 0)) <= 0:
            errors.append(f"concurrency.{name} must be > 0")
    if int(concurrency.get("create_order_max_attempts", 0)) < 1:
        errors.append("concurrency.create_order_max_attempts must be >= 1")


def check_state(store: StateStore, fee_rate: Decimal, errors: list[str]) -> None:
    """Validate money, uniqueness, and aggregate consistency of saved state."""
    payments_by_order: dict[str, int] = {}
    for entry in store.list_payments():
        payments_by_order[entry.order_id] = payments_by_order.get(entry.order_id, 0) + 1

    for order in store.list_orders():
        if order.service_fee != to_money(order.price * fee_rate):
            errors.append(
                f"order {order.order_id}: service_fee {order.service_fee} "
                f"!= {fee_rate} x {order.price}"
            )
        if order.total_amount != order.price + order.service_fee:
            errors.append(f"order {order.order_id}: total_amount != price + service_fee")
        if payments_by_order.get(order.order_id, 0) != 1:
            errors.append(
                f"order {order.order_id}: expected exactly one payment entry, "
                f"found {payments_by_order.get(order.order_id, 0)}"
            )
        if order.status == OrderStatus.COMPLETED and order.completed_utc is None:
            errors.append(f"order {order.order_id}: COMPLETED without completed_utc")

    order_ids = {o.order_id for o in store.list_orders()}
    for order_id in payments_by_order:
        if order_id not in order_ids:
            errors.append(f"payment for unknown order {order_id}")

    reviewed: set[str] = set()
    for review in store.list_reviews():
        if review.order_id in reviewed:
            errors.append(f"order {review.order_id} has more than one review")
        reviewed.add(review.order_id)
        order = store.get_order(review.order_id)
        if order is None:
            errors.append(f"review {review.review_id} references unknown order")
        elif order.status not in (OrderStatus.COMPLETED, OrderStatus.DISPUTED):
            errors.append(
                f"review {review.review_id} on order in {order.status.value}"
            )

    keys = [(AggregateScope.LISTING, g.gig_id) for g in store.list_listings()]
    keys += [(AggregateScope.PROVIDER, u.user_id) for u in store.list_users()]
    for scope, key in keys:
        stored = store.get_aggregate(scope, key)
        expected = compute_aggregate(scope, key, store.reviews_for(scope, key))
        if (stored.rating, stored.total_reviews) != (expected.rating, expected.total_reviews):
            errors.append(
                f"{scope.value} {key}: aggregate ({stored.rating}, {stored.total_reviews}) "
                f"!= recomputed ({expected.rating}, {expected.total_reviews})"
            )


def check(policy_path: Path = POLICY_PATH, data_dir: Optional[Path] = None) -> int:
    policy = load_json(policy_path)
    errors: list[str] = []

    check_policy(policy, errors)

    if data_dir is None:
        data_dir = Path(os.environ.get("GIGSTREAM_DATA_DIR", DATA_DIR))
    state_path = data_dir / "state.json"
    if state_path.exists() and not errors:
        store = StateStore(storage_path=state_path)
        check_state(store, Decimal(str(policy["pricing"]["fee_rate"])), errors)

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
