"""GigStream CLI — command-line interface for the order and reputation engine.

Usage:
    python -m gigstream.cli status
    python -m gigstream.cli register-user --id alice
    python -m gigstream.cli create-listing --id gig-1 --seller alice --title "Logo design" \
        --package BASIC:50.00:3_days:1 --package PREMIUM:150.00:1_day:5
    python -m gigstream.cli create-order --gig gig-1 --buyer bob --package BASIC
    python -m gigstream.cli transition --order ord_x --actor alice --to DELIVERED
    python -m gigstream.cli review --order ord_x --reviewer bob --rating 5 --comment "Great work"
    python -m gigstream.cli check-invariants

The data directory (state.json, events.jsonl, notifications.json)
defaults to GIGSTREAM_DATA_DIR, then ./data. A .env file is honoured.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from gigstream.compensation.pricing import to_money
from gigstream.models.market import Package, PackageType
from gigstream.notifications.dispatcher import InboxNotifier
from gigstream.persistence.event_log import EventLog
from gigstream.persistence.state_store import StateStore, order_to_dict
from gigstream.policy.resolver import PolicyResolver
from gigstream.service import MarketplaceService, ServiceResult


DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _data_dir(args: argparse.Namespace) -> Path:
    if args.data is not None:
        return args.data
    env = os.getenv("GIGSTREAM_DATA_DIR")
    return Path(env) if env else DEFAULT_DATA


def _make_service(args: argparse.Namespace) -> MarketplaceService:
    """Create a MarketplaceService with durable persistence."""
    data_dir = _data_dir(args)
    data_dir.mkdir(parents=True, exist_ok=True)
    if args.config is not None:
        resolver = PolicyResolver.from_config_dir(args.config)
    else:
        resolver = PolicyResolver.from_env()
    timeout = resolver.concurrency_params().persistence_timeout_seconds
    return MarketplaceService(
        resolver,
        state_store=StateStore(storage_path=data_dir / "state.json", timeout_seconds=timeout),
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        notifier=InboxNotifier(storage_path=data_dir / "notifications.json"),
    )


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed [{result.error_code}]: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _parse_package(spec: str) -> Package:
    """NAME:PRICE[:DELIVERY_TIME[:REVISIONS]] e.g. BASIC:50.00:3_days:1"""
    parts = spec.split(":")
    if len(parts) < 2:
        raise argparse.ArgumentTypeError(f"Invalid package spec: {spec!r}")
    try:
        name = PackageType(parts[0].upper())
    except ValueError:
        raise argparse.ArgumentTypeError(f"Unknown package type: {parts[0]!r}") from None
    try:
        price = to_money(parts[1])
    except ArithmeticError:
        raise argparse.ArgumentTypeError(f"Invalid price: {parts[1]!r}") from None
    delivery_time = parts[2] if len(parts) > 2 else ""
    revisions = int(parts[3]) if len(parts) > 3 else 0
    return Package(name=name, price=price, delivery_time=delivery_time, revisions=revisions)


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_register_user(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.register_user(args.id, display_name=args.name or "", is_admin=args.admin))


def cmd_create_listing(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.create_listing(args.id, args.seller, args.title, args.package))


def cmd_create_order(args: argparse.Namespace) -> int:
    service = _make_service(args)
    requirements: Optional[dict[str, Any]] = None
    if args.requirements:
        try:
            requirements = json.loads(args.requirements)
        except json.JSONDecodeError as e:
            print(f"Failed: requirements is not valid JSON: {e}", file=sys.stderr)
            return 1
    result = service.create_order(
        gig_id=args.gig,
        buyer_id=args.buyer,
        package_type=args.package.upper(),
        requirements=requirements,
        idempotency_key=args.idempotency_key,
    )
    return _report(result)


def cmd_transition(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.transition_order_status(args.order, args.actor, args.to.upper()))


def cmd_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.create_dispute(args.order, args.actor, args.reason, args.description))


def cmd_review(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.submit_review(args.order, args.reviewer, args.rating, args.comment))


def cmd_delete_review(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.delete_review(args.id, args.actor))


def cmd_orders(args: argparse.Namespace) -> int:
    service = _make_service(args)
    orders = [order_to_dict(o) for o in service.orders_for_user(args.user)]
    print(json.dumps(orders, indent=2))
    return 0


def cmd_notifications(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.mark_read:
        result = service.mark_notifications_read(args.user)
        if not result.success:
            return _report(result)
    print(json.dumps(service.notifications(args.user, args.limit), indent=2))
    return 0


def cmd_recompute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.recompute_aggregates())


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run the invariant checker in tools/."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import POLICY_PATH, check
    policy_path = args.config / "marketplace_policy.json" if args.config else POLICY_PATH
    return check(policy_path=policy_path, data_dir=_data_dir(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigstream",
        description="GigStream — order lifecycle and reputation engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config directory (default: $GIGSTREAM_CONFIG_DIR or config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=None,
        help="Path to data directory (default: $GIGSTREAM_DATA_DIR or data/)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show marketplace status")

    # register-user
    p_user = sub.add_parser("register-user", help="Register a user account")
    p_user.add_argument("--id", required=True, help="User ID")
    p_user.add_argument("--name", help="Display name (default: the ID)")
    p_user.add_argument("--admin", action="store_true", help="Grant administrator rights")

    # create-listing
    p_gig = sub.add_parser("create-listing", help="Publish a gig listing")
    p_gig.add_argument("--id", required=True, help="Gig ID")
    p_gig.add_argument("--seller", required=True, help="Seller user ID")
    p_gig.add_argument("--title", required=True, help="Listing title")
    p_gig.add_argument(
        "--package", required=True, action="append", type=_parse_package,
        help="NAME:PRICE[:DELIVERY_TIME[:REVISIONS]] (repeatable)",
    )

    # create-order
    p_order = sub.add_parser("create-order", help="Place an order")
    p_order.add_argument("--gig", required=True, help="Gig ID")
    p_order.add_argument("--buyer", required=True, help="Buyer user ID")
    p_order.add_argument(
        "--package", required=True,
        choices=[p.value for p in PackageType] + [p.value.lower() for p in PackageType],
        help="Package type",
    )
    p_order.add_argument("--requirements", help="JSON object of string answers")
    p_order.add_argument("--idempotency-key", help="Client retry key")

    # transition
    p_tr = sub.add_parser("transition", help="Change an order's status")
    p_tr.add_argument("--order", required=True, help="Order ID")
    p_tr.add_argument("--actor", required=True, help="Acting user ID")
    p_tr.add_argument("--to", required=True, help="DELIVERED, COMPLETED or CANCELLED")

    # dispute
    p_dsp = sub.add_parser("dispute", help="Open a dispute on an order")
    p_dsp.add_argument("--order", required=True, help="Order ID")
    p_dsp.add_argument("--actor", required=True, help="Buyer or seller ID")
    p_dsp.add_argument("--reason", required=True, help="Short reason")
    p_dsp.add_argument("--description", required=True, help="Details")

    # review
    p_rev = sub.add_parser("review", help="Review a completed order")
    p_rev.add_argument("--order", required=True, help="Order ID")
    p_rev.add_argument("--reviewer", required=True, help="Buyer user ID")
    p_rev.add_argument("--rating", required=True, type=int, help="1 to 5")
    p_rev.add_argument("--comment", required=True, help="Review text")

    # delete-review
    p_del = sub.add_parser("delete-review", help="Remove a review (administrators)")
    p_del.add_argument("--id", required=True, help="Review ID")
    p_del.add_argument("--actor", required=True, help="Administrator user ID")

    # orders
    p_orders = sub.add_parser("orders", help="List a user's orders")
    p_orders.add_argument("--user", required=True, help="User ID")

    # notifications
    p_ntf = sub.add_parser("notifications", help="Show a user's notifications")
    p_ntf.add_argument("--user", required=True, help="User ID")
    p_ntf.add_argument("--limit", type=int, default=None, help="Maximum to show")
    p_ntf.add_argument("--mark-read", action="store_true", help="Mark all as read first")

    # recompute
    sub.add_parser("recompute", help="Rebuild every rating aggregate")

    # check-invariants
    sub.add_parser("check-invariants", help="Run policy and state invariant checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "register-user": cmd_register_user,
        "create-listing": cmd_create_listing,
        "create-order": cmd_create_order,
        "transition": cmd_transition,
        "dispute": cmd_dispute,
        "review": cmd_review,
        "delete-review": cmd_delete_review,
        "orders": cmd_orders,
        "notifications": cmd_notifications,
        "recompute": cmd_recompute,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
