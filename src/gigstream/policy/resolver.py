"""Policy resolver — loads marketplace parameters from the config directory.

All tunable numbers (fee rate, delivery fallback, review bounds, timeouts)
live in ``config/marketplace_policy.json``. Code never hard-codes them;
engines receive a resolver and ask for the parameter group they need.

Fail-closed: a missing file, a missing key, or an out-of-range value
raises ValueError at load time rather than producing a half-configured
service.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


POLICY_FILENAME = "marketplace_policy.json"
DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"


@dataclass(frozen=True)
class PricingParams:
    fee_rate: Decimal
    currency: str
    default_delivery_days: int
    payment_method: str


@dataclass(frozen=True)
class ReviewParams:
    rating_min: int
    rating_max: int
    min_comment_length: int


@dataclass(frozen=True)
class ConcurrencyParams:
    persistence_timeout_seconds: float
    lock_timeout_seconds: float
    create_order_max_attempts: int


class PolicyResolver:
    """Typed access to the marketplace policy document.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        params = resolver.pricing_params()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._pricing = self._parse_pricing(policy)
        self._reviews = self._parse_reviews(policy)
        self._concurrency = self._parse_concurrency(policy)
        self._inbox_page_size = int(
            policy.get("notifications", {}).get("inbox_page_size", 10)
        )
        if self._inbox_page_size <= 0:
            raise ValueError("notifications.inbox_page_size must be > 0")

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        path = Path(config_dir) / POLICY_FILENAME
        if not path.exists():
            raise ValueError(f"Policy file not found: {path}")
        with path.open("r", encoding="utf-8") as handle:
            return cls(json.load(handle))

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> PolicyResolver:
        """Resolve the config directory from the environment.

        Loads a ``.env`` file (if present) first, then reads
        GIGSTREAM_CONFIG_DIR. Falls back to the repository config/.
        """
        load_dotenv(env_file)
        config_dir = os.getenv("GIGSTREAM_CONFIG_DIR")
        return cls.from_config_dir(Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR)

    # ------------------------------------------------------------------
    # Parameter groups
    # ------------------------------------------------------------------

    def pricing_params(self) -> PricingParams:
        return self._pricing

    def review_params(self) -> ReviewParams:
        return self._reviews

    def concurrency_params(self) -> ConcurrencyParams:
        return self._concurrency

    def inbox_page_size(self) -> int:
        return self._inbox_page_size

    @property
    def version(self) -> str:
        return str(self._policy.get("version", "unversioned"))

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _section(policy: dict[str, Any], name: str) -> dict[str, Any]:
        section = policy.get(name)
        if not isinstance(section, dict):
            raise ValueError(f"Policy missing section: {name}")
        return section

    @classmethod
    def _parse_pricing(cls, policy: dict[str, Any]) -> PricingParams:
        section = cls._section(policy, "pricing")
        try:
            # String round-trip keeps 0.10 exact
            fee_rate = Decimal(str(section["fee_rate"]))
        except (KeyError, InvalidOperation) as e:
            raise ValueError(f"pricing.fee_rate invalid: {e}") from e
        if not (Decimal("0") <= fee_rate < Decimal("1")):
            raise ValueError(f"pricing.fee_rate must be in [0, 1), got {fee_rate}")
        default_days = int(section.get("default_delivery_days", 3))
        if default_days <= 0:
            raise ValueError("pricing.default_delivery_days must be > 0")
        return PricingParams(
            fee_rate=fee_rate,
            currency=str(section.get("currency", "USD")),
            default_delivery_days=default_days,
            payment_method=str(section.get("payment_method", "CREDIT_CARD")),
        )

    @classmethod
    def _parse_reviews(cls, policy: dict[str, Any]) -> ReviewParams:
        section = cls._section(policy, "reviews")
        params = ReviewParams(
            rating_min=int(section.get("rating_min", 1)),
            rating_max=int(section.get("rating_max", 5)),
            min_comment_length=int(section.get("min_comment_length", 10)),
        )
        if params.rating_min < 1 or params.rating_max < params.rating_min:
            raise ValueError(
                f"reviews rating bounds invalid: [{params.rating_min}, {params.rating_max}]"
            )
        if params.min_comment_length < 0:
            raise ValueError("reviews.min_comment_length must be >= 0")
        return params

    @classmethod
    def _parse_concurrency(cls, policy: dict[str, Any]) -> ConcurrencyParams:
        section = cls._section(policy, "concurrency")
        params = ConcurrencyParams(
            persistence_timeout_seconds=float(section.get("persistence_timeout_seconds", 5.0)),
            lock_timeout_seconds=float(section.get("lock_timeout_seconds", 5.0)),
            create_order_max_attempts=int(section.get("create_order_max_attempts", 3)),
        )
        # Bounded waits only: no operation may block indefinitely
        if params.persistence_timeout_seconds <= 0 or params.lock_timeout_seconds <= 0:
            raise ValueError("concurrency timeouts must be > 0")
        if params.create_order_max_attempts < 1:
            raise ValueError("concurrency.create_order_max_attempts must be >= 1")
        return params
