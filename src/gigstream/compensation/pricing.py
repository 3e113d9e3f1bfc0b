"""Pricing calculator — turns a package selection into a priced quote.

    price        = selected package price
    service_fee  = round(price × fee_rate, 2dp)        (fee_rate = 0.10)
    total_amount = price + service_fee

Delivery date is now + delivery_days, where delivery_days is the leading
integer of the package's delivery_time before the "_" separator
("3_DAYS" → 3). Anything unparsable falls back to the configured default
(3 days). The fallback is intentionally permissive: sellers type free-form
delivery text and an odd value must never block a purchase.

Pure computation: no persistence, no side effects.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

from gigstream.errors import InvalidPackage
from gigstream.models.compensation import PriceQuote
from gigstream.models.market import Package, PackageType
from gigstream.policy.resolver import PolicyResolver


CENT = Decimal("0.01")
_LEADING_INT = re.compile(r"^\s*(\d+)")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Coerce to a two-decimal Decimal (ROUND_HALF_UP)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_delivery_days(delivery_time: Optional[str], default_days: int) -> int:
    """Leading integer token of ``delivery_time``, else ``default_days``."""
    if not delivery_time:
        return default_days
    head = str(delivery_time).split("_", 1)[0]
    match = _LEADING_INT.match(head)
    if match is None:
        return default_days
    days = int(match.group(1))
    return days if days > 0 else default_days


class PricingCalculator:
    """Prices a package selection against the configured fee rate.

    Usage:
        calculator = PricingCalculator(resolver)
        quote = calculator.quote(listing.packages, PackageType.BASIC)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._params = resolver.pricing_params()

    @property
    def fee_rate(self) -> Decimal:
        return self._params.fee_rate

    def service_fee(self, price: Decimal) -> Decimal:
        return to_money(price * self._params.fee_rate)

    def quote(
        self,
        packages: Iterable[Package],
        package_type: Union[PackageType, str],
        now: Optional[datetime] = None,
    ) -> PriceQuote:
        """Price the package of ``package_type``.

        Raises InvalidPackage if the type is unknown or the listing has
        no package of that type.
        """
        try:
            wanted = PackageType(package_type)
        except ValueError as e:
            raise InvalidPackage(f"Unknown package type: {package_type}") from e

        selected = next((p for p in packages if p.name == wanted), None)
        if selected is None:
            raise InvalidPackage(f"Listing has no {wanted.value} package")

        if now is None:
            now = datetime.now(timezone.utc)

        price = to_money(selected.price)
        fee = self.service_fee(price)
        days = parse_delivery_days(
            selected.delivery_time, self._params.default_delivery_days,
        )
        return PriceQuote(
            package=selected,
            price=price,
            service_fee=fee,
            total_amount=price + fee,
            delivery_days=days,
            delivery_date=now + timedelta(days=days),
        )
