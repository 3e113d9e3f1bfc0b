"""Compensation subsystem — order pricing and the payment ledger."""

from gigstream.compensation.ledger import PaymentLedger
from gigstream.compensation.pricing import PricingCalculator

__all__ = [
    "PaymentLedger",
    "PricingCalculator",
]
