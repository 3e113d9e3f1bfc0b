"""Reviews — the review ledger and rating aggregate recomputation."""

from gigstream.reviews.aggregates import AggregateEngine
from gigstream.reviews.ledger import ReviewLedger

__all__ = ["AggregateEngine", "ReviewLedger"]
