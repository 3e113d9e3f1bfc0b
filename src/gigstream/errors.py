"""Typed error taxonomy for the order and reputation engine.

Engines raise these; the service facade converts them into failed
ServiceResults so callers always receive a typed outcome. Each class
carries a stable ``code`` for programmatic matching.
"""

from __future__ import annotations


class MarketplaceError(Exception):
    """Base class for every domain error."""
    code = "marketplace_error"


# -- Validation -------------------------------------------------------------

class ValidationError(MarketplaceError):
    """Malformed or missing input."""
    code = "validation_error"


class InvalidPackage(ValidationError):
    code = "invalid_package"


class InvalidTransition(ValidationError):
    """Unknown target status, or a target not reachable from the current state."""
    code = "invalid_transition"


# -- Authorization ----------------------------------------------------------

class AuthorizationError(MarketplaceError):
    code = "authorization_error"


class Forbidden(AuthorizationError):
    """Actor's role on the order does not permit the operation."""
    code = "forbidden"


# -- Not found --------------------------------------------------------------

class NotFoundError(MarketplaceError):
    code = "not_found"


class GigNotFound(NotFoundError):
    code = "gig_not_found"


class OrderNotFound(NotFoundError):
    code = "order_not_found"


class ReviewNotFound(NotFoundError):
    code = "review_not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


# -- Conflict ---------------------------------------------------------------

class ConflictError(MarketplaceError):
    code = "conflict"


class AlreadyReviewed(ConflictError):
    code = "already_reviewed"


class OrderNotCompleted(ConflictError):
    code = "order_not_completed"


class IdempotencyKeyReused(ConflictError):
    """Idempotency key already bound to a different create-order request."""
    code = "idempotency_key_reused"


class DuplicateRecord(ConflictError):
    """A unique index in the store rejected an insert."""
    code = "duplicate_record"


# -- Integrity --------------------------------------------------------------

class IntegrityViolation(MarketplaceError):
    """A derived value came out impossible. Fatal: the write is aborted."""
    code = "integrity_violation"


# -- Transient persistence ----------------------------------------------------

class TransientPersistenceError(MarketplaceError):
    """Retryable failure talking to the store."""
    code = "transient_persistence_error"


class PersistenceTimeout(TransientPersistenceError):
    code = "persistence_timeout"


class LockTimeout(TransientPersistenceError):
    """A serialization scope could not be entered within its bounded wait."""
    code = "lock_timeout"
