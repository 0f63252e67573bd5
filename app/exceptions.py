"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Taxonomy:
    ValidationError           malformed input, rejected before any write
    ConstraintViolationError  business-rule rejection with a reason code
    NotFoundError             unknown admin entity
    ConcurrencyConflictError  lost an optimistic race, retry with fresh state
    ExternalDependencyError   store unreachable, the only fatal class
"""


class LedgerError(Exception):
    """Base exception for all ledger and pricing errors."""

    pass


# ============================================================================
# Validation Errors
# ============================================================================


class ValidationError(LedgerError):
    """Raised when input is malformed. Safe to retry after correction."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Validation failed: {message}")


class InvalidAmountError(ValidationError):
    """Raised when a token or money amount is not strictly positive."""

    def __init__(self, amount: int, field: str = "amount") -> None:
        self.amount = amount
        self.field = field
        super().__init__(f"{field} must be positive, got {amount}")


class MissingFieldError(ValidationError):
    """Raised when a required field is missing or blank."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} is required")


class InvalidTierConfigurationError(ValidationError):
    """Raised when bulk discount tiers are malformed or overlap."""

    pass


class DuplicateDiscountCodeError(ValidationError):
    """Raised when a discount code already exists."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Discount code {code} already exists")


class DuplicateBulkDiscountNameError(ValidationError):
    """Raised when a bulk discount name is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Bulk discount name {name!r} already exists")


# ============================================================================
# Business Rule Errors
# ============================================================================


class ConstraintViolationError(LedgerError):
    """Raised when a business rule rejects the operation. Never auto-retried."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        self.message = message or reason
        super().__init__(f"Constraint violation [{reason}]: {self.message}")


class InsufficientTokensError(ConstraintViolationError):
    """Raised when a debit would make the available balance negative."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            "INSUFFICIENT_TOKENS",
            f"Insufficient tokens. Available: {available}, Required: {required}",
        )


class NotFoundError(LedgerError):
    """Raised when an admin lookup targets an unknown entity."""

    def __init__(self, resource: str, identifier: object) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


# ============================================================================
# Store Errors
# ============================================================================


class ConcurrencyConflictError(LedgerError):
    """Raised when a concurrent modification won the race. Transient."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class ExternalDependencyError(LedgerError):
    """Raised when the balance store cannot be reached."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"External dependency unavailable: {message}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
