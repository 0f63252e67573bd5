"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Movement metadata is the one free-form attribute set; it is modelled as a typed
dataclass and only flattened to JSON at the persistence boundary.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from app.exceptions import InvalidAmountError, MissingFieldError, ValidationError
from app.models.api import (
    CodeRejectionReason,
    DiscountType,
    MovementStatus,
    MovementType,
)

CREDIT_TYPES = frozenset({MovementType.PURCHASED, MovementType.BONUS})
DEBIT_TYPES = frozenset({MovementType.CONSUMED, MovementType.REFUNDED})
DESCRIPTION_REQUIRED = frozenset(
    {MovementType.BONUS, MovementType.REFUNDED, MovementType.ADJUSTMENT}
)


# ============================================================================
# Account Snapshot
# ============================================================================


@dataclass(frozen=True)
class AccountSnapshot:
    """Read-only account attributes supplied by the caller."""

    account_id: UUID
    currency: str
    country: str | None = None
    is_verified: bool = False
    account_age_days: int = 0
    is_first_purchase: bool = False

    def __post_init__(self) -> None:
        """Validate snapshot fields."""
        if len(self.currency) != 3:
            raise ValidationError(f"Invalid currency code: {self.currency}")
        if self.account_age_days < 0:
            raise ValidationError(f"account_age_days cannot be negative: {self.account_age_days}")


# ============================================================================
# Balance
# ============================================================================


@dataclass(frozen=True)
class BalanceDelta:
    """Non-negative bucket increments produced by one movement."""

    purchased: int = 0
    bonus: int = 0
    consumed: int = 0
    refunded: int = 0

    def __post_init__(self) -> None:
        """Buckets only ever grow."""
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValidationError(f"Bucket increment {f.name} cannot be negative")

    @property
    def available(self) -> int:
        """Net change to the available balance."""
        return self.purchased + self.bonus - self.consumed - self.refunded


@dataclass(frozen=True)
class TokenBalance:
    """Immutable token balance snapshot for one account."""

    account_id: UUID
    total_available: int = 0
    total_purchased: int = 0
    total_bonus: int = 0
    total_consumed: int = 0
    total_refunded: int = 0
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate bucket and availability invariants."""
        for name in (
            "total_available",
            "total_purchased",
            "total_bonus",
            "total_consumed",
            "total_refunded",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative: {getattr(self, name)}")
        expected = (
            self.total_purchased + self.total_bonus - self.total_consumed - self.total_refunded
        )
        if self.total_available != expected:
            raise ValueError(
                f"total_available {self.total_available} does not match buckets ({expected})"
            )

    @classmethod
    def empty(cls, account_id: UUID) -> "TokenBalance":
        """Zero-valued balance of an account with no movements."""
        return cls(account_id=account_id)


# ============================================================================
# Movements
# ============================================================================


@dataclass(frozen=True)
class MovementMetadata:
    """Write-once movement attributes."""

    token_amount: int | None = None
    description: str | None = None
    delta: int | None = None  # Signed, ADJUSTMENT only
    service_type: str | None = None

    # Price breakdown (PURCHASED only)
    currency: str | None = None
    unit_price_minor: int | None = None
    original_price_minor: int | None = None
    discount_amount_minor: int | None = None
    bulk_discount_id: int | None = None
    bulk_discount_amount_minor: int | None = None
    bulk_discount_percentage: Decimal | None = None
    discount_code: str | None = None
    discount_code_id: int | None = None
    code_discount_amount_minor: int | None = None
    code_discount_percentage: Decimal | None = None
    total_charged_minor: int | None = None
    floor_applied: bool | None = None
    unclamped_total_minor: int | None = None

    # Links
    payment_id: str | None = None
    related_movement_uid: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Flatten to a JSON-safe mapping, dropping unset attributes."""
        out: dict[str, Any] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            out[key] = str(value) if isinstance(value, Decimal) else value
        return out

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> "MovementMetadata":
        """Rebuild from the stored mapping, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("bulk_discount_percentage", "code_discount_percentage"):
            if values.get(key) is not None:
                values[key] = Decimal(str(values[key]))
        return cls(**values)


@dataclass(frozen=True)
class MovementIntent:
    """A movement before persistence - validated on construction."""

    account_id: UUID
    movement_type: MovementType
    amount: int
    metadata: MovementMetadata = field(default_factory=MovementMetadata)
    created_by: str | None = None
    status: MovementStatus = MovementStatus.APPROVED

    def __post_init__(self) -> None:
        """Reject malformed movements before any write."""
        if not self.movement_type.is_token_movement:
            raise ValidationError(f"{self.movement_type.value} does not affect token balances")
        if self.amount <= 0:
            raise InvalidAmountError(self.amount)
        if self.movement_type in DESCRIPTION_REQUIRED:
            if not self.metadata.description or not self.metadata.description.strip():
                raise MissingFieldError("description")
        if self.movement_type == MovementType.ADJUSTMENT:
            if self.metadata.delta is None or self.metadata.delta == 0:
                raise MissingFieldError("delta")
            if abs(self.metadata.delta) != self.amount:
                raise ValidationError(
                    f"Adjustment delta {self.metadata.delta} does not match amount {self.amount}"
                )


@dataclass(frozen=True)
class MovementData:
    """Immutable movement after persistence."""

    movement_id: int
    uid: UUID
    account_id: UUID
    movement_type: MovementType
    status: MovementStatus
    amount: int
    metadata: MovementMetadata
    created_by: str | None
    created_at: datetime

    @property
    def signed_amount(self) -> int:
        """Token change as seen by the available balance."""
        if self.movement_type in CREDIT_TYPES:
            return self.amount
        if self.movement_type in DEBIT_TYPES:
            return -self.amount
        if self.movement_type == MovementType.ADJUSTMENT:
            return self.metadata.delta or 0
        return 0


@dataclass(frozen=True)
class LedgerEntry:
    """Result of a ledger write: the movement and the balance it produced."""

    balance: TokenBalance
    movement: MovementData


@dataclass(frozen=True)
class MovementPage:
    """One page of an account's movements, newest first."""

    movements: list[MovementData]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class ReconciliationReport:
    """Stored balance versus a replay of the movement log."""

    account_id: UUID
    stored: TokenBalance
    replayed: TokenBalance
    movement_count: int

    @property
    def consistent(self) -> bool:
        return (
            self.stored.total_available == self.replayed.total_available
            and self.stored.total_purchased == self.replayed.total_purchased
            and self.stored.total_bonus == self.replayed.total_bonus
            and self.stored.total_consumed == self.replayed.total_consumed
            and self.stored.total_refunded == self.replayed.total_refunded
        )


# ============================================================================
# Bulk Discounts
# ============================================================================


@dataclass(frozen=True)
class DiscountTier:
    """A token-quantity range mapped to a discount percentage."""

    min_tokens: int
    discount_percentage: Decimal
    max_tokens: int | None = None
    label: str | None = None
    is_enabled: bool = True

    def covers(self, token_quantity: int) -> bool:
        """Whether the quantity falls inside [min_tokens, max_tokens]."""
        if token_quantity < self.min_tokens:
            return False
        return self.max_tokens is None or token_quantity <= self.max_tokens


@dataclass(frozen=True)
class BulkDiscountStats:
    """Usage statistics of a bulk discount schedule."""

    total_uses: int = 0
    total_tokens_sold: int = 0
    total_discount_given_minor: int = 0
    last_used_at: datetime | None = None


@dataclass(frozen=True)
class BulkDiscountIntent:
    """A bulk discount schedule before persistence."""

    name: str
    tiers: tuple[DiscountTier, ...]
    description: str | None = None
    is_default: bool = False
    priority: int = 0
    applicable_currencies: tuple[str, ...] = ()
    applicable_countries: tuple[str, ...] = ()
    requires_verification: bool = False
    min_account_age_days: int | None = None
    restrict_to_accounts: tuple[UUID, ...] = ()
    exclude_accounts: tuple[UUID, ...] = ()
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_enabled: bool = True

    def __post_init__(self) -> None:
        """Validate the schedule shape (tier overlap is checked by the resolver)."""
        if not self.name or not self.name.strip():
            raise MissingFieldError("name")
        if not self.tiers:
            raise MissingFieldError("tiers")
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValidationError("valid_from must be before valid_until")


@dataclass(frozen=True)
class BulkDiscountData:
    """Immutable bulk discount schedule after persistence."""

    bulk_discount_id: int
    uid: UUID
    name: str
    description: str | None
    is_default: bool
    priority: int
    tiers: tuple[DiscountTier, ...]
    applicable_currencies: tuple[str, ...]
    applicable_countries: tuple[str, ...]
    requires_verification: bool
    min_account_age_days: int | None
    restrict_to_accounts: tuple[UUID, ...]
    exclude_accounts: tuple[UUID, ...]
    valid_from: datetime | None
    valid_until: datetime | None
    is_enabled: bool
    stats: BulkDiscountStats
    created_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class TierSelection:
    """The schedule and tier chosen for a purchase."""

    bulk_discount_id: int
    bulk_discount_name: str
    tier: DiscountTier


@dataclass(frozen=True)
class BulkDiscountPage:
    """One page of bulk discount schedules."""

    bulk_discounts: list[BulkDiscountData]
    page: int
    limit: int
    total: int


# ============================================================================
# Discount Codes
# ============================================================================


@dataclass(frozen=True)
class DiscountCodeIntent:
    """A discount code before persistence."""

    code: str
    name: str
    discount_type: DiscountType
    value: Decimal
    description: str | None = None
    applicable_currencies: tuple[str, ...] = ()
    minimum_purchase_minor: int | None = None
    maximum_discount_minor: int | None = None
    max_uses: int | None = None
    max_uses_per_account: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    requires_verification: bool = False
    first_purchase_only: bool = False
    restrict_to_accounts: tuple[UUID, ...] = ()
    exclude_accounts: tuple[UUID, ...] = ()
    is_enabled: bool = True
    terms_and_conditions: str | None = None

    def __post_init__(self) -> None:
        """Validate code constraints."""
        if not self.code or not self.code.strip():
            raise MissingFieldError("code")
        if not self.name or not self.name.strip():
            raise MissingFieldError("name")
        if self.value <= 0:
            raise InvalidAmountError(int(self.value), field="value")
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValidationError(f"Percentage value cannot exceed 100: {self.value}")
        if self.discount_type == DiscountType.BONUS_TOKENS and self.value != int(self.value):
            raise ValidationError(f"Bonus token value must be a whole number: {self.value}")
        if self.max_uses is not None and self.max_uses < 1:
            raise ValidationError("max_uses must be at least 1")
        if self.max_uses_per_account is not None and self.max_uses_per_account < 1:
            raise ValidationError("max_uses_per_account must be at least 1")
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValidationError("valid_from must be before valid_until")


@dataclass(frozen=True)
class DiscountCodeData:
    """Immutable discount code after persistence."""

    discount_code_id: int
    uid: UUID
    code: str
    name: str
    description: str | None
    discount_type: DiscountType
    value: Decimal
    applicable_currencies: tuple[str, ...]
    minimum_purchase_minor: int | None
    maximum_discount_minor: int | None
    max_uses: int | None
    max_uses_per_account: int | None
    current_uses: int
    valid_from: datetime | None
    valid_until: datetime | None
    requires_verification: bool
    first_purchase_only: bool
    restrict_to_accounts: tuple[UUID, ...]
    exclude_accounts: tuple[UUID, ...]
    is_enabled: bool
    terms_and_conditions: str | None
    created_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class CodeResolution:
    """Outcome of evaluating a code against a candidate purchase."""

    code: str
    applicable: bool
    discount_minor: int = 0
    bonus_tokens: int = 0
    reason: CodeRejectionReason | None = None
    discount_code: DiscountCodeData | None = None

    @classmethod
    def rejected(
        cls,
        code: str,
        reason: CodeRejectionReason,
        discount_code: DiscountCodeData | None = None,
    ) -> "CodeResolution":
        return cls(code=code, applicable=False, reason=reason, discount_code=discount_code)


@dataclass(frozen=True)
class DiscountCodePage:
    """One page of discount codes."""

    discount_codes: list[DiscountCodeData]
    page: int
    limit: int
    total: int


@dataclass(frozen=True)
class DiscountCodeUsageStats:
    """Aggregated usage of one discount code."""

    discount_code_id: int
    total_uses: int
    total_discount_minor: int
    total_tokens: int


# ============================================================================
# Pricing
# ============================================================================


def percentage_of(amount_minor: int, percentage: Decimal) -> int:
    """Percentage of a minor-unit amount, rounded half up to a whole minor unit."""
    raw = Decimal(amount_minor) * percentage / Decimal(100)
    return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class BulkDiscountApplication:
    """Bulk discount reported on a quote."""

    bulk_discount_id: int
    name: str
    tier_label: str | None
    percentage: Decimal
    amount_minor: int


@dataclass(frozen=True)
class CodeDiscountApplication:
    """Discount code reported on a quote."""

    discount_code_id: int
    code: str
    discount_type: DiscountType
    percentage: Decimal | None
    amount_minor: int
    bonus_tokens: int


@dataclass(frozen=True)
class PriceQuote:
    """Price breakdown of a token purchase."""

    account_id: UUID
    token_quantity: int
    currency: str
    unit_price_minor: int
    subtotal_minor: int
    bulk_discount: BulkDiscountApplication | None
    code_discount: CodeDiscountApplication | None
    post_bulk_subtotal_minor: int
    total_minor: int
    floor_applied: bool
    unclamped_total_minor: int

    @property
    def total_discount_minor(self) -> int:
        """Sum of both discounts actually granted."""
        return self.subtotal_minor - self.total_minor

    @property
    def bonus_tokens(self) -> int:
        return self.code_discount.bonus_tokens if self.code_discount else 0


@dataclass(frozen=True)
class PurchaseResult:
    """Committed token purchase."""

    quote: PriceQuote
    purchase_movement: MovementData
    bonus_movement: MovementData | None
    balance: TokenBalance
