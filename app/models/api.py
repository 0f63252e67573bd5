"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class MovementType(str, Enum):
    """Movement type enumeration."""

    # Verification movements (not token-bearing)
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PHONE_VERIFICATION = "PHONE_VERIFICATION"
    ACCOUNT_VERIFICATION = "ACCOUNT_VERIFICATION"

    # Token movements
    PURCHASED = "TOKENS_PURCHASED"
    CONSUMED = "TOKENS_CONSUMED"
    REFUNDED = "TOKENS_REFUNDED"
    BONUS = "TOKENS_BONUS"
    ADJUSTMENT = "TOKENS_ADJUSTMENT"

    @property
    def is_token_movement(self) -> bool:
        """Whether this movement affects the token balance."""
        return self.value.startswith("TOKENS_")


class MovementStatus(str, Enum):
    """Movement status enumeration."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXPIRED = "EXPIRED"


class DiscountType(str, Enum):
    """Discount code type enumeration."""

    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    BONUS_TOKENS = "BONUS_TOKENS"


class CodeRejectionReason(str, Enum):
    """Reasons a discount code is not applicable, in evaluation order."""

    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CODE_DISABLED = "CODE_DISABLED"
    NOT_YET_VALID = "NOT_YET_VALID"
    EXPIRED = "EXPIRED"
    CURRENCY_NOT_APPLICABLE = "CURRENCY_NOT_APPLICABLE"
    MINIMUM_PURCHASE_NOT_MET = "MINIMUM_PURCHASE_NOT_MET"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    ACCOUNT_LIMIT_REACHED = "ACCOUNT_LIMIT_REACHED"
    FIRST_PURCHASE_ONLY = "FIRST_PURCHASE_ONLY"
    VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"
    ACCOUNT_NOT_ELIGIBLE = "ACCOUNT_NOT_ELIGIBLE"


TOKEN_MOVEMENT_TYPES = (
    MovementType.PURCHASED,
    MovementType.CONSUMED,
    MovementType.REFUNDED,
    MovementType.BONUS,
    MovementType.ADJUSTMENT,
)


def _normalize_codes(values: list[str]) -> list[str]:
    return [v.strip().upper() for v in values if v.strip()]


# ============================================================================
# Account Snapshot (supplied by the caller, never fetched)
# ============================================================================


class AccountSnapshotModel(BaseModel):
    """Read-only account attributes supplied by the account layer."""

    account_id: UUID
    currency: str = Field(..., min_length=3, max_length=3)
    country: str | None = Field(None, min_length=2, max_length=3)
    is_verified: bool = False
    account_age_days: int = Field(0, ge=0)
    is_first_purchase: bool = False

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper()

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str | None) -> str | None:
        """Country codes are stored uppercase."""
        return v.upper() if v else v


# ============================================================================
# Ledger Models
# ============================================================================


class BalanceResponse(BaseModel):
    """Token balance for an account."""

    account_id: UUID
    total_available: int
    total_purchased: int
    total_bonus: int
    total_consumed: int
    total_refunded: int
    updated_at: datetime | None = None


class MovementResponse(BaseModel):
    """Single movement."""

    id: int
    uid: UUID
    account_id: UUID
    type: MovementType
    status: MovementStatus
    amount: int
    signed_amount: int
    metadata: dict[str, object]
    created_by: str | None
    created_at: datetime


class PaginationResponse(BaseModel):
    """Pagination block shared by list responses."""

    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class MovementListResponse(BaseModel):
    """Paginated movement list."""

    movements: list[MovementResponse]
    pagination: PaginationResponse


class LedgerWriteResponse(BaseModel):
    """Result of a ledger write: the new balance and the movement created."""

    balance: BalanceResponse
    movement: MovementResponse


class ReconciliationResponse(BaseModel):
    """Stored balance compared against a replay of all movements."""

    account_id: UUID
    stored: BalanceResponse
    replayed: BalanceResponse
    movement_count: int
    consistent: bool


class BonusGrantRequest(BaseModel):
    """POST /v1/ledger/accounts/{account_id}/bonus request body."""

    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("description")
    @classmethod
    def strip_description(cls, v: str) -> str:
        """Reject whitespace-only descriptions."""
        v = v.strip()
        if not v:
            raise ValueError("description cannot be blank")
        return v


class AdjustmentRequest(BaseModel):
    """POST /v1/ledger/accounts/{account_id}/adjustments request body."""

    delta: int
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        """An adjustment must move the balance."""
        if v == 0:
            raise ValueError("delta cannot be zero")
        return v


class ConsumptionRequest(BaseModel):
    """POST /v1/ledger/accounts/{account_id}/consumptions request body."""

    amount: int = Field(..., gt=0)
    service_type: str | None = Field(None, max_length=100)
    description: str | None = Field(None, max_length=500)


class RefundRequest(BaseModel):
    """POST /v1/ledger/accounts/{account_id}/refunds request body."""

    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)


# ============================================================================
# Pricing Models
# ============================================================================


class PurchaseQuoteRequest(BaseModel):
    """POST /v1/pricing/quote request body."""

    account: AccountSnapshotModel
    token_quantity: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    unit_price_minor: int = Field(..., gt=0)
    discount_code: str | None = Field(None, min_length=1, max_length=64)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper()


class TokenPurchaseRequest(PurchaseQuoteRequest):
    """POST /v1/pricing/purchases request body."""

    payment_id: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=500)


class BulkDiscountApplicationResponse(BaseModel):
    """Bulk discount applied to a purchase."""

    bulk_discount_id: int
    name: str
    tier_label: str | None
    percentage: Decimal
    amount_minor: int


class CodeDiscountApplicationResponse(BaseModel):
    """Discount code applied to a purchase."""

    discount_code_id: int
    code: str
    type: DiscountType
    percentage: Decimal | None
    amount_minor: int
    bonus_tokens: int


class PriceQuoteResponse(BaseModel):
    """Price breakdown for a token purchase."""

    account_id: UUID
    token_quantity: int
    currency: str
    unit_price_minor: int
    subtotal_minor: int
    bulk_discount: BulkDiscountApplicationResponse | None
    code_discount: CodeDiscountApplicationResponse | None
    post_bulk_subtotal_minor: int
    total_discount_minor: int
    total_minor: int
    floor_applied: bool
    unclamped_total_minor: int


class PurchaseResponse(BaseModel):
    """Committed token purchase."""

    quote: PriceQuoteResponse
    purchase_movement: MovementResponse
    bonus_movement: MovementResponse | None
    balance: BalanceResponse


# ============================================================================
# Discount Code Models
# ============================================================================


class CodeResolveRequest(BaseModel):
    """POST /v1/discount-codes/resolve request body."""

    code: str = Field(..., min_length=1, max_length=64)
    account: AccountSnapshotModel
    token_quantity: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    unit_price_minor: int = Field(..., gt=0)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is uppercase ISO 4217 code."""
        return v.upper()


class CodeResolutionResponse(BaseModel):
    """Outcome of validating a discount code against a candidate purchase."""

    applicable: bool
    code: str
    discount_amount_minor: int
    bonus_tokens: int
    reason: CodeRejectionReason | None


class DiscountCodeCreateRequest(BaseModel):
    """POST /admin/discount-codes request body."""

    code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: DiscountType
    value: Decimal = Field(..., gt=0)
    applicable_currencies: list[str] = Field(default_factory=list)
    minimum_purchase_minor: int | None = Field(None, ge=0)
    maximum_discount_minor: int | None = Field(None, ge=0)
    max_uses: int | None = Field(None, ge=1)
    max_uses_per_account: int | None = Field(None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    requires_verification: bool = False
    first_purchase_only: bool = False
    restrict_to_accounts: list[UUID] = Field(default_factory=list)
    exclude_accounts: list[UUID] = Field(default_factory=list)
    is_enabled: bool = True
    terms_and_conditions: str | None = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        """Codes are unique case-insensitively."""
        return v.strip().upper()

    @field_validator("applicable_currencies")
    @classmethod
    def normalize_currencies(cls, v: list[str]) -> list[str]:
        """Currencies are stored uppercase."""
        return _normalize_codes(v)

    @model_validator(mode="after")
    def validate_shape(self) -> "DiscountCodeCreateRequest":
        """Cross-field checks."""
        if self.type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("percentage value cannot exceed 100")
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValueError("valid_from must be before valid_until")
        return self


class DiscountCodeResponse(BaseModel):
    """Discount code."""

    id: int
    uid: UUID
    code: str
    name: str
    description: str | None
    type: DiscountType
    value: Decimal
    applicable_currencies: list[str]
    minimum_purchase_minor: int | None
    maximum_discount_minor: int | None
    max_uses: int | None
    max_uses_per_account: int | None
    current_uses: int
    valid_from: datetime | None
    valid_until: datetime | None
    requires_verification: bool
    first_purchase_only: bool
    restrict_to_accounts: list[UUID]
    exclude_accounts: list[UUID]
    is_enabled: bool
    terms_and_conditions: str | None
    created_by: str | None
    created_at: datetime


class DiscountCodeListResponse(BaseModel):
    """Paginated discount code list."""

    discount_codes: list[DiscountCodeResponse]
    pagination: PaginationResponse


class DiscountCodeStatsResponse(BaseModel):
    """Aggregated usage of a discount code."""

    discount_code_id: int
    total_uses: int
    total_discount_minor: int
    total_tokens: int


class EnabledToggleRequest(BaseModel):
    """Enable or disable an entity."""

    is_enabled: bool


# ============================================================================
# Bulk Discount Models
# ============================================================================


class DiscountTierModel(BaseModel):
    """A token-quantity range mapped to a discount percentage."""

    min_tokens: int = Field(..., ge=0)
    max_tokens: int | None = Field(None, ge=1)
    discount_percentage: Decimal = Field(..., ge=0, le=100)
    label: str | None = Field(None, max_length=100)
    is_enabled: bool = True


class BulkDiscountCreateRequest(BaseModel):
    """POST /admin/bulk-discounts request body."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    is_default: bool = False
    priority: int | None = None
    tiers: list[DiscountTierModel] = Field(..., min_length=1)
    applicable_currencies: list[str] = Field(default_factory=list)
    applicable_countries: list[str] = Field(default_factory=list)
    requires_verification: bool = False
    min_account_age_days: int | None = Field(None, ge=0)
    restrict_to_accounts: list[UUID] = Field(default_factory=list)
    exclude_accounts: list[UUID] = Field(default_factory=list)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_enabled: bool = True

    @field_validator("applicable_currencies", "applicable_countries")
    @classmethod
    def normalize_codes(cls, v: list[str]) -> list[str]:
        """Currency and country codes are stored uppercase."""
        return _normalize_codes(v)


class TiersUpdateRequest(BaseModel):
    """PUT /admin/bulk-discounts/{id}/tiers request body."""

    tiers: list[DiscountTierModel] = Field(..., min_length=1)


class PriorityUpdateRequest(BaseModel):
    """PUT /admin/bulk-discounts/{id}/priority request body."""

    priority: int


class BulkDiscountStatsResponse(BaseModel):
    """Bulk discount usage statistics."""

    total_uses: int
    total_tokens_sold: int
    total_discount_given_minor: int
    last_used_at: datetime | None


class BulkDiscountResponse(BaseModel):
    """Bulk discount schedule."""

    id: int
    uid: UUID
    name: str
    description: str | None
    is_default: bool
    priority: int
    tiers: list[DiscountTierModel]
    applicable_currencies: list[str]
    applicable_countries: list[str]
    requires_verification: bool
    min_account_age_days: int | None
    restrict_to_accounts: list[UUID]
    exclude_accounts: list[UUID]
    valid_from: datetime | None
    valid_until: datetime | None
    is_enabled: bool
    stats: BulkDiscountStatsResponse
    created_by: str | None
    created_at: datetime


class BulkDiscountListResponse(BaseModel):
    """Paginated bulk discount list."""

    bulk_discounts: list[BulkDiscountResponse]
    pagination: PaginationResponse


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
