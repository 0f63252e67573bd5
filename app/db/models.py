"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations. The two JSONB
columns (movement metadata, bulk discount tiers) are serialized from typed
domain dataclasses at the service boundary.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import DiscountType, MovementStatus, MovementType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _str_enum(enum_cls: type, name: str, length: int) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Movement(Base):
    """
    ORM model for movements table.

    Append-only ledger of every balance-affecting event. Rows are never
    updated or deleted; corrections are new ADJUSTMENT rows.
    """

    __tablename__ = "movements"

    # Sequence id breaks created_at ties
    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    uid: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    account_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    movement_type: Mapped[MovementType] = mapped_column(
        "type", _str_enum(MovementType, "movement_type", 30), nullable=False
    )
    status: Mapped[MovementStatus] = mapped_column(
        _str_enum(MovementStatus, "movement_status", 20), nullable=False
    )

    # Unsigned token amount; direction is implied by type
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Note: Database column is "metadata", but Python uses "movement_metadata"
    # to avoid SQLAlchemy conflicts
    movement_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    # Load the database-assigned created_at back on flush
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_movement_amount_positive"),
        Index("idx_movements_account_created", "account_id", "created_at", "id"),
        Index("idx_movements_type", "type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Movement(id={self.id}, account_id={self.account_id}, "
            f"type={self.movement_type}, amount={self.amount})>"
        )


class TokenBalance(Base):
    """
    ORM model for token_balances table.

    One denormalized running total per account, keyed by account_id.
    total_available is always derived from the four buckets.
    """

    __tablename__ = "token_balances"

    account_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    uid: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    total_available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_bonus: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_consumed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("total_available >= 0", name="ck_token_balance_available_non_negative"),
        CheckConstraint("total_purchased >= 0", name="ck_token_balance_purchased_non_negative"),
        CheckConstraint("total_bonus >= 0", name="ck_token_balance_bonus_non_negative"),
        CheckConstraint("total_consumed >= 0", name="ck_token_balance_consumed_non_negative"),
        CheckConstraint("total_refunded >= 0", name="ck_token_balance_refunded_non_negative"),
        CheckConstraint(
            "total_available = total_purchased + total_bonus - total_consumed - total_refunded",
            name="ck_token_balance_consistency",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenBalance(account_id={self.account_id}, "
            f"available={self.total_available})>"
        )


class DiscountCode(Base):
    """
    ORM model for discount_codes table.

    Promotional codes keyed uniquely by their upper-cased code.
    """

    __tablename__ = "discount_codes"

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    uid: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_type: Mapped[DiscountType] = mapped_column(
        "type", _str_enum(DiscountType, "discount_type", 20), nullable=False
    )
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Applicability
    applicable_currencies: Mapped[list[str]] = mapped_column(
        ARRAY(String(3)), nullable=False, default=list
    )
    minimum_purchase_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    maximum_discount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Usage limits
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses_per_account: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Validity window
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Account restrictions
    requires_verification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_purchase_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    restrict_to_accounts: Mapped[list[UUID]] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=False, default=list
    )
    exclude_accounts: Mapped[list[UUID]] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=False, default=list
    )

    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Audit
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("code", name="uq_discount_codes_code"),
        CheckConstraint("value > 0", name="ck_discount_code_value_positive"),
        CheckConstraint("current_uses >= 0", name="ck_discount_code_uses_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_discount_code_uses_within_limit",
        ),
        Index("idx_discount_codes_enabled", "is_enabled"),
        Index("idx_discount_codes_valid_until", "valid_until"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DiscountCode(id={self.id}, code={self.code}, "
            f"type={self.discount_type}, uses={self.current_uses})>"
        )


class DiscountCodeAccountUse(Base):
    """
    ORM model for discount_code_account_uses table.

    Per-account use counter, incremented by a conditional upsert so the
    per-account limit holds under concurrent purchases.
    """

    __tablename__ = "discount_code_account_uses"

    discount_code_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("discount_codes.id", ondelete="RESTRICT"), primary_key=True
    )
    account_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("uses >= 0", name="ck_code_account_uses_non_negative"),)


class DiscountCodeUsage(Base):
    """
    ORM model for discount_code_usages table.

    Append-only usage log, one row per committed purchase that used a code.
    """

    __tablename__ = "discount_code_usages"

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    discount_code_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("discount_codes.id", ondelete="RESTRICT"), nullable=False
    )
    account_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    movement_uid: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    tokens_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_applied_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_code_usages_code", "discount_code_id", "used_at"),
        Index("idx_code_usages_account", "account_id"),
    )


class BulkDiscount(Base):
    """
    ORM model for bulk_discounts table.

    Quantity-tiered discount schedules. At most one row has is_default set;
    the partial unique index backs the application-level lock.
    """

    __tablename__ = "bulk_discounts"

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    uid: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), nullable=False, unique=True, default=uuid4
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ordered by min_tokens: [{min_tokens, max_tokens, discount_percentage, label, is_enabled}]
    tiers: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)

    # Eligibility
    applicable_currencies: Mapped[list[str]] = mapped_column(
        ARRAY(String(3)), nullable=False, default=list
    )
    applicable_countries: Mapped[list[str]] = mapped_column(
        ARRAY(String(3)), nullable=False, default=list
    )
    requires_verification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_account_age_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    restrict_to_accounts: Mapped[list[UUID]] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=False, default=list
    )
    exclude_accounts: Mapped[list[UUID]] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=False, default=list
    )

    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Usage statistics
    total_uses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_tokens_sold: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_discount_given_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Audit
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_bulk_discounts_name"),
        CheckConstraint(
            "min_account_age_days IS NULL OR min_account_age_days >= 0",
            name="ck_bulk_discount_min_age_non_negative",
        ),
        Index(
            "uq_bulk_discounts_single_default",
            "is_default",
            unique=True,
            postgresql_where=text("is_default"),
        ),
        Index("idx_bulk_discounts_enabled_priority", "is_enabled", "priority"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BulkDiscount(id={self.id}, name={self.name}, "
            f"priority={self.priority}, is_default={self.is_default})>"
        )
