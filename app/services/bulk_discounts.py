"""
Bulk Discount Service - Quantity-tiered discount schedules.

NO DICTIONARIES - Tiers are typed dataclasses, flattened to JSON only at the
persistence boundary.

Exactly one schedule may be the default. Changing it takes a transaction-scoped
advisory lock, clears the current default and sets the new one in the same
transaction; a partial unique index rejects any second default that slips past.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.errors import get_constraint_name, translated_errors
from app.db.models import BulkDiscount
from app.db.session import unit_of_work
from app.exceptions import (
    ConcurrencyConflictError,
    DuplicateBulkDiscountNameError,
    InvalidTierConfigurationError,
    NotFoundError,
    ValidationError,
    WriteVerificationError,
)
from app.models.domain import (
    AccountSnapshot,
    BulkDiscountData,
    BulkDiscountIntent,
    BulkDiscountPage,
    BulkDiscountStats,
    DiscountTier,
    TierSelection,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

# pg_advisory_xact_lock key serializing default changes
DEFAULT_SCHEDULE_LOCK_KEY = 0x42554C4B
SINGLE_DEFAULT_INDEX = "uq_bulk_discounts_single_default"
NAME_CONSTRAINT = "uq_bulk_discounts_name"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Tier Handling (pure)
# ============================================================================


def validate_tiers(tiers: Iterable[DiscountTier]) -> tuple[DiscountTier, ...]:
    """
    Sort tiers by min_tokens and reject malformed or overlapping ranges.

    A tier without max_tokens runs up to the next enabled tier. An explicit
    max_tokens must end before the next enabled tier starts.

    Raises:
        InvalidTierConfigurationError: Empty, malformed or overlapping tiers
    """
    ordered = tuple(sorted(tiers, key=lambda t: t.min_tokens))
    if not ordered:
        raise InvalidTierConfigurationError("At least one tier is required")

    for tier in ordered:
        if tier.min_tokens < 0:
            raise InvalidTierConfigurationError(
                f"min_tokens cannot be negative: {tier.min_tokens}"
            )
        if tier.max_tokens is not None and tier.max_tokens < tier.min_tokens:
            raise InvalidTierConfigurationError(
                f"max_tokens {tier.max_tokens} is below min_tokens {tier.min_tokens}"
            )
        if not Decimal(0) <= tier.discount_percentage <= Decimal(100):
            raise InvalidTierConfigurationError(
                f"discount_percentage must be within 0-100: {tier.discount_percentage}"
            )

    enabled = [t for t in ordered if t.is_enabled]
    for previous, current in zip(enabled, enabled[1:]):
        if previous.min_tokens == current.min_tokens:
            raise InvalidTierConfigurationError(
                f"Two enabled tiers start at {current.min_tokens} tokens"
            )
        if previous.max_tokens is not None and previous.max_tokens >= current.min_tokens:
            raise InvalidTierConfigurationError(
                f"Tier {previous.min_tokens}-{previous.max_tokens} overlaps tier "
                f"starting at {current.min_tokens}"
            )
    return ordered


def select_tier(tiers: Iterable[DiscountTier], token_quantity: int) -> DiscountTier | None:
    """Enabled tier with the greatest min_tokens that covers the quantity."""
    matching = [t for t in tiers if t.is_enabled and t.covers(token_quantity)]
    if not matching:
        return None
    return max(matching, key=lambda t: t.min_tokens)


def is_schedule_eligible(
    schedule: BulkDiscountData,
    account: AccountSnapshot,
    currency: str,
    now: datetime,
) -> bool:
    """Whether a schedule may apply to this account and purchase currency."""
    if not schedule.is_enabled:
        return False
    if schedule.valid_from is not None and now < schedule.valid_from:
        return False
    if schedule.valid_until is not None and now > schedule.valid_until:
        return False
    if schedule.applicable_currencies and currency.upper() not in schedule.applicable_currencies:
        return False
    if schedule.applicable_countries:
        if account.country is None or account.country.upper() not in schedule.applicable_countries:
            return False
    if schedule.requires_verification and not account.is_verified:
        return False
    if (
        schedule.min_account_age_days is not None
        and account.account_age_days < schedule.min_account_age_days
    ):
        return False
    if schedule.restrict_to_accounts and account.account_id not in schedule.restrict_to_accounts:
        return False
    if account.account_id in schedule.exclude_accounts:
        return False
    return True


def select_best(
    schedules: Iterable[BulkDiscountData],
    token_quantity: int,
    currency: str,
    account: AccountSnapshot,
    now: datetime,
) -> TierSelection | None:
    """
    Pick the tier to apply from all configured schedules.

    Eligible non-default schedules with a covering tier compete by highest
    priority (lowest id on ties). The default schedule is used only when none
    of them matched.
    """
    candidates: list[TierSelection] = []
    fallback: TierSelection | None = None

    ranked = sorted(schedules, key=lambda s: (-s.priority, s.bulk_discount_id))
    for schedule in ranked:
        if not is_schedule_eligible(schedule, account, currency, now):
            continue
        tier = select_tier(schedule.tiers, token_quantity)
        if tier is None:
            continue
        selection = TierSelection(
            bulk_discount_id=schedule.bulk_discount_id,
            bulk_discount_name=schedule.name,
            tier=tier,
        )
        if schedule.is_default:
            fallback = fallback or selection
        else:
            candidates.append(selection)

    if candidates:
        return candidates[0]
    return fallback


def tiers_to_json(tiers: Sequence[DiscountTier]) -> list[dict[str, Any]]:
    """Serialize tiers for the JSONB column."""
    return [
        {
            "min_tokens": t.min_tokens,
            "max_tokens": t.max_tokens,
            "discount_percentage": str(t.discount_percentage),
            "label": t.label,
            "is_enabled": t.is_enabled,
        }
        for t in tiers
    ]


def tiers_from_json(data: Sequence[dict[str, Any]] | None) -> tuple[DiscountTier, ...]:
    """Rebuild tiers from the JSONB column."""
    return tuple(
        DiscountTier(
            min_tokens=int(item["min_tokens"]),
            max_tokens=int(item["max_tokens"]) if item.get("max_tokens") is not None else None,
            discount_percentage=Decimal(str(item["discount_percentage"])),
            label=item.get("label"),
            is_enabled=bool(item.get("is_enabled", True)),
        )
        for item in data or []
    )


# ============================================================================
# Bulk Discount Service
# ============================================================================


class BulkDiscountService:
    """Admin operations and resolution of bulk discount schedules."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize bulk discount service with database session."""
        self.session = session

    # ------------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------------

    async def load_active(self, now: datetime | None = None) -> list[BulkDiscountData]:
        """Enabled schedules whose validity window contains now."""
        now = now or _utc_now()
        with translated_errors("bulk_discounts"):
            result = await self.session.execute(
                select(BulkDiscount)
                .where(
                    BulkDiscount.is_enabled.is_(True),
                    or_(BulkDiscount.valid_from.is_(None), BulkDiscount.valid_from <= now),
                    or_(BulkDiscount.valid_until.is_(None), BulkDiscount.valid_until >= now),
                )
                .order_by(BulkDiscount.priority.desc(), BulkDiscount.id.asc())
            )
        return [self._to_domain(row) for row in result.scalars().all()]

    async def resolve_best(
        self,
        token_quantity: int,
        currency: str,
        account: AccountSnapshot,
        now: datetime | None = None,
    ) -> TierSelection | None:
        """Select the bulk tier for a candidate purchase, if any applies."""
        if token_quantity <= 0:
            raise ValidationError(f"token_quantity must be positive, got {token_quantity}")
        now = now or _utc_now()

        schedules = await self.load_active(now)
        selection = select_best(schedules, token_quantity, currency, account, now)

        metrics.record_tier_selection(selection is not None)
        if selection is not None:
            logger.debug(
                "bulk_tier_selected",
                account_id=str(account.account_id),
                bulk_discount_id=selection.bulk_discount_id,
                min_tokens=selection.tier.min_tokens,
                discount_percentage=str(selection.tier.discount_percentage),
            )
        return selection

    async def record_usage(
        self, bulk_discount_id: int, tokens_sold: int, discount_minor: int
    ) -> None:
        """
        Increment usage statistics of a schedule.

        Runs inside the caller's purchase transaction; does not commit.
        """
        await self.session.execute(
            update(BulkDiscount)
            .where(BulkDiscount.id == bulk_discount_id)
            .values(
                total_uses=BulkDiscount.total_uses + 1,
                total_tokens_sold=BulkDiscount.total_tokens_sold + tokens_sold,
                total_discount_given_minor=BulkDiscount.total_discount_given_minor
                + discount_minor,
                last_used_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------------
    # Admin reads
    # ------------------------------------------------------------------------

    async def get(self, bulk_discount_id: int) -> BulkDiscountData:
        """Get one schedule by id."""
        with translated_errors("bulk_discounts"):
            row = await self._get_row(bulk_discount_id)
        if row is None:
            raise NotFoundError("bulk_discount", bulk_discount_id)
        return self._to_domain(row)

    async def get_default(self) -> BulkDiscountData | None:
        """The schedule currently flagged default, if any."""
        with translated_errors("bulk_discounts"):
            result = await self.session.execute(
                select(BulkDiscount)
                .where(BulkDiscount.is_default.is_(True))
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
        return self._to_domain(row) if row is not None else None

    async def list_bulk_discounts(
        self,
        search: str | None = None,
        is_enabled: bool | None = None,
        is_default: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> BulkDiscountPage:
        """List schedules ordered by priority, highest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be at least 1")

        conditions = []
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(BulkDiscount.name.ilike(pattern), BulkDiscount.description.ilike(pattern))
            )
        if is_enabled is not None:
            conditions.append(BulkDiscount.is_enabled.is_(is_enabled))
        if is_default is not None:
            conditions.append(BulkDiscount.is_default.is_(is_default))

        with translated_errors("bulk_discounts"):
            total = await self.session.scalar(
                select(func.count()).select_from(BulkDiscount).where(*conditions)
            )
            result = await self.session.execute(
                select(BulkDiscount)
                .where(*conditions)
                .order_by(BulkDiscount.priority.desc(), BulkDiscount.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return BulkDiscountPage(
            bulk_discounts=[self._to_domain(row) for row in result.scalars().all()],
            page=page,
            limit=limit,
            total=total or 0,
        )

    # ------------------------------------------------------------------------
    # Admin writes
    # ------------------------------------------------------------------------

    async def create(self, intent: BulkDiscountIntent, actor: str | None) -> BulkDiscountData:
        """
        Create a schedule.

        A schedule created as default replaces the current default atomically.

        Raises:
            InvalidTierConfigurationError: Tiers are malformed or overlap
            DuplicateBulkDiscountNameError: Name already taken
        """
        tiers = validate_tiers(intent.tiers)
        name = intent.name.strip()

        with translated_errors("bulk_discounts"):
            existing = await self.session.scalar(
                select(BulkDiscount.id).where(func.lower(BulkDiscount.name) == name.lower())
            )
        if existing is not None:
            raise DuplicateBulkDiscountNameError(name)

        row = BulkDiscount(
            name=name,
            description=intent.description,
            is_default=False,
            priority=intent.priority,
            tiers=tiers_to_json(tiers),
            applicable_currencies=[c.upper() for c in intent.applicable_currencies],
            applicable_countries=[c.upper() for c in intent.applicable_countries],
            requires_verification=intent.requires_verification,
            min_account_age_days=intent.min_account_age_days,
            restrict_to_accounts=list(intent.restrict_to_accounts),
            exclude_accounts=list(intent.exclude_accounts),
            valid_from=intent.valid_from,
            valid_until=intent.valid_until,
            is_enabled=intent.is_enabled,
            created_by=actor,
            updated_by=actor,
        )

        async with unit_of_work(self.session, "bulk_discounts"):
            self.session.add(row)
            await self._flush_checked(row)
            if intent.is_default:
                await self._swap_default(row.id, actor)

        created = await self.get(row.id)
        logger.info(
            "bulk_discount_created",
            bulk_discount_id=created.bulk_discount_id,
            name=created.name,
            is_default=created.is_default,
            tier_count=len(created.tiers),
            created_by=actor,
        )
        return created

    async def set_as_default(self, bulk_discount_id: int, actor: str | None) -> BulkDiscountData:
        """
        Make a schedule the single default.

        Raises:
            NotFoundError: Unknown schedule
            ConcurrencyConflictError: A concurrent default change won the race
        """
        async with unit_of_work(self.session, SINGLE_DEFAULT_INDEX):
            if await self._get_row(bulk_discount_id) is None:
                raise NotFoundError("bulk_discount", bulk_discount_id)
            previous = await self._swap_default(bulk_discount_id, actor)

        updated = await self.get(bulk_discount_id)
        logger.info(
            "bulk_discount_default_changed",
            bulk_discount_id=bulk_discount_id,
            previous_default_id=previous,
            updated_by=actor,
        )
        return updated

    async def set_enabled(
        self, bulk_discount_id: int, is_enabled: bool, actor: str | None
    ) -> BulkDiscountData:
        """Enable or disable a schedule."""
        await self._update_fields(bulk_discount_id, actor, is_enabled=is_enabled)
        logger.info(
            "bulk_discount_toggled",
            bulk_discount_id=bulk_discount_id,
            is_enabled=is_enabled,
            updated_by=actor,
        )
        return await self.get(bulk_discount_id)

    async def update_tiers(
        self, bulk_discount_id: int, tiers: Iterable[DiscountTier], actor: str | None
    ) -> BulkDiscountData:
        """Replace the tiers of a schedule, re-sorted and re-validated."""
        ordered = validate_tiers(tiers)
        await self._update_fields(bulk_discount_id, actor, tiers=tiers_to_json(ordered))
        logger.info(
            "bulk_discount_tiers_updated",
            bulk_discount_id=bulk_discount_id,
            tier_count=len(ordered),
            updated_by=actor,
        )
        return await self.get(bulk_discount_id)

    async def update_priority(
        self, bulk_discount_id: int, priority: int, actor: str | None
    ) -> BulkDiscountData:
        """Change the priority of a schedule."""
        await self._update_fields(bulk_discount_id, actor, priority=priority)
        return await self.get(bulk_discount_id)

    # ------------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------------

    async def _get_row(self, bulk_discount_id: int) -> BulkDiscount | None:
        result = await self.session.execute(
            select(BulkDiscount)
            .where(BulkDiscount.id == bulk_discount_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _swap_default(self, bulk_discount_id: int, actor: str | None) -> int | None:
        """
        Clear the current default and flag the target, under the advisory lock.

        Must run inside an open transaction. Returns the previous default id.
        """
        await self.session.execute(select(func.pg_advisory_xact_lock(DEFAULT_SCHEDULE_LOCK_KEY)))

        cleared = await self.session.execute(
            update(BulkDiscount)
            .where(BulkDiscount.is_default.is_(True), BulkDiscount.id != bulk_discount_id)
            .values(is_default=False, updated_by=actor, updated_at=func.now())
            .returning(BulkDiscount.id)
            .execution_options(synchronize_session=False)
        )
        previous = cleared.scalar_one_or_none()

        await self.session.execute(
            update(BulkDiscount)
            .where(BulkDiscount.id == bulk_discount_id)
            .values(is_default=True, updated_by=actor, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return previous

    async def _update_fields(self, bulk_discount_id: int, actor: str | None, **values: Any) -> None:
        async with unit_of_work(self.session, "bulk_discounts"):
            result = await self.session.execute(
                update(BulkDiscount)
                .where(BulkDiscount.id == bulk_discount_id)
                .values(updated_by=actor, updated_at=func.now(), **values)
                .returning(BulkDiscount.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError("bulk_discount", bulk_discount_id)

    async def _flush_checked(self, row: BulkDiscount) -> None:
        """Flush a new schedule, mapping a lost name race to a duplicate error."""
        try:
            await self.session.flush()
        except IntegrityError as exc:
            constraint = get_constraint_name(exc)
            if constraint == NAME_CONSTRAINT:
                raise DuplicateBulkDiscountNameError(row.name) from exc
            if constraint == SINGLE_DEFAULT_INDEX:
                raise ConcurrencyConflictError(SINGLE_DEFAULT_INDEX) from exc
            raise
        if row.id is None:
            raise WriteVerificationError(f"Bulk discount {row.name!r} has no id after insert")

    def _to_domain(self, row: BulkDiscount) -> BulkDiscountData:
        """Convert ORM model to domain model."""
        return BulkDiscountData(
            bulk_discount_id=row.id,
            uid=row.uid,
            name=row.name,
            description=row.description,
            is_default=row.is_default,
            priority=row.priority,
            tiers=tiers_from_json(row.tiers),
            applicable_currencies=tuple(row.applicable_currencies or ()),
            applicable_countries=tuple(row.applicable_countries or ()),
            requires_verification=row.requires_verification,
            min_account_age_days=row.min_account_age_days,
            restrict_to_accounts=tuple(row.restrict_to_accounts or ()),
            exclude_accounts=tuple(row.exclude_accounts or ()),
            valid_from=row.valid_from,
            valid_until=row.valid_until,
            is_enabled=row.is_enabled,
            stats=BulkDiscountStats(
                total_uses=row.total_uses,
                total_tokens_sold=row.total_tokens_sold,
                total_discount_given_minor=row.total_discount_given_minor,
                last_used_at=row.last_used_at,
            ),
            created_by=row.created_by,
            created_at=row.created_at,
        )
