"""
Discount Code Service - Promotional code evaluation and usage accounting.

NO DICTIONARIES - All operations use strongly typed domain models.

Evaluation is read-only and reports the first failing rule as a distinct
reason. Claiming a code happens inside the purchase transaction: the global
counter and the per-account counter are both conditional increments, so a
limited code can never be oversold and a failed purchase never counts.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.errors import get_constraint_name, translated_errors
from app.db.models import DiscountCode, DiscountCodeAccountUse, DiscountCodeUsage
from app.db.session import unit_of_work
from app.exceptions import (
    ConstraintViolationError,
    DuplicateDiscountCodeError,
    NotFoundError,
    ValidationError,
    WriteVerificationError,
)
from app.models.api import CodeRejectionReason, DiscountType
from app.models.domain import (
    AccountSnapshot,
    CodeResolution,
    DiscountCodeData,
    DiscountCodeIntent,
    DiscountCodePage,
    DiscountCodeUsageStats,
    percentage_of,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

CODE_CONSTRAINT = "uq_discount_codes_code"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def normalize_code(code: str) -> str:
    """Codes are matched case-insensitively and stored upper-cased."""
    return code.strip().upper()


# ============================================================================
# Evaluation (pure)
# ============================================================================


def compute_code_discount(code: DiscountCodeData, subtotal_minor: int) -> tuple[int, int]:
    """
    Cash discount and bonus tokens granted by a code on a subtotal.

    Returns (discount_minor, bonus_tokens). The cash discount never exceeds
    the subtotal it applies to.
    """
    if code.discount_type == DiscountType.PERCENTAGE:
        discount = percentage_of(subtotal_minor, code.value)
        if code.maximum_discount_minor is not None:
            discount = min(discount, code.maximum_discount_minor)
        return min(discount, subtotal_minor), 0

    if code.discount_type == DiscountType.FIXED_AMOUNT:
        value = int(code.value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        return min(value, subtotal_minor), 0

    return 0, int(code.value)


def evaluate_code(
    requested_code: str,
    code: DiscountCodeData | None,
    account: AccountSnapshot,
    token_quantity: int,
    currency: str,
    unit_price_minor: int,
    discount_base_minor: int,
    account_uses: int,
    now: datetime,
) -> CodeResolution:
    """
    Decide whether a code applies to a candidate purchase.

    Rules are checked in a fixed order and the first failure is reported.
    The minimum purchase compares against the undiscounted subtotal; the
    discount itself is computed on discount_base_minor (the post-bulk subtotal).
    """
    normalized = normalize_code(requested_code)
    reason: CodeRejectionReason | None = None

    if code is None:
        return CodeResolution.rejected(normalized, CodeRejectionReason.CODE_NOT_FOUND)

    subtotal = token_quantity * unit_price_minor

    if not code.is_enabled:
        reason = CodeRejectionReason.CODE_DISABLED
    elif code.valid_from is not None and now < code.valid_from:
        reason = CodeRejectionReason.NOT_YET_VALID
    elif code.valid_until is not None and now > code.valid_until:
        reason = CodeRejectionReason.EXPIRED
    elif code.applicable_currencies and currency.upper() not in code.applicable_currencies:
        reason = CodeRejectionReason.CURRENCY_NOT_APPLICABLE
    elif code.minimum_purchase_minor is not None and subtotal < code.minimum_purchase_minor:
        reason = CodeRejectionReason.MINIMUM_PURCHASE_NOT_MET
    elif code.max_uses is not None and code.current_uses >= code.max_uses:
        reason = CodeRejectionReason.USAGE_LIMIT_REACHED
    elif code.max_uses_per_account is not None and account_uses >= code.max_uses_per_account:
        reason = CodeRejectionReason.ACCOUNT_LIMIT_REACHED
    elif code.first_purchase_only and not account.is_first_purchase:
        reason = CodeRejectionReason.FIRST_PURCHASE_ONLY
    elif code.requires_verification and not account.is_verified:
        reason = CodeRejectionReason.VERIFICATION_REQUIRED
    elif (
        code.restrict_to_accounts and account.account_id not in code.restrict_to_accounts
    ) or account.account_id in code.exclude_accounts:
        reason = CodeRejectionReason.ACCOUNT_NOT_ELIGIBLE

    if reason is not None:
        return CodeResolution.rejected(code.code, reason, discount_code=code)

    discount_minor, bonus_tokens = compute_code_discount(code, discount_base_minor)
    return CodeResolution(
        code=code.code,
        applicable=True,
        discount_minor=discount_minor,
        bonus_tokens=bonus_tokens,
        discount_code=code,
    )


# ============================================================================
# Discount Code Service
# ============================================================================


class DiscountCodeService:
    """Admin operations, resolution and claiming of discount codes."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize discount code service with database session."""
        self.session = session

    # ------------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------------

    async def resolve(
        self,
        code: str,
        account: AccountSnapshot,
        token_quantity: int,
        currency: str,
        unit_price_minor: int,
        discount_base_minor: int | None = None,
        now: datetime | None = None,
    ) -> CodeResolution:
        """
        Evaluate a code against a candidate purchase without writing anything.

        discount_base_minor defaults to the undiscounted subtotal.
        """
        if token_quantity <= 0:
            raise ValidationError(f"token_quantity must be positive, got {token_quantity}")
        if unit_price_minor <= 0:
            raise ValidationError(f"unit_price_minor must be positive, got {unit_price_minor}")

        subtotal = token_quantity * unit_price_minor
        base = subtotal if discount_base_minor is None else discount_base_minor

        record = await self.get_by_code(code)
        account_uses = 0
        if record is not None:
            account_uses = await self.account_uses(record.discount_code_id, account.account_id)

        resolution = evaluate_code(
            requested_code=code,
            code=record,
            account=account,
            token_quantity=token_quantity,
            currency=currency,
            unit_price_minor=unit_price_minor,
            discount_base_minor=base,
            account_uses=account_uses,
            now=now or _utc_now(),
        )

        reason = resolution.reason.value if resolution.reason else None
        metrics.record_code_resolution(resolution.applicable, reason)
        if not resolution.applicable:
            logger.info(
                "discount_code_rejected",
                code=resolution.code,
                account_id=str(account.account_id),
                reason=reason,
            )
        return resolution

    async def claim(
        self,
        resolution: CodeResolution,
        account_id: UUID,
        movement_uid: UUID,
        tokens_amount: int,
        currency: str,
        discount_applied_minor: int,
    ) -> None:
        """
        Count one use of an applicable code.

        `discount_applied_minor` is the discount actually granted by the
        quote, which the price floor may have reduced.

        Runs inside the caller's purchase transaction; does not commit. Both
        counters are conditional increments evaluated by the database.

        Raises:
            ConstraintViolationError: A concurrent purchase took the last use
        """
        code = resolution.discount_code
        if code is None or not resolution.applicable:
            raise ValidationError(f"Discount code {resolution.code} is not applicable")

        claimed = await self.session.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == code.discount_code_id,
                DiscountCode.is_enabled.is_(True),
                or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
            )
            .values(current_uses=DiscountCode.current_uses + 1)
            .returning(DiscountCode.current_uses)
            .execution_options(synchronize_session=False)
        )
        if claimed.scalar_one_or_none() is None:
            raise ConstraintViolationError(
                CodeRejectionReason.USAGE_LIMIT_REACHED.value,
                f"Discount code {code.code} has no uses left",
            )

        table = DiscountCodeAccountUse.__table__
        stmt = pg_insert(table).values(
            discount_code_id=code.discount_code_id,
            account_id=account_id,
            uses=1,
            last_used_at=func.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.discount_code_id, table.c.account_id],
            set_={"uses": table.c.uses + 1, "last_used_at": func.now()},
            where=(
                table.c.uses < code.max_uses_per_account
                if code.max_uses_per_account is not None
                else None
            ),
        ).returning(table.c.uses)
        per_account = await self.session.execute(stmt)
        if per_account.scalar_one_or_none() is None:
            raise ConstraintViolationError(
                CodeRejectionReason.ACCOUNT_LIMIT_REACHED.value,
                f"Account {account_id} already used {code.code} the maximum number of times",
            )

        self.session.add(
            DiscountCodeUsage(
                discount_code_id=code.discount_code_id,
                account_id=account_id,
                movement_uid=movement_uid,
                tokens_amount=tokens_amount,
                discount_applied_minor=discount_applied_minor,
                currency=currency.upper(),
            )
        )
        await self.session.flush()

    async def account_uses(self, discount_code_id: int, account_id: UUID) -> int:
        """How many times an account has used a code."""
        with translated_errors("discount_code_account_uses"):
            uses = await self.session.scalar(
                select(DiscountCodeAccountUse.uses).where(
                    DiscountCodeAccountUse.discount_code_id == discount_code_id,
                    DiscountCodeAccountUse.account_id == account_id,
                )
            )
        return uses or 0

    # ------------------------------------------------------------------------
    # Admin reads
    # ------------------------------------------------------------------------

    async def get(self, discount_code_id: int) -> DiscountCodeData:
        """Get one code by id."""
        with translated_errors("discount_codes"):
            result = await self.session.execute(
                select(DiscountCode)
                .where(DiscountCode.id == discount_code_id)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError("discount_code", discount_code_id)
        return self._to_domain(row)

    async def get_by_code(self, code: str) -> DiscountCodeData | None:
        """Find a code by its normalized text."""
        with translated_errors("discount_codes"):
            result = await self.session.execute(
                select(DiscountCode)
                .where(DiscountCode.code == normalize_code(code))
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
        return self._to_domain(row) if row is not None else None

    async def list_codes(
        self,
        search: str | None = None,
        discount_type: DiscountType | None = None,
        is_enabled: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> DiscountCodePage:
        """List codes, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be at least 1")

        conditions = []
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(
                    DiscountCode.code.ilike(pattern),
                    DiscountCode.name.ilike(pattern),
                    DiscountCode.description.ilike(pattern),
                )
            )
        if discount_type is not None:
            conditions.append(DiscountCode.discount_type == discount_type)
        if is_enabled is not None:
            conditions.append(DiscountCode.is_enabled.is_(is_enabled))

        with translated_errors("discount_codes"):
            total = await self.session.scalar(
                select(func.count()).select_from(DiscountCode).where(*conditions)
            )
            result = await self.session.execute(
                select(DiscountCode)
                .where(*conditions)
                .order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        return DiscountCodePage(
            discount_codes=[self._to_domain(row) for row in result.scalars().all()],
            page=page,
            limit=limit,
            total=total or 0,
        )

    async def usage_stats(self, discount_code_id: int) -> DiscountCodeUsageStats:
        """Aggregate the usage log of a code."""
        await self.get(discount_code_id)

        with translated_errors("discount_code_usages"):
            result = await self.session.execute(
                select(
                    func.count(DiscountCodeUsage.id),
                    func.coalesce(func.sum(DiscountCodeUsage.discount_applied_minor), 0),
                    func.coalesce(func.sum(DiscountCodeUsage.tokens_amount), 0),
                ).where(DiscountCodeUsage.discount_code_id == discount_code_id)
            )
            total_uses, total_discount, total_tokens = result.one()

        return DiscountCodeUsageStats(
            discount_code_id=discount_code_id,
            total_uses=int(total_uses),
            total_discount_minor=int(total_discount),
            total_tokens=int(total_tokens),
        )

    # ------------------------------------------------------------------------
    # Admin writes
    # ------------------------------------------------------------------------

    async def create(self, intent: DiscountCodeIntent, actor: str | None) -> DiscountCodeData:
        """
        Create a code.

        Raises:
            DuplicateDiscountCodeError: The normalized code already exists
        """
        code = normalize_code(intent.code)

        if await self.get_by_code(code) is not None:
            raise DuplicateDiscountCodeError(code)

        row = DiscountCode(
            code=code,
            name=intent.name.strip(),
            description=intent.description,
            discount_type=intent.discount_type,
            value=intent.value,
            applicable_currencies=[c.upper() for c in intent.applicable_currencies],
            minimum_purchase_minor=intent.minimum_purchase_minor,
            maximum_discount_minor=intent.maximum_discount_minor,
            max_uses=intent.max_uses,
            max_uses_per_account=(
                intent.max_uses_per_account
                if intent.max_uses_per_account is not None
                else settings.default_max_uses_per_account
            ),
            current_uses=0,
            valid_from=intent.valid_from,
            valid_until=intent.valid_until,
            requires_verification=intent.requires_verification,
            first_purchase_only=intent.first_purchase_only,
            restrict_to_accounts=list(intent.restrict_to_accounts),
            exclude_accounts=list(intent.exclude_accounts),
            is_enabled=intent.is_enabled,
            terms_and_conditions=intent.terms_and_conditions,
            created_by=actor,
            updated_by=actor,
        )

        async with unit_of_work(self.session, "discount_codes"):
            self.session.add(row)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                if get_constraint_name(exc) == CODE_CONSTRAINT:
                    raise DuplicateDiscountCodeError(code) from exc
                raise
            if row.id is None:
                raise WriteVerificationError(f"Discount code {code} has no id after insert")

        created = await self.get(row.id)
        logger.info(
            "discount_code_created",
            discount_code_id=created.discount_code_id,
            code=created.code,
            discount_type=created.discount_type.value,
            created_by=actor,
        )
        return created

    async def set_enabled(
        self, discount_code_id: int, is_enabled: bool, actor: str | None
    ) -> DiscountCodeData:
        """Enable or disable a code."""
        async with unit_of_work(self.session, "discount_codes"):
            result = await self.session.execute(
                update(DiscountCode)
                .where(DiscountCode.id == discount_code_id)
                .values(is_enabled=is_enabled, updated_by=actor, updated_at=func.now())
                .returning(DiscountCode.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError("discount_code", discount_code_id)

        logger.info(
            "discount_code_toggled",
            discount_code_id=discount_code_id,
            is_enabled=is_enabled,
            updated_by=actor,
        )
        return await self.get(discount_code_id)

    def _to_domain(self, row: DiscountCode) -> DiscountCodeData:
        """Convert ORM model to domain model."""
        return DiscountCodeData(
            discount_code_id=row.id,
            uid=row.uid,
            code=row.code,
            name=row.name,
            description=row.description,
            discount_type=row.discount_type,
            value=Decimal(row.value),
            applicable_currencies=tuple(row.applicable_currencies or ()),
            minimum_purchase_minor=row.minimum_purchase_minor,
            maximum_discount_minor=row.maximum_discount_minor,
            max_uses=row.max_uses,
            max_uses_per_account=row.max_uses_per_account,
            current_uses=row.current_uses,
            valid_from=row.valid_from,
            valid_until=row.valid_until,
            requires_verification=row.requires_verification,
            first_purchase_only=row.first_purchase_only,
            restrict_to_accounts=tuple(row.restrict_to_accounts or ()),
            exclude_accounts=tuple(row.exclude_accounts or ()),
            is_enabled=row.is_enabled,
            terms_and_conditions=row.terms_and_conditions,
            created_by=row.created_by,
            created_at=row.created_at,
        )
