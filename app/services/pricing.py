"""
Pricing Service - Token purchase pricing and settlement.

NO DICTIONARIES - All operations use strongly typed domain models.

Order of application: subtotal, then the bulk tier, then the discount code on
the post-bulk subtotal, then the price floor. Both resolvers are consulted
before anything is written; the purchase movement, an optional bonus movement,
the code claim and the bulk statistics then commit as one transaction.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import unit_of_work
from app.exceptions import ConstraintViolationError, LedgerError, ValidationError
from app.models.api import DiscountType, MovementType
from app.models.domain import (
    AccountSnapshot,
    BulkDiscountApplication,
    CodeDiscountApplication,
    CodeResolution,
    DiscountCodeData,
    LedgerEntry,
    MovementIntent,
    MovementMetadata,
    PriceQuote,
    PurchaseResult,
    TierSelection,
    percentage_of,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.bulk_discounts import BulkDiscountService
from app.services.discount_codes import DiscountCodeService, compute_code_discount
from app.services.ledger import LedgerService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def post_bulk_subtotal(subtotal_minor: int, selection: TierSelection | None) -> int:
    """Subtotal left after the bulk tier discount."""
    if selection is None:
        return subtotal_minor
    discount = percentage_of(subtotal_minor, selection.tier.discount_percentage)
    return subtotal_minor - min(discount, subtotal_minor)


def compute_quote(
    account_id: UUID,
    token_quantity: int,
    currency: str,
    unit_price_minor: int,
    selection: TierSelection | None,
    code: DiscountCodeData | None,
    minimum_charge_minor: int,
) -> PriceQuote:
    """
    Price a purchase from an already resolved tier and code.

    The floor never exceeds the subtotal, so a floor cannot raise a price
    above the undiscounted amount. When the floor raises the total, the
    difference is taken back from the code discount first and then from the
    bulk discount, so both reported amounts are what was actually granted.
    """
    subtotal = token_quantity * unit_price_minor
    post_bulk = post_bulk_subtotal(subtotal, selection)
    bulk_amount = subtotal - post_bulk

    code_amount = 0
    bonus_tokens = 0
    if code is not None:
        code_amount, bonus_tokens = compute_code_discount(code, post_bulk)

    unclamped = post_bulk - code_amount
    floor = min(minimum_charge_minor, subtotal)
    floor_applied = unclamped < floor
    total = floor if floor_applied else unclamped

    clawback = total - unclamped
    code_clawback = min(clawback, code_amount)
    code_amount -= code_clawback
    bulk_amount -= clawback - code_clawback

    bulk_application: BulkDiscountApplication | None = None
    if selection is not None:
        bulk_application = BulkDiscountApplication(
            bulk_discount_id=selection.bulk_discount_id,
            name=selection.bulk_discount_name,
            tier_label=selection.tier.label,
            percentage=selection.tier.discount_percentage,
            amount_minor=bulk_amount,
        )

    code_application: CodeDiscountApplication | None = None
    if code is not None:
        code_application = CodeDiscountApplication(
            discount_code_id=code.discount_code_id,
            code=code.code,
            discount_type=code.discount_type,
            percentage=code.value if code.discount_type == DiscountType.PERCENTAGE else None,
            amount_minor=code_amount,
            bonus_tokens=bonus_tokens,
        )

    return PriceQuote(
        account_id=account_id,
        token_quantity=token_quantity,
        currency=currency.upper(),
        unit_price_minor=unit_price_minor,
        subtotal_minor=subtotal,
        bulk_discount=bulk_application,
        code_discount=code_application,
        post_bulk_subtotal_minor=post_bulk,
        total_minor=total,
        floor_applied=floor_applied,
        unclamped_total_minor=unclamped,
    )


def purchase_metadata(
    quote: PriceQuote, description: str | None, payment_id: str | None
) -> MovementMetadata:
    """Price breakdown recorded on the PURCHASED movement."""
    bulk = quote.bulk_discount
    code = quote.code_discount
    return MovementMetadata(
        token_amount=quote.token_quantity,
        description=description or f"Purchase of {quote.token_quantity} tokens",
        currency=quote.currency,
        unit_price_minor=quote.unit_price_minor,
        original_price_minor=quote.subtotal_minor,
        discount_amount_minor=quote.total_discount_minor,
        bulk_discount_id=bulk.bulk_discount_id if bulk else None,
        bulk_discount_amount_minor=bulk.amount_minor if bulk else None,
        bulk_discount_percentage=bulk.percentage if bulk else None,
        discount_code=code.code if code else None,
        discount_code_id=code.discount_code_id if code else None,
        code_discount_amount_minor=code.amount_minor if code else None,
        code_discount_percentage=code.percentage if code else None,
        total_charged_minor=quote.total_minor,
        floor_applied=quote.floor_applied,
        unclamped_total_minor=quote.unclamped_total_minor if quote.floor_applied else None,
        payment_id=payment_id,
    )


class PricingService:
    """Orchestrates bulk and code resolution and settles purchases in the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize pricing service with database session."""
        self.session = session
        self.ledger = LedgerService(session)
        self.bulk_discounts = BulkDiscountService(session)
        self.discount_codes = DiscountCodeService(session)

    async def quote_token_purchase(
        self,
        account: AccountSnapshot,
        token_quantity: int,
        currency: str,
        unit_price_minor: int,
        discount_code: str | None = None,
        now: datetime | None = None,
    ) -> PriceQuote:
        """Price a purchase without writing anything."""
        quote, _, _ = await self._prepare(
            account, token_quantity, currency, unit_price_minor, discount_code, now or _utc_now()
        )
        return quote

    async def resolve_code(
        self,
        code: str,
        account: AccountSnapshot,
        token_quantity: int,
        currency: str,
        unit_price_minor: int,
        now: datetime | None = None,
    ) -> CodeResolution:
        """Evaluate a code the way a purchase would, after the bulk tier."""
        now = now or _utc_now()
        selection = await self.bulk_discounts.resolve_best(token_quantity, currency, account, now)
        return await self.discount_codes.resolve(
            code,
            account,
            token_quantity,
            currency,
            unit_price_minor,
            discount_base_minor=post_bulk_subtotal(token_quantity * unit_price_minor, selection),
            now=now,
        )

    async def price_token_purchase(
        self,
        account: AccountSnapshot,
        token_quantity: int,
        currency: str,
        unit_price_minor: int,
        discount_code: str | None = None,
        payment_id: str | None = None,
        description: str | None = None,
        actor: str | None = None,
        now: datetime | None = None,
    ) -> PurchaseResult:
        """
        Price and commit a token purchase.

        Raises:
            ValidationError: Malformed purchase input
            ConstraintViolationError: The discount code was rejected or exhausted
            ConcurrencyConflictError: A concurrent write won the race
        """
        with trace_operation(
            "token_purchase",
            account_id=account.account_id,
            token_quantity=token_quantity,
            currency=currency,
        ) as span:
            try:
                quote, selection, resolution = await self._prepare(
                    account,
                    token_quantity,
                    currency,
                    unit_price_minor,
                    discount_code,
                    now or _utc_now(),
                )
                purchase_entry, bonus_entry = await self._settle(
                    quote, selection, resolution, payment_id, description, actor
                )
            except ConstraintViolationError as exc:
                metrics.record_purchase(False, reason=exc.reason)
                raise
            except LedgerError as exc:
                metrics.record_purchase(False, reason=type(exc).__name__)
                raise

            span.set_attribute("total_minor", quote.total_minor)

        metrics.record_purchase(True, total_minor=quote.total_minor)
        metrics.record_movement(MovementType.PURCHASED.value, token_quantity)
        if bonus_entry is not None:
            metrics.record_movement(MovementType.BONUS.value, bonus_entry.movement.amount)

        logger.info(
            "token_purchase_committed",
            account_id=str(account.account_id),
            movement_uid=str(purchase_entry.movement.uid),
            token_quantity=token_quantity,
            subtotal_minor=quote.subtotal_minor,
            total_minor=quote.total_minor,
            bulk_discount_id=selection.bulk_discount_id if selection else None,
            discount_code=resolution.code if resolution else None,
            bonus_tokens=quote.bonus_tokens,
            floor_applied=quote.floor_applied,
        )

        final = bonus_entry or purchase_entry
        return PurchaseResult(
            quote=quote,
            purchase_movement=purchase_entry.movement,
            bonus_movement=bonus_entry.movement if bonus_entry else None,
            balance=final.balance,
        )

    async def _prepare(
        self,
        account: AccountSnapshot,
        token_quantity: int,
        currency: str,
        unit_price_minor: int,
        discount_code: str | None,
        now: datetime,
    ) -> tuple[PriceQuote, TierSelection | None, CodeResolution | None]:
        """Resolve both discounts and compute the quote. Performs no writes."""
        if token_quantity <= 0:
            raise ValidationError(f"token_quantity must be positive, got {token_quantity}")
        if unit_price_minor <= 0:
            raise ValidationError(f"unit_price_minor must be positive, got {unit_price_minor}")
        if len(currency) != 3:
            raise ValidationError(f"Invalid currency code: {currency}")

        selection = await self.bulk_discounts.resolve_best(token_quantity, currency, account, now)

        post_bulk = post_bulk_subtotal(token_quantity * unit_price_minor, selection)

        resolution: CodeResolution | None = None
        if discount_code:
            resolution = await self.discount_codes.resolve(
                discount_code,
                account,
                token_quantity,
                currency,
                unit_price_minor,
                discount_base_minor=post_bulk,
                now=now,
            )
            if not resolution.applicable:
                reason = resolution.reason.value if resolution.reason else "CODE_NOT_APPLICABLE"
                raise ConstraintViolationError(
                    reason, f"Discount code {resolution.code} cannot be applied: {reason}"
                )

        quote = compute_quote(
            account_id=account.account_id,
            token_quantity=token_quantity,
            currency=currency,
            unit_price_minor=unit_price_minor,
            selection=selection,
            code=resolution.discount_code if resolution else None,
            minimum_charge_minor=settings.minimum_charge_minor,
        )
        return quote, selection, resolution

    async def _settle(
        self,
        quote: PriceQuote,
        selection: TierSelection | None,
        resolution: CodeResolution | None,
        payment_id: str | None,
        description: str | None,
        actor: str | None,
    ) -> tuple[LedgerEntry, LedgerEntry | None]:
        """Write every effect of the purchase in one transaction."""
        bonus_entry: LedgerEntry | None = None

        async with unit_of_work(self.session, "token_purchase"):
            purchase_entry = await self.ledger.stage(
                MovementIntent(
                    account_id=quote.account_id,
                    movement_type=MovementType.PURCHASED,
                    amount=quote.token_quantity,
                    metadata=purchase_metadata(quote, description, payment_id),
                    created_by=actor,
                )
            )

            if resolution is not None:
                await self.discount_codes.claim(
                    resolution,
                    account_id=quote.account_id,
                    movement_uid=purchase_entry.movement.uid,
                    tokens_amount=quote.token_quantity,
                    currency=quote.currency,
                    discount_applied_minor=(
                        quote.code_discount.amount_minor if quote.code_discount else 0
                    ),
                )

            if quote.bonus_tokens > 0 and quote.code_discount is not None:
                bonus_entry = await self.ledger.stage(
                    MovementIntent(
                        account_id=quote.account_id,
                        movement_type=MovementType.BONUS,
                        amount=quote.bonus_tokens,
                        metadata=MovementMetadata(
                            token_amount=quote.bonus_tokens,
                            description=(
                                f"Bonus tokens from discount code {quote.code_discount.code}"
                            ),
                            discount_code=quote.code_discount.code,
                            discount_code_id=quote.code_discount.discount_code_id,
                            related_movement_uid=str(purchase_entry.movement.uid),
                        ),
                        created_by=actor,
                    )
                )

            if quote.bulk_discount is not None:
                await self.bulk_discounts.record_usage(
                    quote.bulk_discount.bulk_discount_id,
                    tokens_sold=quote.token_quantity,
                    discount_minor=quote.bulk_discount.amount_minor,
                )

        return purchase_entry, bonus_entry
