"""
API Routes - FastAPI endpoints for the token ledger and purchase pricing.

NO DICTIONARIES - All requests/responses use Pydantic models.

Store-level failures (concurrency conflicts, unreachable database, integrity
errors) are mapped to HTTP responses by the handlers registered in app.main.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import Actor, get_actor, to_account_snapshot
from app.db.session import get_read_db, get_write_db
from app.exceptions import ConstraintViolationError, InsufficientTokensError, ValidationError
from app.models.api import (
    AdjustmentRequest,
    BalanceResponse,
    BonusGrantRequest,
    BulkDiscountApplicationResponse,
    CodeDiscountApplicationResponse,
    CodeResolutionResponse,
    CodeResolveRequest,
    ConsumptionRequest,
    HealthResponse,
    LedgerWriteResponse,
    MovementListResponse,
    MovementResponse,
    MovementType,
    PaginationResponse,
    PriceQuoteResponse,
    PurchaseQuoteRequest,
    PurchaseResponse,
    ReconciliationResponse,
    RefundRequest,
    TokenPurchaseRequest,
)
from app.models.domain import LedgerEntry, MovementData, PriceQuote, TokenBalance
from app.services.ledger import LedgerService
from app.services.pricing import PricingService

router = APIRouter()


# ============================================================================
# Response conversion
# ============================================================================


def balance_response(balance: TokenBalance) -> BalanceResponse:
    return BalanceResponse(
        account_id=balance.account_id,
        total_available=balance.total_available,
        total_purchased=balance.total_purchased,
        total_bonus=balance.total_bonus,
        total_consumed=balance.total_consumed,
        total_refunded=balance.total_refunded,
        updated_at=balance.updated_at,
    )


def movement_response(movement: MovementData) -> MovementResponse:
    return MovementResponse(
        id=movement.movement_id,
        uid=movement.uid,
        account_id=movement.account_id,
        type=movement.movement_type,
        status=movement.status,
        amount=movement.amount,
        signed_amount=movement.signed_amount,
        metadata=movement.metadata.to_json(),
        created_by=movement.created_by,
        created_at=movement.created_at,
    )


def ledger_write_response(entry: LedgerEntry) -> LedgerWriteResponse:
    return LedgerWriteResponse(
        balance=balance_response(entry.balance),
        movement=movement_response(entry.movement),
    )


def quote_response(quote: PriceQuote) -> PriceQuoteResponse:
    bulk = quote.bulk_discount
    code = quote.code_discount
    return PriceQuoteResponse(
        account_id=quote.account_id,
        token_quantity=quote.token_quantity,
        currency=quote.currency,
        unit_price_minor=quote.unit_price_minor,
        subtotal_minor=quote.subtotal_minor,
        bulk_discount=(
            BulkDiscountApplicationResponse(
                bulk_discount_id=bulk.bulk_discount_id,
                name=bulk.name,
                tier_label=bulk.tier_label,
                percentage=bulk.percentage,
                amount_minor=bulk.amount_minor,
            )
            if bulk
            else None
        ),
        code_discount=(
            CodeDiscountApplicationResponse(
                discount_code_id=code.discount_code_id,
                code=code.code,
                type=code.discount_type,
                percentage=code.percentage,
                amount_minor=code.amount_minor,
                bonus_tokens=code.bonus_tokens,
            )
            if code
            else None
        ),
        post_bulk_subtotal_minor=quote.post_bulk_subtotal_minor,
        total_discount_minor=quote.total_discount_minor,
        total_minor=quote.total_minor,
        floor_applied=quote.floor_applied,
        unclamped_total_minor=quote.unclamped_total_minor,
    )


def _bad_request(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _conflict(exc: ConstraintViolationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"reason": exc.reason, "message": exc.message},
    )


# ============================================================================
# Ledger
# ============================================================================


@router.get("/v1/ledger/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> BalanceResponse:
    """
    Get the token balance of an account.

    An account without movements has an all-zero balance.
    Read operation - can use replica.
    """
    balance = await LedgerService(db).get_by_account_id(account_id)
    return balance_response(balance)


@router.get("/v1/ledger/accounts/{account_id}/movements", response_model=MovementListResponse)
async def list_movements(
    account_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    movement_type: MovementType | None = Query(None, alias="type"),
    db: AsyncSession = Depends(get_read_db),
) -> MovementListResponse:
    """List token movements of an account, newest first."""
    try:
        result = await LedgerService(db).list_movements(account_id, page, limit, movement_type)
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    return MovementListResponse(
        movements=[movement_response(m) for m in result.movements],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.limit,
            total=result.total,
            total_pages=result.total_pages,
            has_more=result.has_more,
        ),
    )


@router.post(
    "/v1/ledger/accounts/{account_id}/bonus",
    response_model=LedgerWriteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_bonus_tokens(
    account_id: UUID,
    request: BonusGrantRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(get_actor),
) -> LedgerWriteResponse:
    """
    Grant bonus tokens.

    Not idempotent: retrying grants again. Use the returned movement uid to
    de-duplicate.
    """
    try:
        entry = await LedgerService(db).add_bonus_tokens(
            account_id, request.amount, request.description, actor.actor_id
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    return ledger_write_response(entry)


@router.post(
    "/v1/ledger/accounts/{account_id}/adjustments",
    response_model=LedgerWriteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_balance(
    account_id: UUID,
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(get_actor),
) -> LedgerWriteResponse:
    """Correct a balance with a signed adjustment."""
    try:
        entry = await LedgerService(db).adjust_balance(
            account_id, request.delta, request.description, actor.actor_id
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except InsufficientTokensError as exc:
        raise _conflict(exc) from exc
    return ledger_write_response(entry)


@router.post(
    "/v1/ledger/accounts/{account_id}/consumptions",
    response_model=LedgerWriteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def consume_tokens(
    account_id: UUID,
    request: ConsumptionRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(get_actor),
) -> LedgerWriteResponse:
    """Spend tokens."""
    try:
        entry = await LedgerService(db).consume_tokens(
            account_id,
            request.amount,
            service_type=request.service_type,
            description=request.description,
            actor=actor.actor_id,
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except InsufficientTokensError as exc:
        raise _conflict(exc) from exc
    return ledger_write_response(entry)


@router.post(
    "/v1/ledger/accounts/{account_id}/refunds",
    response_model=LedgerWriteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def refund_tokens(
    account_id: UUID,
    request: RefundRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(get_actor),
) -> LedgerWriteResponse:
    """Return tokens out of an account."""
    try:
        entry = await LedgerService(db).refund_tokens(
            account_id, request.amount, request.description, actor=actor.actor_id
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except InsufficientTokensError as exc:
        raise _conflict(exc) from exc
    return ledger_write_response(entry)


@router.get(
    "/v1/ledger/accounts/{account_id}/reconciliation",
    response_model=ReconciliationResponse,
)
async def reconcile_balance(
    account_id: UUID,
    db: AsyncSession = Depends(get_write_db),
) -> ReconciliationResponse:
    """
    Compare the stored balance with a replay of the movement log.

    Reads the primary so the balance and the log come from the same source.
    """
    report = await LedgerService(db).reconcile(account_id)
    return ReconciliationResponse(
        account_id=report.account_id,
        stored=balance_response(report.stored),
        replayed=balance_response(report.replayed),
        movement_count=report.movement_count,
        consistent=report.consistent,
    )


# ============================================================================
# Pricing
# ============================================================================


@router.post("/v1/pricing/quote", response_model=PriceQuoteResponse)
async def quote_token_purchase(
    request: PurchaseQuoteRequest,
    db: AsyncSession = Depends(get_read_db),
) -> PriceQuoteResponse:
    """Preview the price of a purchase. Writes nothing."""
    account = to_account_snapshot(request.account)
    try:
        quote = await PricingService(db).quote_token_purchase(
            account,
            request.token_quantity,
            request.currency,
            request.unit_price_minor,
            discount_code=request.discount_code,
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except ConstraintViolationError as exc:
        raise _conflict(exc) from exc
    return quote_response(quote)


@router.post(
    "/v1/pricing/purchases",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_tokens(
    request: TokenPurchaseRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(get_actor),
) -> PurchaseResponse:
    """
    Price and commit a token purchase.

    Writes the PURCHASED movement (and a BONUS movement for bonus-token codes)
    together with the code claim and bulk statistics, or nothing at all.
    """
    account = to_account_snapshot(request.account)
    try:
        result = await PricingService(db).price_token_purchase(
            account,
            request.token_quantity,
            request.currency,
            request.unit_price_minor,
            discount_code=request.discount_code,
            payment_id=request.payment_id,
            description=request.description,
            actor=actor.actor_id,
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except ConstraintViolationError as exc:
        raise _conflict(exc) from exc

    return PurchaseResponse(
        quote=quote_response(result.quote),
        purchase_movement=movement_response(result.purchase_movement),
        bonus_movement=(
            movement_response(result.bonus_movement) if result.bonus_movement else None
        ),
        balance=balance_response(result.balance),
    )


@router.post("/v1/discount-codes/resolve", response_model=CodeResolutionResponse)
async def resolve_discount_code(
    request: CodeResolveRequest,
    db: AsyncSession = Depends(get_read_db),
) -> CodeResolutionResponse:
    """
    Check whether a code applies to a candidate purchase.

    A rejected code is a normal response with a reason, not an error.
    """
    account = to_account_snapshot(request.account)
    try:
        resolution = await PricingService(db).resolve_code(
            request.code,
            account,
            request.token_quantity,
            request.currency,
            request.unit_price_minor,
        )
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    return CodeResolutionResponse(
        applicable=resolution.applicable,
        code=resolution.code,
        discount_amount_minor=resolution.discount_minor,
        bonus_tokens=resolution.bonus_tokens,
        reason=resolution.reason,
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
