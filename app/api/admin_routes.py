"""
Admin API routes for managing discount codes and bulk discount schedules.

Authentication happens upstream. Writes must carry an X-Actor-Id header,
which is recorded as created_by/updated_by.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import Actor, require_actor
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    DuplicateBulkDiscountNameError,
    DuplicateDiscountCodeError,
    NotFoundError,
    ValidationError,
)
from app.models.api import (
    BulkDiscountCreateRequest,
    BulkDiscountListResponse,
    BulkDiscountResponse,
    BulkDiscountStatsResponse,
    DiscountCodeCreateRequest,
    DiscountCodeListResponse,
    DiscountCodeResponse,
    DiscountCodeStatsResponse,
    DiscountTierModel,
    DiscountType,
    EnabledToggleRequest,
    PaginationResponse,
    PriorityUpdateRequest,
    TiersUpdateRequest,
)
from app.models.domain import (
    BulkDiscountData,
    BulkDiscountIntent,
    DiscountCodeData,
    DiscountCodeIntent,
    DiscountTier,
)
from app.services.bulk_discounts import BulkDiscountService
from app.services.discount_codes import DiscountCodeService

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


# ============================================================================
# Conversion helpers
# ============================================================================


def _pagination(page: int, limit: int, total: int) -> PaginationResponse:
    total_pages = (total + limit - 1) // limit
    return PaginationResponse(
        page=page,
        limit=limit,
        total=total,
        total_pages=total_pages,
        has_more=page < total_pages,
    )


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _tiers_from_request(tiers: list[DiscountTierModel]) -> tuple[DiscountTier, ...]:
    return tuple(
        DiscountTier(
            min_tokens=t.min_tokens,
            max_tokens=t.max_tokens,
            discount_percentage=t.discount_percentage,
            label=t.label,
            is_enabled=t.is_enabled,
        )
        for t in tiers
    )


def discount_code_response(code: DiscountCodeData) -> DiscountCodeResponse:
    return DiscountCodeResponse(
        id=code.discount_code_id,
        uid=code.uid,
        code=code.code,
        name=code.name,
        description=code.description,
        type=code.discount_type,
        value=code.value,
        applicable_currencies=list(code.applicable_currencies),
        minimum_purchase_minor=code.minimum_purchase_minor,
        maximum_discount_minor=code.maximum_discount_minor,
        max_uses=code.max_uses,
        max_uses_per_account=code.max_uses_per_account,
        current_uses=code.current_uses,
        valid_from=code.valid_from,
        valid_until=code.valid_until,
        requires_verification=code.requires_verification,
        first_purchase_only=code.first_purchase_only,
        restrict_to_accounts=list(code.restrict_to_accounts),
        exclude_accounts=list(code.exclude_accounts),
        is_enabled=code.is_enabled,
        terms_and_conditions=code.terms_and_conditions,
        created_by=code.created_by,
        created_at=code.created_at,
    )


def bulk_discount_response(schedule: BulkDiscountData) -> BulkDiscountResponse:
    return BulkDiscountResponse(
        id=schedule.bulk_discount_id,
        uid=schedule.uid,
        name=schedule.name,
        description=schedule.description,
        is_default=schedule.is_default,
        priority=schedule.priority,
        tiers=[
            DiscountTierModel(
                min_tokens=t.min_tokens,
                max_tokens=t.max_tokens,
                discount_percentage=t.discount_percentage,
                label=t.label,
                is_enabled=t.is_enabled,
            )
            for t in schedule.tiers
        ],
        applicable_currencies=list(schedule.applicable_currencies),
        applicable_countries=list(schedule.applicable_countries),
        requires_verification=schedule.requires_verification,
        min_account_age_days=schedule.min_account_age_days,
        restrict_to_accounts=list(schedule.restrict_to_accounts),
        exclude_accounts=list(schedule.exclude_accounts),
        valid_from=schedule.valid_from,
        valid_until=schedule.valid_until,
        is_enabled=schedule.is_enabled,
        stats=BulkDiscountStatsResponse(
            total_uses=schedule.stats.total_uses,
            total_tokens_sold=schedule.stats.total_tokens_sold,
            total_discount_given_minor=schedule.stats.total_discount_given_minor,
            last_used_at=schedule.stats.last_used_at,
        ),
        created_by=schedule.created_by,
        created_at=schedule.created_at,
    )


# ============================================================================
# Discount Codes
# ============================================================================


@router.post(
    "/discount-codes",
    response_model=DiscountCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_discount_code(
    request: DiscountCodeCreateRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> DiscountCodeResponse:
    """Create a discount code. Codes are unique case-insensitively."""
    try:
        intent = DiscountCodeIntent(
            code=request.code,
            name=request.name,
            description=request.description,
            discount_type=request.type,
            value=request.value,
            applicable_currencies=tuple(request.applicable_currencies),
            minimum_purchase_minor=request.minimum_purchase_minor,
            maximum_discount_minor=request.maximum_discount_minor,
            max_uses=request.max_uses,
            max_uses_per_account=request.max_uses_per_account,
            valid_from=request.valid_from,
            valid_until=request.valid_until,
            requires_verification=request.requires_verification,
            first_purchase_only=request.first_purchase_only,
            restrict_to_accounts=tuple(request.restrict_to_accounts),
            exclude_accounts=tuple(request.exclude_accounts),
            is_enabled=request.is_enabled,
            terms_and_conditions=request.terms_and_conditions,
        )
        code = await DiscountCodeService(db).create(intent, actor.actor_id)
    except DuplicateDiscountCodeError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    return discount_code_response(code)


@router.get("/discount-codes", response_model=DiscountCodeListResponse)
async def list_discount_codes(
    search: str | None = Query(None, max_length=100),
    discount_type: DiscountType | None = Query(None, alias="type"),
    is_enabled: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
) -> DiscountCodeListResponse:
    """List discount codes, newest first."""
    result = await DiscountCodeService(db).list_codes(
        search=search,
        discount_type=discount_type,
        is_enabled=is_enabled,
        page=page,
        limit=limit,
    )
    return DiscountCodeListResponse(
        discount_codes=[discount_code_response(c) for c in result.discount_codes],
        pagination=_pagination(result.page, result.limit, result.total),
    )


@router.get("/discount-codes/{discount_code_id}", response_model=DiscountCodeResponse)
async def get_discount_code(
    discount_code_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> DiscountCodeResponse:
    """Get a discount code by id."""
    try:
        code = await DiscountCodeService(db).get(discount_code_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return discount_code_response(code)


@router.post("/discount-codes/{discount_code_id}/enabled", response_model=DiscountCodeResponse)
async def toggle_discount_code(
    discount_code_id: int,
    request: EnabledToggleRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> DiscountCodeResponse:
    """Enable or disable a discount code."""
    try:
        code = await DiscountCodeService(db).set_enabled(
            discount_code_id, request.is_enabled, actor.actor_id
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return discount_code_response(code)


@router.get(
    "/discount-codes/{discount_code_id}/stats",
    response_model=DiscountCodeStatsResponse,
)
async def get_discount_code_stats(
    discount_code_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> DiscountCodeStatsResponse:
    """Aggregated usage of a discount code."""
    try:
        stats = await DiscountCodeService(db).usage_stats(discount_code_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return DiscountCodeStatsResponse(
        discount_code_id=stats.discount_code_id,
        total_uses=stats.total_uses,
        total_discount_minor=stats.total_discount_minor,
        total_tokens=stats.total_tokens,
    )


# ============================================================================
# Bulk Discounts
# ============================================================================


@router.post(
    "/bulk-discounts",
    response_model=BulkDiscountResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_bulk_discount(
    request: BulkDiscountCreateRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> BulkDiscountResponse:
    """
    Create a bulk discount schedule.

    Tiers are sorted by min_tokens and validated for overlap. A schedule
    created with is_default replaces the current default.
    """
    try:
        intent = BulkDiscountIntent(
            name=request.name,
            description=request.description,
            is_default=request.is_default,
            priority=(
                request.priority
                if request.priority is not None
                else settings.default_discount_priority
            ),
            tiers=_tiers_from_request(request.tiers),
            applicable_currencies=tuple(request.applicable_currencies),
            applicable_countries=tuple(request.applicable_countries),
            requires_verification=request.requires_verification,
            min_account_age_days=request.min_account_age_days,
            restrict_to_accounts=tuple(request.restrict_to_accounts),
            exclude_accounts=tuple(request.exclude_accounts),
            valid_from=request.valid_from,
            valid_until=request.valid_until,
            is_enabled=request.is_enabled,
        )
        schedule = await BulkDiscountService(db).create(intent, actor.actor_id)
    except DuplicateBulkDiscountNameError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    return bulk_discount_response(schedule)


@router.get("/bulk-discounts", response_model=BulkDiscountListResponse)
async def list_bulk_discounts(
    search: str | None = Query(None, max_length=100),
    is_enabled: bool | None = Query(None),
    is_default: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_read_db),
) -> BulkDiscountListResponse:
    """List bulk discount schedules, highest priority first."""
    result = await BulkDiscountService(db).list_bulk_discounts(
        search=search,
        is_enabled=is_enabled,
        is_default=is_default,
        page=page,
        limit=limit,
    )
    return BulkDiscountListResponse(
        bulk_discounts=[bulk_discount_response(b) for b in result.bulk_discounts],
        pagination=_pagination(result.page, result.limit, result.total),
    )


@router.get("/bulk-discounts/default", response_model=BulkDiscountResponse)
async def get_default_bulk_discount(
    db: AsyncSession = Depends(get_read_db),
) -> BulkDiscountResponse:
    """The fallback schedule, if one is configured."""
    schedule = await BulkDiscountService(db).get_default()
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No default bulk discount configured",
        )
    return bulk_discount_response(schedule)


@router.get("/bulk-discounts/{bulk_discount_id}", response_model=BulkDiscountResponse)
async def get_bulk_discount(
    bulk_discount_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> BulkDiscountResponse:
    """Get a bulk discount schedule by id."""
    try:
        schedule = await BulkDiscountService(db).get(bulk_discount_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return bulk_discount_response(schedule)


@router.post("/bulk-discounts/{bulk_discount_id}/default", response_model=BulkDiscountResponse)
async def set_default_bulk_discount(
    bulk_discount_id: int,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> BulkDiscountResponse:
    """Make a schedule the single default, clearing the previous one."""
    try:
        schedule = await BulkDiscountService(db).set_as_default(bulk_discount_id, actor.actor_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return bulk_discount_response(schedule)


@router.post("/bulk-discounts/{bulk_discount_id}/enabled", response_model=BulkDiscountResponse)
async def toggle_bulk_discount(
    bulk_discount_id: int,
    request: EnabledToggleRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> BulkDiscountResponse:
    """Enable or disable a schedule."""
    try:
        schedule = await BulkDiscountService(db).set_enabled(
            bulk_discount_id, request.is_enabled, actor.actor_id
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return bulk_discount_response(schedule)


@router.put("/bulk-discounts/{bulk_discount_id}/tiers", response_model=BulkDiscountResponse)
async def update_bulk_discount_tiers(
    bulk_discount_id: int,
    request: TiersUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> BulkDiscountResponse:
    """Replace the tiers of a schedule."""
    try:
        schedule = await BulkDiscountService(db).update_tiers(
            bulk_discount_id, _tiers_from_request(request.tiers), actor.actor_id
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    return bulk_discount_response(schedule)


@router.put("/bulk-discounts/{bulk_discount_id}/priority", response_model=BulkDiscountResponse)
async def update_bulk_discount_priority(
    bulk_discount_id: int,
    request: PriorityUpdateRequest,
    db: AsyncSession = Depends(get_write_db),
    actor: Actor = Depends(require_actor),
) -> BulkDiscountResponse:
    """Change the priority of a schedule."""
    try:
        schedule = await BulkDiscountService(db).update_priority(
            bulk_discount_id, request.priority, actor.actor_id
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc

    logger.info(
        "bulk_discount_priority_updated",
        bulk_discount_id=bulk_discount_id,
        priority=request.priority,
        updated_by=actor.actor_id,
    )
    return bulk_discount_response(schedule)
