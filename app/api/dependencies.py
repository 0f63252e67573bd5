"""
FastAPI Dependencies - Actor resolution and request conversion.

NO DICTIONARIES - All dependencies return typed objects.

Authentication happens upstream; the gateway forwards the acting
administrator or system identity in the X-Actor-Id header.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status
from structlog import get_logger

from app.exceptions import ValidationError
from app.models.api import AccountSnapshotModel
from app.models.domain import AccountSnapshot

logger = get_logger(__name__)

ACTOR_HEADER = "X-Actor-Id"


@dataclass(frozen=True)
class Actor:
    """Identity recorded as created_by/updated_by on writes."""

    actor_id: str | None

    @property
    def is_anonymous(self) -> bool:
        return self.actor_id is None


async def get_actor(
    x_actor_id: str | None = Header(None, alias=ACTOR_HEADER, max_length=255),
) -> Actor:
    """
    FastAPI dependency returning the (optional) acting identity.

    Usage:
        @router.post("/v1/pricing/purchases")
        async def purchase(actor: Actor = Depends(get_actor)):
            ...
    """
    actor_id = x_actor_id.strip() if x_actor_id else None
    return Actor(actor_id=actor_id or None)


async def require_actor(
    x_actor_id: str | None = Header(None, alias=ACTOR_HEADER, max_length=255),
) -> Actor:
    """
    FastAPI dependency for admin writes, which must be attributable.

    Raises:
        HTTPException 401 if the header is missing or blank
    """
    actor = await get_actor(x_actor_id)
    if actor.is_anonymous:
        logger.warning("admin_write_without_actor")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{ACTOR_HEADER} header required",
        )
    return actor


def to_account_snapshot(model: AccountSnapshotModel) -> AccountSnapshot:
    """
    Convert the request's account snapshot to the domain model.

    Raises:
        HTTPException 400 if the snapshot is inconsistent
    """
    try:
        return AccountSnapshot(
            account_id=model.account_id,
            currency=model.currency,
            country=model.country,
            is_verified=model.is_verified,
            account_age_days=model.account_age_days,
            is_first_purchase=model.is_first_purchase,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
