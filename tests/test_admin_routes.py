"""
Tests for Admin API Routes.

Discount code and bulk discount administration, called directly with mocked
services and through the HTTP client for header handling.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException

from app.api.dependencies import Actor
from app.exceptions import (
    DuplicateBulkDiscountNameError,
    DuplicateDiscountCodeError,
    InvalidTierConfigurationError,
    NotFoundError,
)
from app.models.api import (
    BulkDiscountCreateRequest,
    DiscountCodeCreateRequest,
    DiscountTierModel,
    DiscountType,
    EnabledToggleRequest,
    PriorityUpdateRequest,
    TiersUpdateRequest,
)
from app.models.domain import (
    BulkDiscountPage,
    DiscountCodePage,
    DiscountCodeUsageStats,
)
from factories import make_code, make_schedule, make_tier

ADMIN = Actor(actor_id="admin-1")


def code_request(**overrides) -> DiscountCodeCreateRequest:
    values = {
        "code": "save10",
        "name": "Save ten",
        "type": DiscountType.PERCENTAGE,
        "value": Decimal("10"),
    }
    values.update(overrides)
    return DiscountCodeCreateRequest(**values)


def bulk_request(**overrides) -> BulkDiscountCreateRequest:
    values = {
        "name": "Volume",
        "tiers": [
            DiscountTierModel(min_tokens=100, discount_percentage=Decimal("5")),
            DiscountTierModel(min_tokens=1000, discount_percentage=Decimal("15")),
        ],
    }
    values.update(overrides)
    return BulkDiscountCreateRequest(**values)


# ============================================================================
# Discount Codes
# ============================================================================


class TestDiscountCodeRoutes:
    """Tests for discount code administration."""

    async def test_create(self, db_session):
        from app.api.admin_routes import create_discount_code

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.create = AsyncMock(return_value=make_code())
            response = await create_discount_code(code_request(), db_session, ADMIN)

        intent, actor_id = MockService.return_value.create.call_args.args
        assert intent.code == "SAVE10"
        assert intent.max_uses_per_account is None
        assert actor_id == "admin-1"
        assert response.code == "SAVE10"
        assert response.type == DiscountType.PERCENTAGE

    async def test_create_duplicate(self, db_session):
        from app.api.admin_routes import create_discount_code

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.create = AsyncMock(
                side_effect=DuplicateDiscountCodeError("SAVE10")
            )
            with pytest.raises(HTTPException) as exc_info:
                await create_discount_code(code_request(), db_session, ADMIN)

        assert exc_info.value.status_code == 409

    async def test_create_invalid_bonus_tokens(self, db_session):
        from app.api.admin_routes import create_discount_code

        request = code_request(type=DiscountType.BONUS_TOKENS, value=Decimal("2.5"))
        with pytest.raises(HTTPException) as exc_info:
            await create_discount_code(request, db_session, ADMIN)

        assert exc_info.value.status_code == 400

    async def test_list(self, db_session):
        from app.api.admin_routes import list_discount_codes

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.list_codes = AsyncMock(
                return_value=DiscountCodePage(
                    discount_codes=[make_code()], page=1, limit=20, total=1
                )
            )
            response = await list_discount_codes(
                search="save", discount_type=None, is_enabled=True, page=1, limit=20, db=db_session
            )

        assert len(response.discount_codes) == 1
        assert response.pagination.has_more is False
        assert MockService.return_value.list_codes.call_args.kwargs["search"] == "save"

    async def test_get_unknown(self, db_session):
        from app.api.admin_routes import get_discount_code

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.get = AsyncMock(
                side_effect=NotFoundError("discount_code", 404)
            )
            with pytest.raises(HTTPException) as exc_info:
                await get_discount_code(404, db_session)

        assert exc_info.value.status_code == 404

    async def test_toggle(self, db_session):
        from app.api.admin_routes import toggle_discount_code

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.set_enabled = AsyncMock(
                return_value=make_code(is_enabled=False)
            )
            response = await toggle_discount_code(
                7, EnabledToggleRequest(is_enabled=False), db_session, ADMIN
            )

        MockService.return_value.set_enabled.assert_awaited_once_with(7, False, "admin-1")
        assert response.is_enabled is False

    async def test_stats(self, db_session):
        from app.api.admin_routes import get_discount_code_stats

        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.usage_stats = AsyncMock(
                return_value=DiscountCodeUsageStats(7, 3, 1500, 3000)
            )
            response = await get_discount_code_stats(7, db_session)

        assert response.total_uses == 3
        assert response.total_discount_minor == 1500


# ============================================================================
# Bulk Discounts
# ============================================================================


class TestBulkDiscountRoutes:
    """Tests for bulk discount administration."""

    async def test_create_uses_default_priority(self, db_session):
        from app.api.admin_routes import create_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.create = AsyncMock(return_value=make_schedule(3))
            response = await create_bulk_discount(bulk_request(), db_session, ADMIN)

        intent = MockService.return_value.create.call_args.args[0]
        assert intent.priority == 0
        assert [t.min_tokens for t in intent.tiers] == [100, 1000]
        assert response.id == 3
        assert response.stats.total_uses == 0

    async def test_create_overlapping_tiers(self, db_session):
        from app.api.admin_routes import create_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.create = AsyncMock(
                side_effect=InvalidTierConfigurationError("Tier 0-500 overlaps")
            )
            with pytest.raises(HTTPException) as exc_info:
                await create_bulk_discount(bulk_request(), db_session, ADMIN)

        assert exc_info.value.status_code == 400

    async def test_create_duplicate_name(self, db_session):
        from app.api.admin_routes import create_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.create = AsyncMock(
                side_effect=DuplicateBulkDiscountNameError("Volume")
            )
            with pytest.raises(HTTPException) as exc_info:
                await create_bulk_discount(bulk_request(priority=5), db_session, ADMIN)

        assert exc_info.value.status_code == 409

    async def test_list(self, db_session):
        from app.api.admin_routes import list_bulk_discounts

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.list_bulk_discounts = AsyncMock(
                return_value=BulkDiscountPage(
                    bulk_discounts=[make_schedule(1), make_schedule(2)], page=1, limit=1, total=2
                )
            )
            response = await list_bulk_discounts(
                search=None, is_enabled=None, is_default=None, page=1, limit=1, db=db_session
            )

        assert response.pagination.has_more is True
        assert [b.id for b in response.bulk_discounts] == [1, 2]

    async def test_no_default(self, db_session):
        from app.api.admin_routes import get_default_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.get_default = AsyncMock(return_value=None)
            with pytest.raises(HTTPException) as exc_info:
                await get_default_bulk_discount(db_session)

        assert exc_info.value.status_code == 404

    async def test_set_default(self, db_session):
        from app.api.admin_routes import set_default_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.set_as_default = AsyncMock(
                return_value=make_schedule(5, is_default=True)
            )
            response = await set_default_bulk_discount(5, db_session, ADMIN)

        assert response.is_default is True

    async def test_set_default_unknown(self, db_session):
        from app.api.admin_routes import set_default_bulk_discount

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.set_as_default = AsyncMock(
                side_effect=NotFoundError("bulk_discount", 404)
            )
            with pytest.raises(HTTPException) as exc_info:
                await set_default_bulk_discount(404, db_session, ADMIN)

        assert exc_info.value.status_code == 404

    async def test_update_tiers(self, db_session):
        from app.api.admin_routes import update_bulk_discount_tiers

        request = TiersUpdateRequest(
            tiers=[DiscountTierModel(min_tokens=0, max_tokens=99, discount_percentage=2)]
        )
        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.update_tiers = AsyncMock(
                return_value=make_schedule(3, tiers=(make_tier(0, 2, max_tokens=99),))
            )
            response = await update_bulk_discount_tiers(3, request, db_session, ADMIN)

        (tier,) = MockService.return_value.update_tiers.call_args.args[1]
        assert tier.max_tokens == 99
        assert response.tiers[0].max_tokens == 99

    async def test_update_priority(self, db_session):
        from app.api.admin_routes import update_bulk_discount_priority

        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.update_priority = AsyncMock(
                return_value=make_schedule(3, priority=9)
            )
            response = await update_bulk_discount_priority(
                3, PriorityUpdateRequest(priority=9), db_session, ADMIN
            )

        assert response.priority == 9


# ============================================================================
# Actor Header
# ============================================================================


class TestAdminActorHeader:
    """Admin writes must be attributable."""

    def test_write_without_actor_is_unauthorized(self, client):
        response = client.post(
            "/admin/discount-codes",
            json={"code": "SAVE10", "name": "Save", "type": "PERCENTAGE", "value": "10"},
        )

        assert response.status_code == 401

    def test_write_with_actor(self, client):
        with patch("app.api.admin_routes.DiscountCodeService") as MockService:
            MockService.return_value.create = AsyncMock(return_value=make_code())
            response = client.post(
                "/admin/discount-codes",
                json={"code": "save10", "name": "Save", "type": "PERCENTAGE", "value": "10"},
                headers={"X-Actor-Id": "admin-1"},
            )

        assert response.status_code == 201
        assert response.json()["code"] == "SAVE10"

    def test_reads_need_no_actor(self, client):
        with patch("app.api.admin_routes.BulkDiscountService") as MockService:
            MockService.return_value.get_default = AsyncMock(return_value=make_schedule(1))
            response = client.get("/admin/bulk-discounts/default")

        assert response.status_code == 200
        assert response.json()["id"] == 1
