"""
Tests for discount code evaluation, claiming and administration.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from app.exceptions import (
    ConstraintViolationError,
    DuplicateDiscountCodeError,
    NotFoundError,
    ValidationError,
)
from app.models.api import CodeRejectionReason, DiscountType
from app.models.domain import AccountSnapshot, CodeResolution, DiscountCodeIntent
from app.services.discount_codes import (
    DiscountCodeService,
    compute_code_discount,
    evaluate_code,
    normalize_code,
)
from factories import FIXED_NOW, create_mock_discount_code, make_code, make_result


def evaluate(code, account, token_quantity=100, unit_price_minor=100, account_uses=0, **kwargs):
    subtotal = token_quantity * unit_price_minor
    values = {
        "requested_code": code.code if code else "MISSING",
        "code": code,
        "account": account,
        "token_quantity": token_quantity,
        "currency": "ARS",
        "unit_price_minor": unit_price_minor,
        "discount_base_minor": subtotal,
        "account_uses": account_uses,
        "now": FIXED_NOW,
    }
    values.update(kwargs)
    return evaluate_code(**values)


# ============================================================================
# Discount Computation
# ============================================================================


class TestComputeCodeDiscount:
    """Tests for compute_code_discount."""

    def test_percentage(self):
        assert compute_code_discount(make_code(DiscountType.PERCENTAGE, 10), 9000) == (900, 0)

    def test_percentage_rounds_half_up(self):
        assert compute_code_discount(make_code(DiscountType.PERCENTAGE, "12.5"), 1004) == (126, 0)

    def test_percentage_capped(self):
        code = make_code(DiscountType.PERCENTAGE, 50, maximum_discount_minor=1000)
        assert compute_code_discount(code, 9000) == (1000, 0)

    def test_fixed_amount(self):
        assert compute_code_discount(make_code(DiscountType.FIXED_AMOUNT, 500), 9000) == (500, 0)

    def test_fixed_amount_never_exceeds_subtotal(self):
        assert compute_code_discount(make_code(DiscountType.FIXED_AMOUNT, 500), 300) == (300, 0)

    def test_bonus_tokens(self):
        assert compute_code_discount(make_code(DiscountType.BONUS_TOKENS, 200), 9000) == (0, 200)


# ============================================================================
# Evaluation Order
# ============================================================================


class TestEvaluateCode:
    """Tests for evaluate_code rule order."""

    def test_applicable(self, account):
        resolution = evaluate(make_code(DiscountType.FIXED_AMOUNT, 500), account)

        assert resolution.applicable is True
        assert resolution.discount_minor == 500
        assert resolution.reason is None

    def test_not_found(self, account):
        resolution = evaluate(None, account, requested_code=" nope ")
        assert resolution.reason == CodeRejectionReason.CODE_NOT_FOUND
        assert resolution.code == "NOPE"

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"is_enabled": False}, CodeRejectionReason.CODE_DISABLED),
            ({"valid_from": FIXED_NOW + timedelta(days=1)}, CodeRejectionReason.NOT_YET_VALID),
            ({"valid_until": FIXED_NOW - timedelta(days=1)}, CodeRejectionReason.EXPIRED),
            (
                {"applicable_currencies": ("USD", "EUR")},
                CodeRejectionReason.CURRENCY_NOT_APPLICABLE,
            ),
            ({"minimum_purchase_minor": 10_001}, CodeRejectionReason.MINIMUM_PURCHASE_NOT_MET),
            ({"max_uses": 5, "current_uses": 5}, CodeRejectionReason.USAGE_LIMIT_REACHED),
            ({"restrict_to_accounts": (uuid4(),)}, CodeRejectionReason.ACCOUNT_NOT_ELIGIBLE),
        ],
    )
    def test_single_rule(self, account, overrides, reason):
        resolution = evaluate(make_code(**overrides), account)

        assert resolution.applicable is False
        assert resolution.reason == reason
        assert resolution.discount_minor == 0

    def test_account_limit(self, account):
        code = make_code(max_uses_per_account=1)
        assert evaluate(code, account, account_uses=1).reason == (
            CodeRejectionReason.ACCOUNT_LIMIT_REACHED
        )

    def test_first_purchase_only(self, account_id):
        returning = AccountSnapshot(account_id=account_id, currency="ARS", is_verified=True)
        code = make_code(first_purchase_only=True)
        assert evaluate(code, returning).reason == CodeRejectionReason.FIRST_PURCHASE_ONLY

    def test_verification_required(self, account_id):
        unverified = AccountSnapshot(account_id=account_id, currency="ARS", is_first_purchase=True)
        code = make_code(requires_verification=True)
        assert evaluate(code, unverified).reason == CodeRejectionReason.VERIFICATION_REQUIRED

    def test_excluded_account(self, account):
        code = make_code(exclude_accounts=(account.account_id,))
        assert evaluate(code, account).reason == CodeRejectionReason.ACCOUNT_NOT_ELIGIBLE

    def test_first_failure_reported(self, account):
        code = make_code(
            valid_until=FIXED_NOW - timedelta(days=1),
            applicable_currencies=("USD",),
            max_uses=1,
            current_uses=1,
        )
        assert evaluate(code, account).reason == CodeRejectionReason.EXPIRED

    def test_minimum_uses_raw_subtotal(self, account):
        code = make_code(DiscountType.FIXED_AMOUNT, 500, minimum_purchase_minor=10_000)

        resolution = evaluate(code, account, discount_base_minor=9000)

        assert resolution.applicable is True
        assert resolution.discount_minor == 500

    def test_discount_on_base(self, account):
        resolution = evaluate(make_code(DiscountType.PERCENTAGE, 10), account, discount_base_minor=9000)
        assert resolution.discount_minor == 900

    def test_window_bounds_inclusive(self, account):
        code = make_code(valid_from=FIXED_NOW, valid_until=FIXED_NOW)
        assert evaluate(code, account).applicable is True

    def test_normalize(self):
        assert normalize_code("  save10 ") == "SAVE10"


# ============================================================================
# Service
# ============================================================================


class TestResolve:
    """Tests for DiscountCodeService.resolve."""

    async def test_resolves_with_account_uses(self, db_session, account):
        db_session.execute.return_value = make_result(scalar=create_mock_discount_code())
        db_session.scalar.return_value = 1

        resolution = await DiscountCodeService(db_session).resolve(
            "save10", account, 100, "ARS", 100, now=FIXED_NOW
        )

        assert resolution.reason == CodeRejectionReason.ACCOUNT_LIMIT_REACHED
        db_session.commit.assert_not_awaited()

    async def test_unknown_code_skips_usage_lookup(self, db_session, account):
        resolution = await DiscountCodeService(db_session).resolve(
            "ghost", account, 100, "ARS", 100, now=FIXED_NOW
        )

        assert resolution.reason == CodeRejectionReason.CODE_NOT_FOUND
        db_session.scalar.assert_not_awaited()

    async def test_discount_base_defaults_to_subtotal(self, db_session, account):
        db_session.execute.return_value = make_result(scalar=create_mock_discount_code())

        resolution = await DiscountCodeService(db_session).resolve(
            "SAVE10", account, 100, "ARS", 100, now=FIXED_NOW
        )

        assert resolution.discount_minor == 1000

    @pytest.mark.parametrize("quantity,price", [(0, 100), (10, 0)])
    async def test_invalid_purchase(self, db_session, account, quantity, price):
        with pytest.raises(ValidationError):
            await DiscountCodeService(db_session).resolve("SAVE10", account, quantity, "ARS", price)


class TestClaim:
    """Tests for claiming a use inside the purchase transaction."""

    def _resolution(self, **overrides):
        code = make_code(DiscountType.FIXED_AMOUNT, 500, max_uses=1, max_uses_per_account=1)
        values = {
            "code": code.code,
            "applicable": True,
            "discount_minor": 500,
            "discount_code": code,
        }
        values.update(overrides)
        return CodeResolution(**values)

    async def test_claim_records_granted_discount(self, db_session, account_id):
        db_session.execute.side_effect = [make_result(scalar=1), make_result(scalar=1)]
        movement_uid = uuid4()

        await DiscountCodeService(db_session).claim(
            self._resolution(), account_id, movement_uid, 1000, "ars", 450
        )

        statements = [
            str(call.args[0].compile(dialect=postgresql.dialect()))
            for call in db_session.execute.call_args_list
        ]
        assert "discount_codes.current_uses < discount_codes.max_uses" in statements[0]
        assert "ON CONFLICT (discount_code_id, account_id) DO UPDATE" in statements[1]
        usage = db_session.add.call_args.args[0]
        assert usage.movement_uid == movement_uid
        assert usage.discount_applied_minor == 450
        assert usage.currency == "ARS"
        db_session.commit.assert_not_awaited()

    async def test_global_limit_race(self, db_session, account_id):
        db_session.execute.return_value = make_result(scalar=None)

        with pytest.raises(ConstraintViolationError) as exc_info:
            await DiscountCodeService(db_session).claim(
                self._resolution(), account_id, uuid4(), 1000, "ARS", 500
            )

        assert exc_info.value.reason == "USAGE_LIMIT_REACHED"
        assert db_session.execute.await_count == 1

    async def test_account_limit_race(self, db_session, account_id):
        db_session.execute.side_effect = [make_result(scalar=1), make_result(scalar=None)]

        with pytest.raises(ConstraintViolationError) as exc_info:
            await DiscountCodeService(db_session).claim(
                self._resolution(), account_id, uuid4(), 1000, "ARS", 500
            )

        assert exc_info.value.reason == "ACCOUNT_LIMIT_REACHED"
        db_session.add.assert_not_called()

    async def test_rejected_resolution_cannot_be_claimed(self, db_session, account_id):
        rejected = CodeResolution.rejected("SAVE10", CodeRejectionReason.EXPIRED)

        with pytest.raises(ValidationError):
            await DiscountCodeService(db_session).claim(rejected, account_id, uuid4(), 10, "ARS", 0)


class FakeDriverError(Exception):
    def __init__(self, constraint_name: str):
        super().__init__(constraint_name)
        self.sqlstate = "23505"
        self.constraint_name = constraint_name


class TestCreateCode:
    """Tests for DiscountCodeService.create."""

    def _intent(self, **overrides):
        values = {
            "code": " save10 ",
            "name": "Save ten",
            "discount_type": DiscountType.PERCENTAGE,
            "value": Decimal("10"),
        }
        values.update(overrides)
        return DiscountCodeIntent(**values)

    async def test_create_normalizes_and_defaults(self, db_session):
        async def flush():
            db_session.add.call_args.args[0].id = 7

        db_session.flush.side_effect = flush
        db_session.execute.side_effect = [
            make_result(scalar=None),
            make_result(scalar=create_mock_discount_code()),
        ]

        created = await DiscountCodeService(db_session).create(self._intent(), "admin-1")

        row = db_session.add.call_args.args[0]
        assert row.code == "SAVE10"
        assert row.max_uses_per_account == 1
        assert row.current_uses == 0
        assert created.discount_code_id == 7
        db_session.commit.assert_awaited_once()

    async def test_duplicate(self, db_session):
        db_session.execute.return_value = make_result(scalar=create_mock_discount_code())

        with pytest.raises(DuplicateDiscountCodeError):
            await DiscountCodeService(db_session).create(self._intent(), "admin-1")
        db_session.add.assert_not_called()

    async def test_lost_insert_race(self, db_session):
        db_session.flush.side_effect = IntegrityError(
            "INSERT", {}, FakeDriverError("uq_discount_codes_code")
        )

        with pytest.raises(DuplicateDiscountCodeError):
            await DiscountCodeService(db_session).create(self._intent(), "admin-1")
        db_session.rollback.assert_awaited_once()

    async def test_set_enabled_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            await DiscountCodeService(db_session).set_enabled(404, False, "admin-1")

    async def test_get_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            await DiscountCodeService(db_session).get(404)


class TestUsageStats:
    """Tests for DiscountCodeService.usage_stats."""

    async def test_aggregates(self, db_session):
        aggregate = make_result()
        aggregate.one.return_value = (3, 1500, 3000)
        db_session.execute.side_effect = [
            make_result(scalar=create_mock_discount_code()),
            aggregate,
        ]

        stats = await DiscountCodeService(db_session).usage_stats(7)

        assert stats.total_uses == 3
        assert stats.total_discount_minor == 1500
        assert stats.total_tokens == 3000
