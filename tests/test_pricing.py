"""
Tests for PricingService.

Covers the order of discount application, the price floor and the
single-transaction settlement of a purchase.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from app.config import settings
from app.exceptions import ConcurrencyConflictError, ConstraintViolationError, ValidationError
from app.models.api import CodeRejectionReason, DiscountType, MovementType
from app.models.domain import CodeResolution, LedgerEntry, TierSelection
from app.services.pricing import PricingService, compute_quote, purchase_metadata
from factories import FIXED_NOW, make_balance, make_code, make_movement_data, make_tier


def selection(percentage="10", bulk_discount_id=3) -> TierSelection:
    return TierSelection(
        bulk_discount_id=bulk_discount_id,
        bulk_discount_name="Volume",
        tier=make_tier(100, percentage),
    )


def applicable(code) -> CodeResolution:
    return CodeResolution(code=code.code, applicable=True, discount_code=code)


def ledger_entry(account_id, movement_type, amount, balance) -> LedgerEntry:
    return LedgerEntry(
        balance=balance,
        movement=make_movement_data(account_id, movement_type, amount),
    )


# ============================================================================
# Quote Arithmetic
# ============================================================================


class TestComputeQuote:
    """Tests for compute_quote."""

    def test_bulk_then_fixed_code(self, account_id):
        quote = compute_quote(
            account_id,
            1000,
            "ars",
            10,
            selection("10"),
            make_code(DiscountType.FIXED_AMOUNT, 500),
            minimum_charge_minor=0,
        )

        assert quote.subtotal_minor == 10000
        assert quote.bulk_discount.amount_minor == 1000
        assert quote.post_bulk_subtotal_minor == 9000
        assert quote.code_discount.amount_minor == 500
        assert quote.total_minor == 8500
        assert quote.total_discount_minor == 1500
        assert quote.currency == "ARS"
        assert quote.floor_applied is False

    def test_percentage_code_applies_to_post_bulk(self, account_id):
        quote = compute_quote(
            account_id, 1000, "USD", 10, selection("10"), make_code(DiscountType.PERCENTAGE, 10), 0
        )

        assert quote.code_discount.amount_minor == 900
        assert quote.code_discount.percentage == Decimal("10")
        assert quote.total_minor == 8100

    def test_no_discounts(self, account_id):
        quote = compute_quote(account_id, 7, "USD", 99, None, None, 0)

        assert quote.total_minor == 693
        assert quote.bulk_discount is None
        assert quote.code_discount is None

    def test_bonus_tokens_do_not_change_price(self, account_id):
        quote = compute_quote(
            account_id, 1000, "USD", 10, None, make_code(DiscountType.BONUS_TOKENS, 200), 0
        )

        assert quote.total_minor == 10000
        assert quote.bonus_tokens == 200

    def test_floor_raises_total(self, account_id):
        quote = compute_quote(
            account_id,
            10,
            "USD",
            100,
            selection("50"),
            make_code(DiscountType.FIXED_AMOUNT, 450),
            minimum_charge_minor=100,
        )

        assert quote.unclamped_total_minor == 50
        assert quote.total_minor == 100
        assert quote.floor_applied is True
        assert quote.code_discount.amount_minor == 400
        assert quote.bulk_discount.amount_minor == 500
        assert quote.total_discount_minor == 900

    def test_floor_reduces_code_discount(self, account_id):
        quote = compute_quote(
            account_id,
            100,
            "USD",
            100,
            None,
            make_code(DiscountType.FIXED_AMOUNT, 5000),
            minimum_charge_minor=9000,
        )

        assert quote.total_minor == 9000
        assert quote.unclamped_total_minor == 5000
        assert quote.code_discount.amount_minor == 1000
        assert purchase_metadata(quote, None, None).code_discount_amount_minor == 1000

    def test_floor_reaches_bulk_discount_after_code(self, account_id):
        quote = compute_quote(
            account_id,
            100,
            "USD",
            100,
            selection("50"),
            make_code(DiscountType.FIXED_AMOUNT, 1000),
            minimum_charge_minor=9000,
        )

        assert quote.unclamped_total_minor == 4000
        assert quote.code_discount.amount_minor == 0
        assert quote.bulk_discount.amount_minor == 1000
        assert quote.total_discount_minor == 1000

    def test_floor_capped_at_subtotal(self, account_id):
        quote = compute_quote(account_id, 1, "USD", 30, None, None, minimum_charge_minor=100)

        assert quote.total_minor == 30
        assert quote.floor_applied is False

    def test_full_discount_reaches_zero(self, account_id):
        quote = compute_quote(
            account_id, 1, "USD", 30, None, make_code(DiscountType.PERCENTAGE, 100), 0
        )
        assert quote.total_minor == 0


class TestPurchaseMetadata:
    """Tests for the breakdown stored on the purchase movement."""

    def test_breakdown(self, account_id):
        quote = compute_quote(
            account_id, 1000, "ARS", 10, selection("10"), make_code(DiscountType.FIXED_AMOUNT, 500), 0
        )

        meta = purchase_metadata(quote, None, "pay_123")

        assert meta.token_amount == 1000
        assert meta.original_price_minor == 10000
        assert meta.bulk_discount_amount_minor == 1000
        assert meta.code_discount_amount_minor == 500
        assert meta.discount_amount_minor == 1500
        assert meta.total_charged_minor == 8500
        assert meta.discount_code == "SAVE10"
        assert meta.payment_id == "pay_123"
        assert meta.unclamped_total_minor is None
        assert meta.description == "Purchase of 1000 tokens"


# ============================================================================
# Service
# ============================================================================


class TestQuote:
    """Tests for PricingService.quote_token_purchase."""

    async def test_quote_writes_nothing(self, db_session, account):
        service = PricingService(db_session)
        code = make_code(DiscountType.FIXED_AMOUNT, 500)

        with patch.object(
            service.bulk_discounts, "resolve_best", new_callable=AsyncMock
        ) as mock_bulk:
            mock_bulk.return_value = selection("10")
            with patch.object(
                service.discount_codes, "resolve", new_callable=AsyncMock
            ) as mock_code:
                mock_code.return_value = applicable(code)

                quote = await service.quote_token_purchase(
                    account, 1000, "ARS", 10, discount_code="SAVE10", now=FIXED_NOW
                )

        assert quote.total_minor == 8500
        assert mock_code.call_args.kwargs["discount_base_minor"] == 9000
        db_session.commit.assert_not_awaited()
        db_session.add.assert_not_called()

    async def test_rejected_code_raises_with_reason(self, db_session, account):
        service = PricingService(db_session)

        with patch.object(
            service.bulk_discounts, "resolve_best", new_callable=AsyncMock
        ) as mock_bulk:
            mock_bulk.return_value = None
            with patch.object(
                service.discount_codes, "resolve", new_callable=AsyncMock
            ) as mock_code:
                mock_code.return_value = CodeResolution.rejected(
                    "OLD", CodeRejectionReason.EXPIRED
                )

                with pytest.raises(ConstraintViolationError) as exc_info:
                    await service.quote_token_purchase(
                        account, 100, "ARS", 10, discount_code="OLD"
                    )

        assert exc_info.value.reason == "EXPIRED"

    @pytest.mark.parametrize(
        "quantity,currency,price",
        [(0, "ARS", 10), (10, "ARS", 0), (10, "PESO", 10)],
    )
    async def test_invalid_input(self, db_session, account, quantity, currency, price):
        with pytest.raises(ValidationError):
            await PricingService(db_session).quote_token_purchase(
                account, quantity, currency, price
            )

    async def test_resolve_code_uses_post_bulk_base(self, db_session, account):
        service = PricingService(db_session)

        with patch.object(
            service.bulk_discounts, "resolve_best", new_callable=AsyncMock
        ) as mock_bulk:
            mock_bulk.return_value = selection("20")
            with patch.object(
                service.discount_codes, "resolve", new_callable=AsyncMock
            ) as mock_code:
                await service.resolve_code("SAVE10", account, 500, "ARS", 10, now=FIXED_NOW)

        assert mock_code.call_args.kwargs["discount_base_minor"] == 4000


class TestPurchase:
    """Tests for PricingService.price_token_purchase."""

    async def test_bulk_and_code_purchase(self, db_session, account):
        service = PricingService(db_session)
        code = make_code(DiscountType.FIXED_AMOUNT, 500)
        balance = make_balance(account.account_id, purchased=1000)
        purchase = ledger_entry(account.account_id, MovementType.PURCHASED, 1000, balance)

        with (
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.discount_codes, "resolve", new_callable=AsyncMock) as resolve,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
            patch.object(service.discount_codes, "claim", new_callable=AsyncMock) as claim,
            patch.object(service.bulk_discounts, "record_usage", new_callable=AsyncMock) as usage,
        ):
            bulk.return_value = selection("10")
            resolve.return_value = applicable(code)
            stage.return_value = purchase

            result = await service.price_token_purchase(
                account, 1000, "ARS", 10, discount_code="SAVE10", actor="checkout"
            )

        intent = stage.call_args.args[0]
        assert intent.movement_type == MovementType.PURCHASED
        assert intent.amount == 1000
        assert intent.metadata.total_charged_minor == 8500
        assert intent.created_by == "checkout"
        assert claim.call_args.kwargs["movement_uid"] == purchase.movement.uid
        assert claim.call_args.kwargs["discount_applied_minor"] == 500
        usage.assert_awaited_once_with(3, tokens_sold=1000, discount_minor=1000)
        assert result.quote.total_minor == 8500
        assert result.bonus_movement is None
        assert result.balance == balance
        db_session.commit.assert_awaited_once()

    async def test_floor_clamped_purchase_claims_granted_discount(self, db_session, account):
        service = PricingService(db_session)
        code = make_code(DiscountType.FIXED_AMOUNT, 5000)
        balance = make_balance(account.account_id, purchased=100)
        purchase = ledger_entry(account.account_id, MovementType.PURCHASED, 100, balance)

        with (
            patch.object(settings, "minimum_charge_minor", 9000),
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.discount_codes, "resolve", new_callable=AsyncMock) as resolve,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
            patch.object(service.discount_codes, "claim", new_callable=AsyncMock) as claim,
        ):
            bulk.return_value = None
            resolve.return_value = applicable(code)
            stage.return_value = purchase

            result = await service.price_token_purchase(
                account, 100, "ARS", 100, discount_code="SAVE10"
            )

        metadata = stage.call_args.args[0].metadata
        assert metadata.total_charged_minor == 9000
        assert metadata.floor_applied is True
        assert metadata.code_discount_amount_minor == 1000
        assert claim.call_args.kwargs["discount_applied_minor"] == 1000
        assert result.quote.total_discount_minor == 1000

    async def test_bonus_tokens_code_writes_linked_bonus(self, db_session, account):
        service = PricingService(db_session)
        code = make_code(DiscountType.BONUS_TOKENS, 200, code="EXTRA")
        purchase = ledger_entry(
            account.account_id,
            MovementType.PURCHASED,
            1000,
            make_balance(account.account_id, purchased=1000),
        )
        bonus = ledger_entry(
            account.account_id,
            MovementType.BONUS,
            200,
            make_balance(account.account_id, purchased=1000, bonus=200),
        )

        with (
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.discount_codes, "resolve", new_callable=AsyncMock) as resolve,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
            patch.object(service.discount_codes, "claim", new_callable=AsyncMock),
            patch.object(service.bulk_discounts, "record_usage", new_callable=AsyncMock) as usage,
        ):
            bulk.return_value = None
            resolve.return_value = applicable(code)
            stage.side_effect = [purchase, bonus]

            result = await service.price_token_purchase(
                account, 1000, "ARS", 10, discount_code="EXTRA"
            )

        bonus_intent = stage.call_args_list[1].args[0]
        assert bonus_intent.movement_type == MovementType.BONUS
        assert bonus_intent.amount == 200
        assert bonus_intent.metadata.related_movement_uid == str(purchase.movement.uid)
        assert result.bonus_movement == bonus.movement
        assert result.balance.total_available == 1200
        assert result.quote.total_minor == 10000
        usage.assert_not_awaited()

    async def test_exhausted_code_rolls_back_everything(self, db_session, account):
        service = PricingService(db_session)
        code = make_code(DiscountType.FIXED_AMOUNT, 500, max_uses=1)

        with (
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.discount_codes, "resolve", new_callable=AsyncMock) as resolve,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
            patch.object(service.discount_codes, "claim", new_callable=AsyncMock) as claim,
            patch.object(service.bulk_discounts, "record_usage", new_callable=AsyncMock) as usage,
        ):
            bulk.return_value = selection("10")
            resolve.return_value = applicable(code)
            stage.return_value = ledger_entry(
                account.account_id,
                MovementType.PURCHASED,
                1000,
                make_balance(account.account_id, purchased=1000),
            )
            claim.side_effect = ConstraintViolationError("USAGE_LIMIT_REACHED")

            with pytest.raises(ConstraintViolationError):
                await service.price_token_purchase(account, 1000, "ARS", 10, discount_code="X")

        usage.assert_not_awaited()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_conflict_propagates(self, db_session, account):
        service = PricingService(db_session)

        with (
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
        ):
            bulk.return_value = None
            stage.side_effect = ConcurrencyConflictError("token_balance")

            with pytest.raises(ConcurrencyConflictError):
                await service.price_token_purchase(account, 10, "ARS", 10)

        db_session.rollback.assert_awaited_once()

    async def test_purchase_without_discounts(self, db_session, account):
        service = PricingService(db_session)

        with (
            patch.object(service.bulk_discounts, "resolve_best", new_callable=AsyncMock) as bulk,
            patch.object(service.ledger, "stage", new_callable=AsyncMock) as stage,
            patch.object(service.discount_codes, "claim", new_callable=AsyncMock) as claim,
        ):
            bulk.return_value = None
            stage.return_value = ledger_entry(
                account.account_id,
                MovementType.PURCHASED,
                10,
                make_balance(account.account_id, purchased=10),
            )

            result = await service.price_token_purchase(
                account, 10, "ARS", 10, payment_id=str(uuid4())
            )

        claim.assert_not_awaited()
        assert result.quote.total_discount_minor == 0
