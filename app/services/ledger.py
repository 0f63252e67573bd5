"""
Ledger Service - Movement log and balance aggregation.

NO DICTIONARIES - All operations use strongly typed domain models.

Every write appends exactly one movement and updates the account's running
balance in the same transaction. Credits are an atomic upsert that adds to the
buckets; debits are a conditional update that only matches while enough tokens
are available. Neither path reads the balance before writing it, so concurrent
writers against one account commute.
"""

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import RowMapping, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.errors import translated_errors
from app.db.models import Movement
from app.db.models import TokenBalance as TokenBalanceRow
from app.db.session import unit_of_work
from app.exceptions import (
    ConcurrencyConflictError,
    DataIntegrityError,
    InsufficientTokensError,
    InvalidAmountError,
    ValidationError,
    WriteVerificationError,
)
from app.models.api import TOKEN_MOVEMENT_TYPES, MovementType
from app.models.domain import (
    BalanceDelta,
    LedgerEntry,
    MovementData,
    MovementIntent,
    MovementMetadata,
    MovementPage,
    ReconciliationReport,
    TokenBalance,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

SNAPSHOT_ISOLATION_LEVEL = "REPEATABLE READ"


# ============================================================================
# Balance Aggregation (pure)
# ============================================================================


def balance_delta_for(
    movement_type: MovementType, amount: int, delta: int | None = None
) -> BalanceDelta:
    """
    Bucket increments produced by one movement.

    ADJUSTMENT credits the bonus bucket when positive and the consumed bucket
    when negative, so availability is always derived from the four buckets.
    """
    if movement_type == MovementType.PURCHASED:
        return BalanceDelta(purchased=amount)
    if movement_type == MovementType.BONUS:
        return BalanceDelta(bonus=amount)
    if movement_type == MovementType.CONSUMED:
        return BalanceDelta(consumed=amount)
    if movement_type == MovementType.REFUNDED:
        return BalanceDelta(refunded=amount)
    if movement_type == MovementType.ADJUSTMENT:
        if delta is None or delta == 0:
            raise ValidationError("Adjustment movement carries no signed delta")
        return BalanceDelta(bonus=delta) if delta > 0 else BalanceDelta(consumed=-delta)
    raise ValidationError(f"{movement_type.value} does not affect token balances")


def apply_movement(balance: TokenBalance, movement: MovementIntent | MovementData) -> TokenBalance:
    """
    Apply one movement to a balance snapshot.

    Raises:
        InsufficientTokensError: The movement would make availability negative
    """
    delta = balance_delta_for(movement.movement_type, movement.amount, movement.metadata.delta)

    purchased = balance.total_purchased + delta.purchased
    bonus = balance.total_bonus + delta.bonus
    consumed = balance.total_consumed + delta.consumed
    refunded = balance.total_refunded + delta.refunded
    available = purchased + bonus - consumed - refunded

    if available < 0:
        raise InsufficientTokensError(balance.total_available, delta.consumed + delta.refunded)

    return TokenBalance(
        account_id=balance.account_id,
        total_available=available,
        total_purchased=purchased,
        total_bonus=bonus,
        total_consumed=consumed,
        total_refunded=refunded,
        updated_at=getattr(movement, "created_at", balance.updated_at),
    )


def replay(account_id: UUID, movements: Iterable[MovementIntent | MovementData]) -> TokenBalance:
    """Fold movements, in log order, into a balance starting from zero."""
    balance = TokenBalance.empty(account_id)
    for movement in movements:
        balance = apply_movement(balance, movement)
    return balance


# ============================================================================
# Ledger Service
# ============================================================================


class LedgerService:
    """
    Movement log with a transactionally maintained balance per account.

    Write pattern:
    1. Atomic bucket update (upsert for credits, conditional update for debits)
    2. Insert the movement row
    3. Read back and verify
    4. Commit (or leave open when staged inside a caller's transaction)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    async def get_by_account_id(self, account_id: UUID) -> TokenBalance:
        """
        Get the balance of an account.

        An account without movements has an all-zero balance. Store failures
        raise ExternalDependencyError, never a fabricated zero.
        """
        with translated_errors("token_balance"):
            row = await self._fetch_balance_row(account_id)

        if row is None:
            return TokenBalance.empty(account_id)
        return self._balance_to_domain(row)

    async def list_movements(
        self,
        account_id: UUID,
        page: int = 1,
        limit: int = 20,
        movement_type: MovementType | None = None,
    ) -> MovementPage:
        """List token movements of an account, newest first."""
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if movement_type is not None and not movement_type.is_token_movement:
            raise ValidationError(f"{movement_type.value} is not a token movement type")
        limit = min(limit, settings.movement_page_size_max)

        types = (movement_type,) if movement_type else TOKEN_MOVEMENT_TYPES
        conditions = (Movement.account_id == account_id, Movement.movement_type.in_(types))

        with translated_errors("movements"):
            total = await self.session.scalar(
                select(func.count()).select_from(Movement).where(*conditions)
            )
            result = await self.session.execute(
                select(Movement)
                .where(*conditions)
                .order_by(Movement.created_at.desc(), Movement.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )

        movements = [self._movement_to_domain(row) for row in result.scalars().all()]
        return MovementPage(movements=movements, page=page, limit=limit, total=total or 0)

    async def reconcile(self, account_id: UUID) -> ReconciliationReport:
        """
        Replay the movement log of an account and compare with its stored balance.

        The stored balance and the log are read from one REPEATABLE READ
        snapshot. Movements replay in id order, which is the order their balance
        updates were applied. Must be the first statement of the session's
        transaction; the snapshot is released before returning.

        Raises:
            DataIntegrityError: The log itself replays to a negative balance
        """
        with translated_errors("movements"):
            await self.session.connection(
                execution_options={"isolation_level": SNAPSHOT_ISOLATION_LEVEL}
            )
        try:
            stored = await self.get_by_account_id(account_id)

            with translated_errors("movements"):
                result = await self.session.execute(
                    select(Movement)
                    .where(
                        Movement.account_id == account_id,
                        Movement.movement_type.in_(TOKEN_MOVEMENT_TYPES),
                    )
                    .order_by(Movement.id.asc())
                )
            movements = [self._movement_to_domain(row) for row in result.scalars().all()]
        finally:
            await self.session.rollback()

        try:
            replayed = replay(account_id, movements)
        except InsufficientTokensError as exc:
            raise DataIntegrityError(
                f"Movement log of {account_id} replays to a negative balance: {exc}"
            ) from exc

        report = ReconciliationReport(
            account_id=account_id,
            stored=stored,
            replayed=replayed,
            movement_count=len(movements),
        )
        if not report.consistent:
            logger.error(
                "balance_reconciliation_mismatch",
                account_id=str(account_id),
                stored_available=stored.total_available,
                replayed_available=replayed.total_available,
            )
        return report

    # ------------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------------

    async def append(self, intent: MovementIntent) -> LedgerEntry:
        """
        Append one movement and update the balance atomically, then commit.

        Raises:
            InsufficientTokensError: A debit exceeds the available balance
            ConcurrencyConflictError: The write lost a serialization race
            ExternalDependencyError: The store is unreachable
        """
        try:
            async with unit_of_work(self.session, "token_balance"):
                entry = await self.stage(intent)
        except InsufficientTokensError as exc:
            metrics.record_rejection(intent.movement_type.value, exc.reason)
            logger.warning(
                "movement_rejected",
                account_id=str(intent.account_id),
                movement_type=intent.movement_type.value,
                amount=intent.amount,
                available=exc.available,
            )
            raise
        except ConcurrencyConflictError:
            metrics.record_conflict("ledger_append")
            raise

        metrics.record_movement(intent.movement_type.value, intent.amount)
        return entry

    async def stage(self, intent: MovementIntent) -> LedgerEntry:
        """
        Write one movement and its balance update without committing.

        Used by callers that group several ledger writes into one transaction.
        """
        delta = balance_delta_for(intent.movement_type, intent.amount, intent.metadata.delta)

        if delta.consumed or delta.refunded:
            balance = await self._debit_balance(intent.account_id, delta)
        else:
            balance = await self._credit_balance(intent.account_id, delta)

        movement = await self._insert_movement(intent)

        logger.info(
            "movement_appended",
            account_id=str(intent.account_id),
            movement_uid=str(movement.uid),
            movement_type=intent.movement_type.value,
            amount=intent.amount,
            total_available=balance.total_available,
            created_by=intent.created_by,
        )
        return LedgerEntry(balance=balance, movement=movement)

    async def add_bonus_tokens(
        self, account_id: UUID, amount: int, description: str, actor: str | None
    ) -> LedgerEntry:
        """
        Grant bonus tokens to an account.

        Not idempotent: every call grants again. Callers de-duplicate retries
        with the returned movement uid.
        """
        intent = MovementIntent(
            account_id=account_id,
            movement_type=MovementType.BONUS,
            amount=amount,
            metadata=MovementMetadata(token_amount=amount, description=_clean(description)),
            created_by=actor,
        )
        entry = await self.append(intent)
        logger.info(
            "bonus_tokens_granted",
            account_id=str(account_id),
            amount=amount,
            movement_uid=str(entry.movement.uid),
            created_by=actor,
        )
        return entry

    async def adjust_balance(
        self, account_id: UUID, delta: int, description: str, actor: str | None
    ) -> LedgerEntry:
        """Correct a balance with a signed ADJUSTMENT movement."""
        if delta == 0:
            raise InvalidAmountError(delta, field="delta")

        intent = MovementIntent(
            account_id=account_id,
            movement_type=MovementType.ADJUSTMENT,
            amount=abs(delta),
            metadata=MovementMetadata(
                token_amount=abs(delta), delta=delta, description=_clean(description)
            ),
            created_by=actor,
        )
        return await self.append(intent)

    async def consume_tokens(
        self,
        account_id: UUID,
        amount: int,
        service_type: str | None = None,
        description: str | None = None,
        actor: str | None = None,
    ) -> LedgerEntry:
        """Spend tokens from an account."""
        intent = MovementIntent(
            account_id=account_id,
            movement_type=MovementType.CONSUMED,
            amount=amount,
            metadata=MovementMetadata(
                token_amount=amount,
                service_type=service_type,
                description=_clean(description) if description else None,
            ),
            created_by=actor,
        )
        return await self.append(intent)

    async def refund_tokens(
        self,
        account_id: UUID,
        amount: int,
        description: str,
        actor: str | None = None,
        related_movement_uid: UUID | None = None,
    ) -> LedgerEntry:
        """Return tokens out of an account (e.g. a refunded purchase)."""
        intent = MovementIntent(
            account_id=account_id,
            movement_type=MovementType.REFUNDED,
            amount=amount,
            metadata=MovementMetadata(
                token_amount=amount,
                description=_clean(description),
                related_movement_uid=str(related_movement_uid) if related_movement_uid else None,
            ),
            created_by=actor,
        )
        return await self.append(intent)

    # ------------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------------

    async def _fetch_balance_row(self, account_id: UUID) -> RowMapping | None:
        """Read the balance row of an account, if any."""
        table = TokenBalanceRow.__table__
        result = await self.session.execute(
            select(table).where(table.c.account_id == account_id, table.c.deleted_at.is_(None))
        )
        return result.mappings().one_or_none()

    async def _credit_balance(self, account_id: UUID, delta: BalanceDelta) -> TokenBalance:
        """
        Add credit buckets with a single upsert.

        Creates the balance row on the first movement of an account.
        """
        table = TokenBalanceRow.__table__
        stmt = pg_insert(table).values(
            account_id=account_id,
            total_available=delta.available,
            total_purchased=delta.purchased,
            total_bonus=delta.bonus,
            total_consumed=0,
            total_refunded=0,
        )
        purchased = table.c.total_purchased + stmt.excluded.total_purchased
        bonus = table.c.total_bonus + stmt.excluded.total_bonus
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.account_id],
            set_={
                "total_purchased": purchased,
                "total_bonus": bonus,
                "total_available": (
                    purchased + bonus - table.c.total_consumed - table.c.total_refunded
                ),
                "updated_at": func.now(),
            },
        ).returning(*table.c)

        result = await self.session.execute(stmt)
        row = result.mappings().one_or_none()
        if row is None:
            raise WriteVerificationError(f"Balance upsert for {account_id} returned no row")
        return self._balance_to_domain(row)

    async def _debit_balance(self, account_id: UUID, delta: BalanceDelta) -> TokenBalance:
        """
        Add debit buckets only while enough tokens are available.

        Raises:
            InsufficientTokensError: No row matched the availability condition
        """
        required = delta.consumed + delta.refunded
        table = TokenBalanceRow.__table__
        consumed = table.c.total_consumed + delta.consumed
        refunded = table.c.total_refunded + delta.refunded
        stmt = (
            update(table)
            .where(
                table.c.account_id == account_id,
                table.c.deleted_at.is_(None),
                table.c.total_available >= required,
            )
            .values(
                total_consumed=consumed,
                total_refunded=refunded,
                total_available=(table.c.total_purchased + table.c.total_bonus - consumed - refunded),
                updated_at=func.now(),
            )
            .returning(*table.c)
        )

        result = await self.session.execute(stmt)
        row = result.mappings().one_or_none()
        if row is None:
            current = await self._fetch_balance_row(account_id)
            available = current["total_available"] if current is not None else 0
            raise InsufficientTokensError(available, required)
        return self._balance_to_domain(row)

    async def _insert_movement(self, intent: MovementIntent) -> MovementData:
        """Insert the movement row and verify it was written."""
        movement = Movement(
            account_id=intent.account_id,
            movement_type=intent.movement_type,
            status=intent.status,
            amount=intent.amount,
            movement_metadata=intent.metadata.to_json(),
            created_by=intent.created_by,
        )
        self.session.add(movement)
        await self.session.flush()

        verified = await self.session.get(Movement, movement.id)
        if verified is None:
            raise WriteVerificationError(f"Movement {movement.id} not found after insert")
        if verified.amount != intent.amount:
            raise DataIntegrityError(
                f"Movement amount mismatch: expected {intent.amount}, got {verified.amount}"
            )
        return self._movement_to_domain(verified)

    def _balance_to_domain(self, row: RowMapping) -> TokenBalance:
        """Convert a balance row to domain model, re-checking its invariants."""
        try:
            return TokenBalance(
                account_id=row["account_id"],
                total_available=row["total_available"],
                total_purchased=row["total_purchased"],
                total_bonus=row["total_bonus"],
                total_consumed=row["total_consumed"],
                total_refunded=row["total_refunded"],
                updated_at=row["updated_at"],
            )
        except ValueError as exc:
            raise DataIntegrityError(str(exc)) from exc

    def _movement_to_domain(self, row: Movement) -> MovementData:
        """Convert ORM model to domain model."""
        return MovementData(
            movement_id=row.id,
            uid=row.uid,
            account_id=row.account_id,
            movement_type=row.movement_type,
            status=row.status,
            amount=row.amount,
            metadata=MovementMetadata.from_json(row.movement_metadata),
            created_by=row.created_by,
            created_at=row.created_at,
        )


def _clean(description: str) -> str:
    return description.strip() if description else description
