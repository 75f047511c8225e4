"""
Credit ledger — the single authority on balances.

Every mutation is one database transaction that touches the account row with
an atomic SQL expression (never read-balance-then-write-balance) and appends
the matching transaction row, so balance == sum(amount) always holds.

  - ensure_initialized: conditional insert; a primary-key conflict means
    another caller created the account first.
  - debit: UPDATE ... WHERE balance >= cost. No row matched → InsufficientCredits,
    nothing written.
  - credit / debit with a reference: applied at most once per (user, reference).
  - Transient contention is retried with exponential backoff + jitter, then
    surfaces as LedgerUnavailable.
"""

import asyncio
import logging
import random
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings
from ..core.errors import InsufficientCredits, LedgerUnavailable
from ..models.base import utcnow
from ..models.credits import CreditAccount, CreditTransaction, TransactionType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

BULK_GIFT_BATCH_SIZE = 20


def credit_costs() -> dict[TransactionType, int]:
    """Cost in credits of each billable action."""
    settings = get_settings()
    return {
        TransactionType.CHAT_MESSAGE: settings.chat_message_cost,
        TransactionType.IMAGE_ANALYSIS: settings.image_analysis_cost,
        TransactionType.CONFERENCE_HOSTING: settings.conference_hosting_cost,
    }


def _is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = getattr(exc, "orig", None)
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code in _RETRYABLE_SQLSTATES
    return False


class CreditLedger:
    """Per-user balance plus append-only history, backed by SQL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_credits: Optional[int] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.default_credits = (
            default_credits if default_credits is not None else settings.default_new_user_credits
        )
        self.max_attempts = max(1, max_attempts or settings.ledger_max_attempts)
        self.base_delay = base_delay if base_delay is not None else settings.ledger_retry_base_delay

    # ── Transaction runner ───────────────────────────────────────────

    async def _transact(self, op: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run fn inside one transaction, retrying transient contention."""
        last_exc: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await fn(session)
            except IntegrityError:
                raise  # Callers interpret constraint conflicts
            except SQLAlchemyError as e:
                if not _is_transient(e):
                    logger.error("Ledger %s failed: %s", op, e)
                    raise LedgerUnavailable(f"Ledger {op} failed: {e}") from e
                last_exc = e
                delay = self.base_delay * (2 ** attempt) + random.uniform(0, self.base_delay)
                logger.warning(
                    "Ledger %s contention (attempt %d/%d) — retrying in %.2fs",
                    op, attempt + 1, self.max_attempts, delay,
                )
                await asyncio.sleep(delay)

        raise LedgerUnavailable(
            f"Ledger {op} not confirmed after {self.max_attempts} attempts"
        ) from last_exc

    async def _read(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._session_factory() as session:
                return await fn(session)
        except SQLAlchemyError as e:
            raise LedgerUnavailable(f"Ledger read failed: {e}") from e

    # ── Reads ────────────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> int:
        """Current balance. 0 for an unknown user; never creates an account."""
        if not user_id:
            return 0

        async def _get(session: AsyncSession) -> int:
            balance = await session.scalar(
                select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
            )
            return balance or 0

        return await self._read(_get)

    async def has_sufficient_balance(self, user_id: str, cost: int) -> bool:
        """Advisory check for admission control and UI. debit() re-checks atomically."""
        return await self.get_balance(user_id) >= cost

    async def history(self, user_id: str, page_size: int = 50) -> AsyncIterator[CreditTransaction]:
        """
        Newest-first transactions, fetched lazily one page at a time.
        Each call starts a fresh iteration.
        """
        last_id: Optional[int] = None
        while True:
            async def _page(session: AsyncSession) -> list[CreditTransaction]:
                stmt = (
                    select(CreditTransaction)
                    .where(CreditTransaction.user_id == user_id)
                    .order_by(CreditTransaction.id.desc())
                    .limit(page_size)
                )
                if last_id is not None:
                    stmt = stmt.where(CreditTransaction.id < last_id)
                return list((await session.execute(stmt)).scalars().all())

            rows = await self._read(_page)
            for row in rows:
                yield row
            if len(rows) < page_size:
                return
            last_id = rows[-1].id

    async def recent_history(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        rows = []
        async for row in self.history(user_id, page_size=min(limit, 100)):
            rows.append(row)
            if len(rows) >= limit:
                break
        return rows

    async def audit(self, user_id: str) -> tuple[int, int]:
        """Return (cached balance, sum of transaction amounts) for reconciliation."""

        async def _audit(session: AsyncSession) -> tuple[int, int]:
            balance = await session.scalar(
                select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
            )
            total = await session.scalar(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0))
                .where(CreditTransaction.user_id == user_id)
            )
            return balance or 0, int(total or 0)

        return await self._read(_audit)

    # ── Mutations ────────────────────────────────────────────────────

    async def ensure_initialized(self, user_id: str) -> bool:
        """
        Create the account with the welcome bonus if it does not exist.
        Returns True only for the caller that actually created it.
        """
        if not user_id:
            raise ValueError("user_id is required")

        async def _exists(session: AsyncSession) -> bool:
            found = await session.scalar(
                select(CreditAccount.user_id).where(CreditAccount.user_id == user_id)
            )
            return found is not None

        if await self._read(_exists):
            return False

        async def _create(session: AsyncSession) -> bool:
            session.add(CreditAccount(user_id=user_id, balance=self.default_credits))
            await session.flush()
            session.add(CreditTransaction(
                user_id=user_id,
                amount=self.default_credits,
                type=TransactionType.WELCOME_BONUS.value,
                description="Welcome bonus credits",
            ))
            await session.flush()
            return True

        try:
            created = await self._transact("ensure_initialized", _create)
        except IntegrityError:
            # Lost the race: someone else inserted the account
            return False

        logger.info("Initialized %d credits for new user: %s", self.default_credits, user_id)
        return created

    async def debit(
        self,
        user_id: str,
        cost: int,
        type: TransactionType,
        description: str = "",
        reference: Optional[str] = None,
    ) -> int:
        """
        Atomically check-and-decrement. Returns the new balance.
        Raises InsufficientCredits with nothing written if the balance
        cannot cover the cost at commit time.
        """
        if cost <= 0:
            raise ValueError("cost must be positive")
        tx_type = TransactionType(type)

        async def _debit(session: AsyncSession) -> int:
            if reference:
                replay = await self._replayed_balance(session, user_id, reference)
                if replay is not None:
                    return replay

            result = await session.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.balance >= cost)
                .values(balance=CreditAccount.balance - cost, updated_at=utcnow())
                .returning(CreditAccount.balance)
                .execution_options(synchronize_session=False)
            )
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                balance = await session.scalar(
                    select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
                )
                raise InsufficientCredits(user_id, cost, balance or 0)

            session.add(CreditTransaction(
                user_id=user_id,
                amount=-cost,
                type=tx_type.value,
                description=description or f"Used for {tx_type.value.replace('_', ' ')}",
                reference=reference,
            ))
            await session.flush()
            return new_balance

        try:
            new_balance = await self._transact("debit", _debit)
        except IntegrityError as e:
            return await self._resolve_reference_conflict(user_id, reference, "debit", e)

        logger.info("Deducted %d credits from user %s for %s", cost, user_id, tx_type.value)
        return new_balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str = "",
        reference: Optional[str] = None,
    ) -> int:
        """Atomically increment and record. Returns the new balance."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        tx_type = TransactionType(type)

        await self.ensure_initialized(user_id)

        async def _credit(session: AsyncSession) -> int:
            if reference:
                replay = await self._replayed_balance(session, user_id, reference)
                if replay is not None:
                    return replay

            result = await session.execute(
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(balance=CreditAccount.balance + amount, updated_at=utcnow())
                .returning(CreditAccount.balance)
                .execution_options(synchronize_session=False)
            )
            new_balance = result.scalar_one_or_none()
            if new_balance is None:
                raise LedgerUnavailable(f"No credit account for user {user_id}")

            session.add(CreditTransaction(
                user_id=user_id,
                amount=amount,
                type=tx_type.value,
                description=description or f"Added from {tx_type.value.replace('_', ' ')}",
                reference=reference,
            ))
            await session.flush()
            return new_balance

        try:
            new_balance = await self._transact("credit", _credit)
        except IntegrityError as e:
            return await self._resolve_reference_conflict(user_id, reference, "credit", e)

        logger.info("Added %d credits to user %s from %s", amount, user_id, tx_type.value)
        return new_balance

    # ── Idempotency helpers ──────────────────────────────────────────

    async def _replayed_balance(
        self, session: AsyncSession, user_id: str, reference: str
    ) -> Optional[int]:
        """Current balance if reference was already applied, else None."""
        seen = await session.scalar(
            select(CreditTransaction.id).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.reference == reference,
            )
        )
        if seen is None:
            return None
        logger.info("Ledger reference %s already applied for user %s", reference, user_id)
        balance = await session.scalar(
            select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
        )
        return balance or 0

    async def _resolve_reference_conflict(
        self, user_id: str, reference: Optional[str], op: str, exc: IntegrityError
    ) -> int:
        """A concurrent writer applied the same reference first: report its result."""
        if reference:
            async def _replay(session: AsyncSession) -> Optional[int]:
                return await self._replayed_balance(session, user_id, reference)

            replay = await self._read(_replay)
            if replay is not None:
                return replay
        raise LedgerUnavailable(f"Ledger {op} conflicted for user {user_id}") from exc


# ── Admin gifts ──────────────────────────────────────────────────────

async def gift_credits(
    ledger: CreditLedger,
    user_id: str,
    amount: int,
    reason: str = "",
) -> int:
    """Send credits to a single user. Returns the new balance."""
    return await ledger.credit(
        user_id,
        amount,
        TransactionType.ADMIN_GIFT,
        reason or "Credits gifted by admin",
    )


async def gift_credits_bulk(
    ledger: CreditLedger,
    user_ids: list[str],
    amount: int,
    reason: str = "",
    batch_size: int = BULK_GIFT_BATCH_SIZE,
) -> dict[str, int]:
    """
    Send the same amount to many users, in concurrent batches.
    Returns {"successful": n, "failed": m}.
    """
    successful = 0
    failed = 0

    if not user_ids or amount <= 0:
        return {"successful": successful, "failed": failed}

    for start in range(0, len(user_ids), batch_size):
        batch = user_ids[start:start + batch_size]
        results = await asyncio.gather(
            *(
                ledger.credit(
                    uid,
                    amount,
                    TransactionType.ADMIN_BULK_GIFT,
                    reason or "Bulk credits gifted by admin",
                )
                for uid in batch
            ),
            return_exceptions=True,
        )
        for uid, result in zip(batch, results):
            if isinstance(result, Exception):
                failed += 1
                logger.warning("Bulk gift to %s failed: %s", uid, result)
            else:
                successful += 1

    logger.info("Bulk gift of %d credits: %d ok, %d failed", amount, successful, failed)
    return {"successful": successful, "failed": failed}
