import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from microbial.core.errors import InsufficientCredits, LedgerUnavailable
from microbial.models.credits import TransactionType
from microbial.services.credits import CreditLedger, gift_credits, gift_credits_bulk


async def _assert_consistent(ledger: CreditLedger, user_id: str) -> int:
    balance, total = await ledger.audit(user_id)
    assert balance == total
    assert balance >= 0
    return balance


@pytest.mark.asyncio
async def test_new_user_gets_welcome_bonus_once(ledger):
    assert await ledger.ensure_initialized("u1") is True
    assert await ledger.ensure_initialized("u1") is False

    assert await ledger.get_balance("u1") == 20
    history = await ledger.recent_history("u1")
    assert [t.type for t in history] == [TransactionType.WELCOME_BONUS.value]
    await _assert_consistent(ledger, "u1")


@pytest.mark.asyncio
async def test_unknown_user_reads_as_zero_without_creating_account(ledger):
    assert await ledger.get_balance("ghost") == 0
    assert await ledger.has_sufficient_balance("ghost", 1) is False
    assert await ledger.recent_history("ghost") == []


@pytest.mark.asyncio
async def test_concurrent_initialization_creates_one_account(ledger):
    results = await asyncio.gather(*(ledger.ensure_initialized("u1") for _ in range(5)))

    assert results.count(True) == 1
    assert await _assert_consistent(ledger, "u1") == 20
    assert len(await ledger.recent_history("u1")) == 1


@pytest.mark.asyncio
async def test_debit_records_signed_transaction(ledger):
    await ledger.ensure_initialized("u1")

    balance = await ledger.debit("u1", 5, TransactionType.IMAGE_ANALYSIS)

    assert balance == 15
    latest = (await ledger.recent_history("u1", limit=1))[0]
    assert latest.amount == -5
    assert latest.type == TransactionType.IMAGE_ANALYSIS.value
    assert latest.description == "Used for image analysis"
    await _assert_consistent(ledger, "u1")


@pytest.mark.asyncio
async def test_debit_beyond_balance_writes_nothing(session_factory):
    ledger = CreditLedger(session_factory, default_credits=1, base_delay=0.001)
    await ledger.ensure_initialized("u1")

    assert await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE) == 0
    with pytest.raises(InsufficientCredits) as exc:
        await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE)

    assert exc.value.balance == 0
    assert exc.value.cost == 1
    assert len(await ledger.recent_history("u1")) == 2
    assert await _assert_consistent(ledger, "u1") == 0


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_factory):
    ledger = CreditLedger(session_factory, default_credits=5, base_delay=0.001)
    await ledger.ensure_initialized("u1")

    results = await asyncio.gather(
        *(ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE) for _ in range(8)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, int)) == 5
    assert sum(1 for r in results if isinstance(r, InsufficientCredits)) == 3
    assert await _assert_consistent(ledger, "u1") == 0


@pytest.mark.asyncio
async def test_debit_with_reference_is_applied_once(ledger):
    await ledger.ensure_initialized("u1")

    first = await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE, reference="run:abc")
    second = await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE, reference="run:abc")

    assert first == second == 19
    debits = [t for t in await ledger.recent_history("u1") if t.amount < 0]
    assert len(debits) == 1
    await _assert_consistent(ledger, "u1")


@pytest.mark.asyncio
async def test_credit_initializes_unknown_user_first(ledger):
    balance = await ledger.credit("u2", 100, TransactionType.PURCHASE, reference="pay_1")

    assert balance == 120
    types = [t.type for t in await ledger.recent_history("u2")]
    assert types == [TransactionType.PURCHASE.value, TransactionType.WELCOME_BONUS.value]
    await _assert_consistent(ledger, "u2")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5])
async def test_credit_rejects_non_positive_amounts(ledger, amount):
    with pytest.raises(ValueError):
        await ledger.credit("u1", amount, TransactionType.ADMIN_GIFT)


@pytest.mark.asyncio
async def test_history_is_newest_first_and_restartable(ledger):
    await ledger.ensure_initialized("u1")
    for i in range(4):
        await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE, description=f"turn {i}")

    first_pass = [t.id async for t in ledger.history("u1", page_size=2)]
    second_pass = [t.id async for t in ledger.history("u1", page_size=2)]

    assert len(first_pass) == 5
    assert first_pass == sorted(first_pass, reverse=True)
    assert first_pass == second_pass


@pytest.mark.asyncio
async def test_gifts(ledger):
    assert await gift_credits(ledger, "u1", 10, "thanks") == 30

    result = await gift_credits_bulk(ledger, ["u2", "u3", ""], 5, batch_size=2)

    assert result == {"successful": 2, "failed": 1}
    assert await ledger.get_balance("u2") == 25
    bulk = (await ledger.recent_history("u3", limit=1))[0]
    assert bulk.type == TransactionType.ADMIN_BULK_GIFT.value


class _LockedSession:
    async def __aenter__(self):
        raise OperationalError("BEGIN", {}, Exception("database is locked"))

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_persistent_contention_surfaces_as_unavailable():
    attempts = []

    def factory():
        attempts.append(1)
        return _LockedSession()

    ledger = CreditLedger(factory, default_credits=20, max_attempts=3, base_delay=0.0)

    with pytest.raises(LedgerUnavailable):
        await ledger.debit("u1", 1, TransactionType.CHAT_MESSAGE)
    assert len(attempts) == 3
