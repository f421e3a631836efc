import pytest

from db import UnitOfWork
from errors import InsufficientBalanceError, LedgerConsistencyError
from models import Wallet, WalletTransaction, WalletTransactionStatus, WalletTransactionType
from services import ledger
from utils.money import Money


class TestAdjust:
    """Atomic wallet adjust"""

    async def test_credit_creates_wallet(self, ctx, factory):
        user_id = await factory.user()
        async with UnitOfWork(ctx.session_factory) as session:
            before, after = await ledger.adjust(session, user_id, 100, 20, ts=ctx.now())

        assert before == Money()
        assert after == Money(100, 20)
        assert after.withdrawable == 0
        assert len(await factory.rows(Wallet, Wallet.user_id == user_id)) == 1

    async def test_credit_existing_wallet_with_withdrawable(self, ctx, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 50, 5)
        async with UnitOfWork(ctx.session_factory) as session:
            before, after = await ledger.adjust(session, user_id, 30, 0, update_withdrawable=True, ts=ctx.now())

        assert before == Money(50, 5)
        assert after == Money(80, 5)
        assert after.withdrawable == 30

    async def test_debit(self, ctx, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 100, 20)
        async with UnitOfWork(ctx.session_factory) as session:
            before, after = await ledger.adjust(session, user_id, 80, 20, subtract=True, ts=ctx.now())

        assert after == before - Money(80, 20)
        assert await factory.balance(user_id) == Money(20, 0)

    async def test_debit_clamps_withdrawable_to_real(self, ctx, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 50, 0)
        await factory.fund(user_id, 50, 0, withdrawable=True)

        async with UnitOfWork(ctx.session_factory) as session:
            _, after = await ledger.adjust(session, user_id, 80, 0, subtract=True, ts=ctx.now())

        assert after.real == 20
        assert after.withdrawable == 20

    async def test_insufficient_debit_rejected_and_wallet_unchanged(self, ctx, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 100, 5)

        with pytest.raises(InsufficientBalanceError):
            async with UnitOfWork(ctx.session_factory) as session:
                await ledger.adjust(session, user_id, 50, 10, subtract=True, ts=ctx.now())

        assert await factory.balance(user_id) == Money(100, 5)

    async def test_debit_without_wallet_rejected(self, ctx, factory):
        user_id = await factory.user()
        with pytest.raises(InsufficientBalanceError):
            async with UnitOfWork(ctx.session_factory) as session:
                await ledger.adjust(session, user_id, 1, 0, subtract=True, ts=ctx.now())

    async def test_negative_amount_rejected(self, ctx, factory):
        user_id = await factory.user()
        with pytest.raises(ValueError):
            async with UnitOfWork(ctx.session_factory) as session:
                await ledger.adjust(session, user_id, -1, 0, ts=ctx.now())

    async def test_mismatch_aborts_whole_transaction(self, ctx, factory, monkeypatch):
        user_id = await factory.user()
        await factory.fund(user_id, 100, 20)

        original = ledger._apply_update

        async def corrupted(*args, **kwargs):
            after = await original(*args, **kwargs)
            return after + Money(1, 0)

        monkeypatch.setattr(ledger, "_apply_update", corrupted)

        with pytest.raises(LedgerConsistencyError):
            async with UnitOfWork(ctx.session_factory) as session:
                await ledger.debit_entry_fee(session, user_id, Money(80, 20), 1, ctx.now())

        assert await factory.balance(user_id) == Money(100, 20)
        assert await factory.rows(WalletTransaction, WalletTransaction.user_id == user_id) == []


class TestCompositions:
    """Named ledger operations write one audited row each"""

    async def test_credit_prize_is_withdrawable(self, ctx, factory):
        user_id = await factory.user()
        async with UnitOfWork(ctx.session_factory) as session:
            tx = await ledger.credit_prize(session, user_id, Money(100, 10), 7, ctx.now())

        balance = await factory.balance(user_id)
        assert balance == Money(100, 10)
        assert balance.withdrawable == 100

        rows = await factory.rows(WalletTransaction, WalletTransaction.id == tx.id)
        assert len(rows) == 1
        row = rows[0]
        assert row.transaction_type == WalletTransactionType.CONTEST_WIN
        assert row.status == WalletTransactionStatus.COMPLETED
        assert Money.from_dict(row.balance_after) == Money.from_dict(row.balance_before) + row.amount
        assert "contest 7" in row.remarks

    async def test_debit_entry_fee_row(self, ctx, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 100, 20)
        async with UnitOfWork(ctx.session_factory) as session:
            tx = await ledger.debit_entry_fee(session, user_id, Money(80, 20), 3, ctx.now())

        row = (await factory.rows(WalletTransaction, WalletTransaction.id == tx.id))[0]
        assert row.transaction_type == WalletTransactionType.PAY_FOR_CONTEST
        assert row.remarks == "Pay for contest: 3"
        assert Money.from_dict(row.balance_after) == Money.from_dict(row.balance_before) - Money(80, 20)

    async def test_referral_bonuses_credit_bonus_only(self, ctx, factory):
        user_id = await factory.user()
        referrer_id = await factory.user()
        async with UnitOfWork(ctx.session_factory) as session:
            await ledger.credit_referral_bonus(session, user_id, 50, "ABC", ctx.now())
            await ledger.credit_referrer_bonus(session, referrer_id, 25, user_id, ctx.now())

        assert await factory.balance(user_id) == Money(0, 50)
        assert await factory.balance(referrer_id) == Money(0, 25)
