# ==================================================================
# services/ledger.py: Wallet ledger primitives
# ==================================================================
"""
Wallet ledger.

Two primitives, `adjust` and `record_transaction`, plus the named
compositions used by payments, settlement and referrals. Every function
takes the caller's session so several calls share one transaction; none
of them commits.
"""
import logging

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db import dialect_insert
from errors import InsufficientBalanceError, LedgerConsistencyError
from models import Wallet, WalletTransaction, WalletTransactionStatus, WalletTransactionType
from utils.money import Money

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------
# Reads
# ---------------------------------------------------------------
async def get_balance(session: AsyncSession, user_id: int, for_update: bool = False) -> Money:
    """Current balance, or zero when the user has no wallet yet."""
    stmt = select(
        Wallet.balance_real, Wallet.balance_bonus, Wallet.balance_withdrawable
    ).where(Wallet.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).first()
    if row is None:
        return Money()
    return Money(row.balance_real, row.balance_bonus, row.balance_withdrawable)


# ---------------------------------------------------------------
# adjust: atomic read-modify-write with post-write verification
# ---------------------------------------------------------------
async def _ensure_wallet(session: AsyncSession, user_id: int, ts: int):
    stmt = (
        dialect_insert(session)(Wallet)
        .values(
            user_id=user_id,
            balance_real=0,
            balance_bonus=0,
            balance_withdrawable=0,
            created_ts=ts,
            updated_ts=ts,
        )
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await session.execute(stmt)


async def _apply_update(
    session: AsyncSession,
    user_id: int,
    real: int,
    bonus: int,
    withdrawable: int,
    subtract: bool,
    ts: int,
) -> Money | None:
    conditions = [Wallet.user_id == user_id]
    if subtract:
        # Only touch the row when both components are covered
        conditions += [Wallet.balance_real >= real, Wallet.balance_bonus >= bonus]
        new_real = Wallet.balance_real - real
        wd_left = case(
            (Wallet.balance_withdrawable - withdrawable < 0, 0),
            else_=Wallet.balance_withdrawable - withdrawable,
        )
        values = {
            "balance_real": new_real,
            "balance_bonus": Wallet.balance_bonus - bonus,
            "balance_withdrawable": case((wd_left > new_real, new_real), else_=wd_left),
        }
    else:
        values = {
            "balance_real": Wallet.balance_real + real,
            "balance_bonus": Wallet.balance_bonus + bonus,
            "balance_withdrawable": Wallet.balance_withdrawable + withdrawable,
        }
    values["updated_ts"] = ts

    stmt = (
        update(Wallet)
        .where(*conditions)
        .values(**values)
        .returning(Wallet.balance_real, Wallet.balance_bonus, Wallet.balance_withdrawable)
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return Money(row.balance_real, row.balance_bonus, row.balance_withdrawable)


async def adjust(
    session: AsyncSession,
    user_id: int,
    real: int,
    bonus: int,
    subtract: bool = False,
    update_withdrawable: bool = False,
    ts: int | None = None,
) -> tuple[Money, Money]:
    """
    Credit or debit a wallet. Returns (balance_before, balance_after).

    Credits upsert the wallet. Debits are rejected with
    InsufficientBalanceError when either component is not covered.
    The written balance must equal balance_before ± amount, otherwise
    LedgerConsistencyError is raised and the caller's transaction must
    roll back.
    """
    if real < 0 or bonus < 0:
        raise ValueError(f"adjust amounts must be non-negative (real={real}, bonus={bonus})")

    amount = Money(real, bonus)
    withdrawable = real if update_withdrawable else 0
    balance_before = await get_balance(session, user_id, for_update=True)

    if subtract:
        if not balance_before.covers(amount):
            raise InsufficientBalanceError(
                f"Insufficient user balance: available {balance_before}, required {amount}"
            )
        expected_after = balance_before - amount
    else:
        await _ensure_wallet(session, user_id, ts)
        expected_after = balance_before + amount

    balance_after = await _apply_update(session, user_id, real, bonus, withdrawable, subtract, ts)
    if balance_after is None:
        # Row changed between the locked read and the conditional update
        raise InsufficientBalanceError(
            f"Insufficient user balance: required {amount} for user {user_id}"
        )

    if balance_after != expected_after:
        logger.error(
            f"🚨 Ledger mismatch for user_id={user_id}: before={balance_before}, "
            f"after={balance_after}, expected={expected_after}"
        )
        raise LedgerConsistencyError(
            f"balance_before {balance_before} and balance_after {balance_after} not matching, "
            f"required balance_after {expected_after}"
        )

    return balance_before, balance_after


# ---------------------------------------------------------------
# record_transaction: append one ledger row
# ---------------------------------------------------------------
async def record_transaction(
    session: AsyncSession,
    *,
    user_id: int,
    transaction_type: WalletTransactionType,
    amount: Money,
    balance_before: Money,
    balance_after: Money | None = None,
    status: WalletTransactionStatus = WalletTransactionStatus.COMPLETED,
    remarks: str | None = None,
    receiver_upi_id: str | None = None,
    tracking_id: str | None = None,
    ts: int | None = None,
) -> WalletTransaction:
    transaction = WalletTransaction(
        user_id=user_id,
        transaction_type=transaction_type,
        status=status,
        amount_real=amount.real,
        amount_bonus=amount.bonus,
        balance_before=balance_before.to_dict(),
        balance_after=balance_after.to_dict() if balance_after is not None else None,
        remarks=remarks,
        receiver_upi_id=receiver_upi_id,
        tracking_id=tracking_id,
        created_ts=ts,
        created_by=user_id,
    )
    session.add(transaction)
    await session.flush()
    return transaction


async def _adjust_and_record(
    session: AsyncSession,
    user_id: int,
    amount: Money,
    transaction_type: WalletTransactionType,
    remarks: str,
    subtract: bool = False,
    update_withdrawable: bool = False,
    ts: int | None = None,
) -> WalletTransaction:
    balance_before, balance_after = await adjust(
        session,
        user_id,
        amount.real,
        amount.bonus,
        subtract=subtract,
        update_withdrawable=update_withdrawable,
        ts=ts,
    )
    return await record_transaction(
        session,
        user_id=user_id,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        remarks=remarks,
        ts=ts,
    )


# ---------------------------------------------------------------
# Named compositions
# ---------------------------------------------------------------
async def debit_entry_fee(session, user_id: int, amount: Money, contest_id: int, ts: int) -> WalletTransaction:
    return await _adjust_and_record(
        session, user_id, amount,
        WalletTransactionType.PAY_FOR_CONTEST,
        f"Pay for contest: {contest_id}",
        subtract=True,
        ts=ts,
    )


async def credit_prize(session, user_id: int, amount: Money, contest_id: int, ts: int) -> WalletTransaction:
    # Prize money becomes withdrawable
    return await _adjust_and_record(
        session, user_id, amount,
        WalletTransactionType.CONTEST_WIN,
        f"Credit prize value {amount} for contest {contest_id}",
        update_withdrawable=True,
        ts=ts,
    )


async def refund_entry_fee(session, user_id: int, amount: Money, contest_id: int, ts: int) -> WalletTransaction:
    return await _adjust_and_record(
        session, user_id, amount,
        WalletTransactionType.REFUND_CONTEST_ENTRY_FEE,
        f"Refund entry fee {amount} for cancelled contest {contest_id}",
        ts=ts,
    )


async def credit_referral_bonus(session, user_id: int, bonus: int, referral_code: str, ts: int) -> WalletTransaction:
    return await _adjust_and_record(
        session, user_id, Money(0, bonus),
        WalletTransactionType.REFERRAL_BONUS,
        f"Referral bonus for using code {referral_code}",
        ts=ts,
    )


async def credit_referrer_bonus(session, referrer_id: int, bonus: int, referee_id: int, ts: int) -> WalletTransaction:
    return await _adjust_and_record(
        session, referrer_id, Money(0, bonus),
        WalletTransactionType.REFERRER_BONUS,
        f"Referrer bonus for referring user {referee_id}",
        ts=ts,
    )
