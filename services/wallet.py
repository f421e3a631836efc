# ==================================================================
# services/wallet.py: balance, top-up and withdrawal flows
# ==================================================================
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from context import AppContext
from db import UnitOfWork
from errors import BusinessError, NotFoundError
from models import WalletTransaction, WalletTransactionStatus, WalletTransactionType
from services import ledger
from utils.money import Money

logger = logging.getLogger(__name__)


async def get_balance(ctx: AppContext, user_id: int) -> Money:
    async with UnitOfWork(ctx.session_factory) as session:
        return await ledger.get_balance(session, user_id)


def _parse_transaction_id(transaction_id) -> uuid.UUID:
    if isinstance(transaction_id, uuid.UUID):
        return transaction_id
    try:
        return uuid.UUID(str(transaction_id))
    except ValueError:
        raise BusinessError("Not able to parse transactionId value")


async def _get_pending(
    session: AsyncSession,
    transaction_id,
    user_id: int,
    transaction_type: WalletTransactionType,
) -> WalletTransaction:
    stmt = (
        select(WalletTransaction)
        .where(
            WalletTransaction.id == _parse_transaction_id(transaction_id),
            WalletTransaction.user_id == user_id,
            WalletTransaction.transaction_type == transaction_type,
            WalletTransaction.status == WalletTransactionStatus.PENDING,
        )
        .with_for_update()
    )
    transaction = (await session.execute(stmt)).scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("transaction not found")
    return transaction


def _complete(transaction: WalletTransaction, balance_after: Money, tracking_id, user_id: int, ts: int):
    transaction.status = WalletTransactionStatus.COMPLETED
    transaction.balance_after = balance_after.to_dict()
    transaction.tracking_id = tracking_id
    transaction.updated_ts = ts
    transaction.updated_by = user_id


async def mark_failed(ctx: AppContext, transaction_id, user_id: int, error_reason: str | None, tracking_id: str | None):
    """Pending → Error. Runs in its own transaction so it survives the caller's failure."""
    async with UnitOfWork(ctx.session_factory) as session:
        stmt = select(WalletTransaction).where(
            WalletTransaction.id == _parse_transaction_id(transaction_id),
            WalletTransaction.status == WalletTransactionStatus.PENDING,
        )
        transaction = (await session.execute(stmt)).scalar_one_or_none()
        if transaction is None:
            return
        transaction.status = WalletTransactionStatus.ERROR
        transaction.error_reason = error_reason
        transaction.tracking_id = tracking_id
        transaction.updated_ts = ctx.now()
        transaction.updated_by = user_id
    logger.warning(f"⚠️ Wallet transaction {transaction_id} marked ERROR: {error_reason}")


def _require_amount(amount: int, minimum: int = 1):
    minimum = max(minimum, 1)
    if amount < minimum:
        raise BusinessError(f"amount must be at least {minimum}")


# ------------------------------------------------------
# 1. Add balance (top-up)
# ------------------------------------------------------
async def add_balance_init(ctx: AppContext, user_id: int, amount: int) -> dict:
    _require_amount(amount)
    async with UnitOfWork(ctx.session_factory) as session:
        balance_before = await ledger.get_balance(session, user_id)
        transaction = await ledger.record_transaction(
            session,
            user_id=user_id,
            transaction_type=WalletTransactionType.ADD_BALANCE,
            amount=Money(amount, 0),
            balance_before=balance_before,
            status=WalletTransactionStatus.PENDING,
            ts=ctx.now(),
        )
    logger.info(f"💳 Top-up initiated: user_id={user_id}, amount={amount}, tx={transaction.id}")
    return {"transactionId": str(transaction.id), "appUpiId": ctx.settings.app_upi_id}


async def add_balance_complete(
    ctx: AppContext,
    user_id: int,
    transaction_id,
    amount: int,
    is_successful: bool,
    tracking_id: str | None = None,
    error_reason: str | None = None,
) -> Money | None:
    """Finalise a pending top-up. Returns the new balance when credited."""
    _require_amount(amount)
    stale_reason = None
    async with UnitOfWork(ctx.session_factory) as session:
        transaction = await _get_pending(session, transaction_id, user_id, WalletTransactionType.ADD_BALANCE)
        if transaction.amount != Money(amount, 0):
            raise BusinessError("amount do not match")

        if not is_successful:
            transaction.status = WalletTransactionStatus.ERROR
            transaction.error_reason = error_reason
            transaction.tracking_id = tracking_id
            transaction.updated_ts = ctx.now()
            transaction.updated_by = user_id
            return None

        balance = await ledger.get_balance(session, user_id, for_update=True)
        expected_before = Money.from_dict(transaction.balance_before)
        if balance != expected_before:
            stale_reason = (
                f"user balance {balance} does not match with transaction balanceBefore {expected_before}"
            )
        else:
            _, balance_after = await ledger.adjust(
                session, user_id, amount, 0, subtract=False, update_withdrawable=False, ts=ctx.now()
            )
            _complete(transaction, balance_after, tracking_id, user_id, ctx.now())

    if stale_reason:
        await mark_failed(ctx, transaction_id, user_id, stale_reason, tracking_id)
        raise BusinessError(stale_reason)

    logger.info(f"✅ Top-up completed: user_id={user_id}, amount={amount}")
    return balance_after


# ------------------------------------------------------
# 2. Withdraw
# ------------------------------------------------------
async def withdraw_init(ctx: AppContext, user_id: int, amount: int, receiver_upi_id: str) -> dict:
    _require_amount(amount, ctx.settings.withdraw_min_amount)
    if not receiver_upi_id:
        raise BusinessError("receiverUpiId is required")

    async with UnitOfWork(ctx.session_factory) as session:
        pending = await session.execute(
            select(WalletTransaction.id).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.transaction_type == WalletTransactionType.WITHDRAW,
                WalletTransaction.status == WalletTransactionStatus.PENDING,
            )
        )
        # A second pending withdrawal is always an erroneous scenario
        if pending.first() is not None:
            raise BusinessError("Already a pending withdraw request exists")

        balance = await ledger.get_balance(session, user_id)
        if balance.real < amount:
            raise BusinessError("Insufficient balance")
        if balance.withdrawable < amount:
            raise BusinessError("Not enough withdrawable balance")

        transaction = await ledger.record_transaction(
            session,
            user_id=user_id,
            transaction_type=WalletTransactionType.WITHDRAW,
            amount=Money(amount, 0),
            balance_before=balance,
            status=WalletTransactionStatus.PENDING,
            receiver_upi_id=receiver_upi_id,
            ts=ctx.now(),
        )
    logger.info(f"🏧 Withdraw initiated: user_id={user_id}, amount={amount}, tx={transaction.id}")
    return {"transactionId": str(transaction.id)}


async def withdraw_complete(
    ctx: AppContext,
    user_id: int,
    transaction_id,
    amount: int,
    is_successful: bool,
    tracking_id: str | None = None,
    error_reason: str | None = None,
) -> Money | None:
    _require_amount(amount)
    insufficient_reason = None
    async with UnitOfWork(ctx.session_factory) as session:
        transaction = await _get_pending(session, transaction_id, user_id, WalletTransactionType.WITHDRAW)
        if transaction.amount != Money(amount, 0):
            raise BusinessError("amount do not match")

        if not is_successful:
            transaction.status = WalletTransactionStatus.ERROR
            transaction.error_reason = error_reason
            transaction.tracking_id = tracking_id
            transaction.updated_ts = ctx.now()
            transaction.updated_by = user_id
            return None

        balance = await ledger.get_balance(session, user_id, for_update=True)
        if balance.real < amount:
            insufficient_reason = f"Insufficient balance. Balance {balance}. Amount {Money(amount, 0)}"
        elif balance.withdrawable < amount:
            raise BusinessError(f"Not enough withdrawable balance, available: {balance.withdrawable}")
        else:
            _, balance_after = await ledger.adjust(
                session, user_id, amount, 0, subtract=True, update_withdrawable=True, ts=ctx.now()
            )
            _complete(transaction, balance_after, tracking_id, user_id, ctx.now())

    if insufficient_reason:
        await mark_failed(ctx, transaction_id, user_id, insufficient_reason, tracking_id)
        raise BusinessError(insufficient_reason)

    logger.info(f"✅ Withdraw completed: user_id={user_id}, amount={amount}")
    return balance_after
