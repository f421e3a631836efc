# ==================================================================
# services/playtracker.py: per (user, contest) quiz state machine
# ==================================================================
"""
PlayTracker transitions:

    INIT -> PAID -> STARTED -> FINISHED -> ENDED
    INIT ---------> STARTED                  (free contests)
    STARTED -> STARTED                       (resume)

Every transition is one conditional UPDATE filtered on the expected
status, so a concurrent request that already moved the tracker makes
the UPDATE match zero rows and the call fails without mutating anything.
ENDED is only ever written by contest settlement.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from context import AppContext
from db import UnitOfWork, dialect_insert
from errors import BusinessError, InsufficientBalanceError, NotFoundError
from models import (
    Contest,
    ContestStatus,
    PlayTracker,
    PlayTrackerAnswer,
    PlayTrackerStatus,
)
from services import ledger
from services.sampler import pick_next_question
from utils.money import Money

logger = logging.getLogger(__name__)

WRONG_STATUS = "playTracker is not in correct status"


# ===============================================================
# Helpers
# ===============================================================
async def get_contest(session: AsyncSession, contest_id: int) -> Contest:
    contest = await session.get(Contest, contest_id)
    if contest is None:
        raise NotFoundError("contest not found")
    return contest


def _require_active(contest: Contest):
    if contest.status != ContestStatus.ACTIVE:
        raise BusinessError("contest is not active")


def _require_running(contest: Contest, now: int):
    _require_active(contest)
    if now < contest.start_time:
        raise BusinessError("contest is not started yet")
    if now >= contest.end_time:
        raise BusinessError("contest is ended already")


async def _load_tracker(session: AsyncSession, user_id: int, contest_id: int, for_update: bool = True):
    stmt = select(PlayTracker).where(
        PlayTracker.contest_id == contest_id,
        PlayTracker.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


async def _get_or_create_tracker(session: AsyncSession, user_id: int, contest: Contest, now: int) -> PlayTracker:
    tracker = await _load_tracker(session, user_id, contest.id)
    if tracker is not None:
        return tracker

    # Two first-requests racing both land here; the unique key keeps one row
    stmt = (
        dialect_insert(session)(PlayTracker)
        .values(
            user_id=user_id,
            contest_id=contest.id,
            status=PlayTrackerStatus.INIT,
            init_ts=now,
            resume_ts=[],
            paid_real=0,
            paid_bonus=0,
            total_questions=len(contest.active_questions),
            score=0,
            created_ts=now,
            updated_ts=now,
            updated_by=user_id,
        )
        .on_conflict_do_nothing(index_elements=["contest_id", "user_id"])
    )
    await session.execute(stmt)
    return await _load_tracker(session, user_id, contest.id)


async def _transition(
    session: AsyncSession,
    tracker: PlayTracker,
    expected: tuple[PlayTrackerStatus, ...],
    **values,
) -> PlayTracker:
    """Apply `values` only if the tracker is still in one of `expected`."""
    stmt = (
        update(PlayTracker)
        .where(PlayTracker.id == tracker.id, PlayTracker.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise BusinessError(WRONG_STATUS)
    await session.refresh(tracker)
    return tracker


# ===============================================================
# Reads
# ===============================================================
async def get_play_tracker(ctx: AppContext, user_id: int, contest_id: int) -> dict:
    """Return the tracker, creating an INIT one on first interaction."""
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        tracker = await _get_or_create_tracker(session, user_id, contest, ctx.now())
        return tracker.to_dict()


async def get_next_question(ctx: AppContext, user_id: int, contest_id: int) -> dict:
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        _require_running(contest, ctx.now())
        tracker = await _load_tracker(session, user_id, contest_id, for_update=False)
        if tracker is None or tracker.status != PlayTrackerStatus.STARTED:
            raise BusinessError(WRONG_STATUS)

        question = pick_next_question(contest.active_questions, tracker.answered_question_nos, ctx.rng)
        return question.public_dict()


# ===============================================================
# INIT -> PAID
# ===============================================================
async def pay_for_contest(ctx: AppContext, user_id: int, contest_id: int, bonus_amount: int = 0) -> dict:
    """
    Pay the entry fee. Up to `entry_fee_max_bonus_money` may come from
    the bonus balance; the rest is taken from real money.
    """
    if bonus_amount < 0:
        raise BusinessError("bonusAmount must not be negative")

    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        _require_active(contest)
        if now >= contest.end_time:
            raise BusinessError("contest is ended already")
        if contest.entry_fee <= 0:
            raise BusinessError("contest is free, payment not required")
        if bonus_amount > contest.entry_fee_max_bonus_money:
            raise BusinessError(f"entryFeeMaxBonusMoney is : {contest.entry_fee_max_bonus_money}")

        tracker = await _get_or_create_tracker(session, user_id, contest, now)
        if tracker.status == PlayTrackerStatus.PAID:
            raise BusinessError("contest already paid for the user")
        if tracker.status == PlayTrackerStatus.STARTED:
            raise BusinessError("contest already started for the user")
        if tracker.status != PlayTrackerStatus.INIT:
            raise BusinessError("contest already finished for the user")

        amount = Money(real=contest.entry_fee - bonus_amount, bonus=bonus_amount)
        balance = await ledger.get_balance(session, user_id, for_update=True)
        if balance.real < amount.real:
            raise InsufficientBalanceError(
                f"Insufficient real balance, required: {amount.real}, available: {balance.real}"
            )
        if balance.bonus < amount.bonus:
            raise InsufficientBalanceError(
                f"Insufficient bonus balance, required: {amount.bonus}, available: {balance.bonus}"
            )

        transaction = await ledger.debit_entry_fee(session, user_id, amount, contest_id, now)
        tracker = await _transition(
            session,
            tracker,
            (PlayTrackerStatus.INIT,),
            status=PlayTrackerStatus.PAID,
            paid_ts=now,
            wallet_transaction_id=str(transaction.id),
            paid_real=amount.real,
            paid_bonus=amount.bonus,
            updated_ts=now,
            updated_by=user_id,
        )
        result = tracker.to_dict()

    logger.info(f"💰 user_id={user_id} paid {amount} for contest {contest_id}")
    return result


# ===============================================================
# INIT|PAID -> STARTED, STARTED -> STARTED (resume)
# ===============================================================
async def start_play_tracker(ctx: AppContext, user_id: int, contest_id: int) -> dict:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        _require_running(contest, now)
        tracker = await _get_or_create_tracker(session, user_id, contest, now)

        if tracker.status == PlayTrackerStatus.STARTED:
            tracker = await _transition(
                session,
                tracker,
                (PlayTrackerStatus.STARTED,),
                resume_ts=list(tracker.resume_ts or []) + [now],
                updated_ts=now,
                updated_by=user_id,
            )
            return tracker.to_dict()

        if tracker.status in (PlayTrackerStatus.FINISHED, PlayTrackerStatus.ENDED):
            raise BusinessError("contest already finished for the user")
        if contest.entry_fee > 0 and tracker.status != PlayTrackerStatus.PAID:
            raise BusinessError("contest not paid yet")

        tracker = await _transition(
            session,
            tracker,
            (PlayTrackerStatus.INIT, PlayTrackerStatus.PAID),
            status=PlayTrackerStatus.STARTED,
            start_ts=now,
            total_questions=len(contest.active_questions),
            updated_ts=now,
            updated_by=user_id,
        )
        return tracker.to_dict()


# ===============================================================
# Answer (STARTED, may move to FINISHED)
# ===============================================================
async def answer_question(
    ctx: AppContext,
    user_id: int,
    contest_id: int,
    question_no: int,
    selected_option_id: int,
) -> dict:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        _require_running(contest, now)

        active = contest.active_questions
        question = next((q for q in active if q.question_no == question_no), None)
        if question is None:
            raise BusinessError(f"question {question_no} not found in contest")

        tracker = await _load_tracker(session, user_id, contest_id)
        if tracker is None or tracker.status != PlayTrackerStatus.STARTED:
            raise BusinessError(WRONG_STATUS)

        answered = tracker.answered_question_nos
        if question_no in answered:
            raise BusinessError("question already answered")

        is_correct = selected_option_id == question.correct_option_id
        tracker.answers.append(
            PlayTrackerAnswer(
                question_no=question_no,
                selected_option_id=selected_option_id,
                is_correct=is_correct,
                answered_ts=now,
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            raise BusinessError("question already answered")

        values = {
            "score": PlayTracker.score + (1 if is_correct else 0),
            "updated_ts": now,
            "updated_by": user_id,
        }
        if {q.question_no for q in active} <= answered | {question_no}:
            values.update(status=PlayTrackerStatus.FINISHED, finish_ts=now)

        tracker = await _transition(session, tracker, (PlayTrackerStatus.STARTED,), **values)
        return tracker.to_dict()


# ===============================================================
# STARTED -> FINISHED
# ===============================================================
async def finish_play_tracker(ctx: AppContext, user_id: int, contest_id: int) -> dict:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        _require_active(contest)
        tracker = await _load_tracker(session, user_id, contest_id)
        if tracker is None:
            raise BusinessError(WRONG_STATUS)

        tracker = await _transition(
            session,
            tracker,
            (PlayTrackerStatus.STARTED,),
            status=PlayTrackerStatus.FINISHED,
            finish_ts=now,
            updated_ts=now,
            updated_by=user_id,
        )
        return tracker.to_dict()
