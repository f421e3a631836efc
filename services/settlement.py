# ==================================================================
# services/settlement.py: contest finalisation & cancellation
# ==================================================================
"""
Settlement of contests whose end time has passed.

Each contest is settled in its own transaction: rank the engaged
trackers, pay the winners, bump user aggregates, seal trackers and
contest. Under-subscribed contests are cancelled and refunded instead.
A failed attempt is rolled back and annotated on the contest in a
separate transaction; contests that exhaust their attempt budget are
skipped and alerted on.
"""
import logging
import math
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import logging_setup
from context import AppContext
from db import UnitOfWork
from errors import BusinessError
from models import (
    Contest,
    ContestStatus,
    PlayTracker,
    PlayTrackerStatus,
    PrizeSelection,
    User,
)
from services import ledger, notifications

logger = logging.getLogger(__name__)

ENGAGED_STATUSES = (
    PlayTrackerStatus.PAID,
    PlayTrackerStatus.STARTED,
    PlayTrackerStatus.FINISHED,
)


# ===============================================================
# Ranking (pure)
# ===============================================================
@dataclass
class RankedEntry:
    tracker: PlayTracker
    time_taken: float
    rank: int | None = None

    @property
    def user_id(self) -> int:
        return self.tracker.user_id


def compute_time_taken(tracker: PlayTracker, now: int) -> float:
    """(finish ?? last update ?? inf) - (start ?? now). Unknown spans sort last."""
    end = tracker.finish_ts if tracker.finish_ts is not None else tracker.updated_ts
    if end is None:
        return math.inf
    start = tracker.start_ts if tracker.start_ts is not None else now
    taken = end - start
    return math.inf if taken < 0 else taken


def rank_trackers(trackers: list[PlayTracker], now: int) -> list[RankedEntry]:
    """
    Order by score desc, time taken asc, start asc. Only trackers with a
    positive score get a rank (position + 1).
    """
    entries = [RankedEntry(t, compute_time_taken(t, now)) for t in trackers]
    entries.sort(
        key=lambda e: (
            -(e.tracker.score or 0),
            e.time_taken,
            e.tracker.start_ts if e.tracker.start_ts is not None else math.inf,
        )
    )
    for position, entry in enumerate(entries):
        if (entry.tracker.score or 0) > 0:
            entry.rank = position + 1
    return entries


def get_winners_count(contest: Contest, total_players: int) -> int:
    if contest.prize_selection == PrizeSelection.TOP_WINNERS:
        return contest.top_winners_count or 0
    if not contest.prize_ratio_denominator:
        return 0
    return (contest.prize_ratio_numerator or 0) * total_players // contest.prize_ratio_denominator


def select_winners(entries: list[RankedEntry], winners_count: int) -> list[RankedEntry]:
    return [e for e in entries if e.rank is not None and 0 < e.rank <= winners_count]


def _snapshot(entry: RankedEntry) -> dict:
    return {
        "userId": entry.user_id,
        "score": entry.tracker.score,
        "timeTaken": None if math.isinf(entry.time_taken) else int(entry.time_taken),
        "startTs": entry.tracker.start_ts,
        "rank": entry.rank,
    }


# ===============================================================
# DB steps
# ===============================================================
async def _load_engaged(session: AsyncSession, contest_id: int) -> list[PlayTracker]:
    result = await session.execute(
        select(PlayTracker)
        .where(
            PlayTracker.contest_id == contest_id,
            PlayTracker.status.in_(ENGAGED_STATUSES),
        )
        .order_by(PlayTracker.id)
        .with_for_update()
    )
    return list(result.scalars().all())


async def _lock_active_contest(session: AsyncSession, contest_id: int) -> Contest:
    contest = (
        await session.execute(select(Contest).where(Contest.id == contest_id).with_for_update())
    ).scalar_one_or_none()
    if contest is None or contest.status != ContestStatus.ACTIVE:
        raise BusinessError("contest status must be ACTIVE")
    return contest


async def _end_trackers(session: AsyncSession, entries: list[RankedEntry], now: int):
    for entry in entries:
        await session.execute(
            update(PlayTracker)
            .where(PlayTracker.id == entry.tracker.id)
            .values(
                status=PlayTrackerStatus.ENDED,
                rank=entry.rank,
                time_taken=None if math.isinf(entry.time_taken) else int(entry.time_taken),
                updated_ts=now,
            )
            .execution_options(synchronize_session=False)
        )


# ===============================================================
# Finish (rank + pay)
# ===============================================================
async def finish_contest(session: AsyncSession, contest_id: int, now: int) -> list[RankedEntry]:
    """Settle one contest on the caller's transaction. Returns the winners."""
    contest = await _lock_active_contest(session, contest_id)
    trackers = await _load_engaged(session, contest_id)

    entries = rank_trackers(trackers, now)
    winners_count = get_winners_count(contest, len(entries))
    winners = select_winners(entries, winners_count)
    prize = contest.prize_money

    for winner in winners:
        await ledger.credit_prize(session, winner.user_id, prize, contest_id, now)
        await notifications.submit(
            session,
            winner.user_id,
            notifications.CREDIT_PRIZE,
            {
                "contestId": contest_id,
                "contestTitle": contest.title,
                "rank": winner.rank,
                "prizeReal": prize.real,
                "prizeBonus": prize.bonus,
            },
            ts=now,
        )

    engaged_ids = [e.user_id for e in entries]
    if engaged_ids:
        await session.execute(
            update(User)
            .where(User.id.in_(engaged_ids))
            .values(total_played=User.total_played + 1, updated_ts=now)
            .execution_options(synchronize_session=False)
        )
    winner_ids = [w.user_id for w in winners]
    if winner_ids:
        await session.execute(
            update(User)
            .where(User.id.in_(winner_ids))
            .values(
                contest_won=User.contest_won + 1,
                total_earning_real=User.total_earning_real + prize.real,
                total_earning_bonus=User.total_earning_bonus + prize.bonus,
            )
            .execution_options(synchronize_session=False)
        )

    await _end_trackers(session, entries, now)

    contest.status = ContestStatus.ENDED
    contest.final_ranking = [_snapshot(e) for e in entries]
    contest.winners = [_snapshot(w) for w in winners]
    contest.error = None
    contest.updated_ts = now
    await session.flush()

    logger.info(
        f"🏁 Contest {contest_id} ended: {len(entries)} engaged, "
        f"{len(winners)}/{winners_count} winners paid {prize}"
    )
    return winners


# ===============================================================
# Cancel (refund)
# ===============================================================
async def cancel_contest(session: AsyncSession, contest_id: int, now: int) -> int:
    """Refund every engaged player and mark the contest CANCELLED. Returns refund count."""
    contest = await _lock_active_contest(session, contest_id)
    trackers = await _load_engaged(session, contest_id)

    refunds = 0
    for tracker in trackers:
        paid = tracker.paid_amount
        if not paid.is_zero():
            await ledger.refund_entry_fee(session, tracker.user_id, paid, contest_id, now)
            refunds += 1
        await notifications.submit(
            session,
            tracker.user_id,
            notifications.CONTEST_CANCELLED,
            {
                "contestId": contest_id,
                "contestTitle": contest.title,
                "refundReal": paid.real,
                "refundBonus": paid.bonus,
            },
            ts=now,
        )

    await _end_trackers(session, [_unranked(t) for t in trackers], now)

    contest.status = ContestStatus.CANCELLED
    contest.error = None
    contest.updated_ts = now
    await session.flush()

    logger.info(f"🚫 Contest {contest_id} cancelled: {len(trackers)} engaged, {refunds} refunds")
    return refunds


def _unranked(tracker: PlayTracker) -> RankedEntry:
    return RankedEntry(tracker, math.inf if tracker.time_taken is None else tracker.time_taken)


async def settle_contest(session: AsyncSession, contest_id: int, now: int) -> str:
    """Route to cancel when under-subscribed, otherwise finish."""
    contest = await _lock_active_contest(session, contest_id)
    engaged = await session.execute(
        select(PlayTracker.id).where(
            PlayTracker.contest_id == contest_id,
            PlayTracker.status.in_(ENGAGED_STATUSES),
        )
    )
    engaged_count = len(engaged.all())

    if engaged_count < (contest.min_required_players or 0):
        await cancel_contest(session, contest_id, now)
        return ContestStatus.CANCELLED.value
    await finish_contest(session, contest_id, now)
    return ContestStatus.ENDED.value


# ===============================================================
# Scheduler pass
# ===============================================================
async def find_due_contests(ctx: AppContext) -> list[int]:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        result = await session.execute(
            select(Contest.id)
            .where(
                Contest.status == ContestStatus.ACTIVE,
                Contest.end_time <= now,
                Contest.settlement_attempts < ctx.settings.settlement_max_attempts,
            )
            .order_by(Contest.updated_ts.asc(), Contest.id.asc())
        )
        return list(result.scalars().all())


async def record_settlement_failure(ctx: AppContext, contest_id: int, exc: BaseException) -> int:
    """Annotate the contest outside the failed transaction. Returns the attempt count."""
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        await session.execute(
            update(Contest)
            .where(Contest.id == contest_id)
            .values(
                error=f"{type(exc).__name__}: {exc}",
                error_ts=now,
                settlement_attempts=Contest.settlement_attempts + 1,
                updated_ts=now,
            )
            .execution_options(synchronize_session=False)
        )
        attempts = (
            await session.execute(select(Contest.settlement_attempts).where(Contest.id == contest_id))
        ).scalar_one()

    if attempts >= ctx.settings.settlement_max_attempts:
        logging_setup.alert(
            exc,
            f"🚨 Contest {contest_id} settlement gave up after {attempts} attempts: {exc}",
        )
    return attempts


async def check_and_finalize_contests(ctx: AppContext) -> dict[int, str]:
    """
    One scheduler pass. Contests are processed sequentially; a failure
    on one is recorded and the pass moves on.
    """
    outcomes: dict[int, str] = {}
    for contest_id in await find_due_contests(ctx):
        try:
            outcomes[contest_id] = await UnitOfWork(ctx.session_factory).run(
                settle_contest, contest_id, ctx.now()
            )
        except Exception as e:
            logger.exception(f"❌ Settlement failed for contest {contest_id}")
            try:
                await record_settlement_failure(ctx, contest_id, e)
            except Exception:
                logger.exception(f"❌ Could not record settlement failure for contest {contest_id}")
            outcomes[contest_id] = "ERROR"
    return outcomes
