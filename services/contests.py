# ==================================================================
# services/contests.py: contest lifecycle administration
# ==================================================================
import logging

from context import AppContext
from db import UnitOfWork
from errors import BusinessError
from models import Contest, ContestQuestion, ContestStatus, PrizeSelection
from services.playtracker import get_contest

logger = logging.getLogger(__name__)


def _validate_props(props: dict) -> PrizeSelection:
    entry_fee = props.get("entry_fee", 0)
    max_bonus = props.get("entry_fee_max_bonus_money", 0)
    if entry_fee < 0 or max_bonus < 0:
        raise BusinessError("entry fee values must not be negative")
    if max_bonus > entry_fee:
        raise BusinessError("entryFeeMaxBonusMoney must not exceed entryFee")

    try:
        selection = PrizeSelection(props.get("prize_selection"))
    except ValueError:
        raise BusinessError(f"unknown prizeSelection {props.get('prize_selection')!r}")

    if selection == PrizeSelection.TOP_WINNERS:
        if (props.get("top_winners_count") or 0) < 1:
            raise BusinessError("topWinnersCount must be at least 1")
    elif (props.get("prize_ratio_numerator") or 0) < 1 or (props.get("prize_ratio_denominator") or 0) < 1:
        raise BusinessError("prizeRatioNumerator and prizeRatioDenominator must be at least 1")

    if props["start_time"] >= props["end_time"]:
        raise BusinessError("startTime must be before endTime")
    return selection


def _validate_question(q: dict):
    option_ids = [o["optionId"] for o in q.get("options", [])]
    if len(option_ids) < 2:
        raise BusinessError(f"question {q.get('question_no')} needs at least two options")
    if q["correct_option_id"] not in option_ids:
        raise BusinessError(f"question {q.get('question_no')} correct option is not one of its options")


async def create_contest(ctx: AppContext, props: dict, questions: list[dict] | None = None, created_by: int | None = None) -> dict:
    """
    props: title, entry_fee, entry_fee_max_bonus_money, prize_selection,
    top_winners_count | prize_ratio_numerator + prize_ratio_denominator,
    prize_value_real, prize_value_bonus, start_time, end_time,
    min_required_players.
    questions: question_no, question_text, options, correct_option_id.
    """
    selection = _validate_props(props)
    questions = questions or []
    seen = set()
    for q in questions:
        _validate_question(q)
        if q["question_no"] in seen:
            raise BusinessError(f"duplicate questionNo {q['question_no']}")
        seen.add(q["question_no"])

    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = Contest(
            title=props["title"],
            entry_fee=props.get("entry_fee", 0),
            entry_fee_max_bonus_money=props.get("entry_fee_max_bonus_money", 0),
            prize_selection=selection,
            top_winners_count=props.get("top_winners_count"),
            prize_ratio_numerator=props.get("prize_ratio_numerator"),
            prize_ratio_denominator=props.get("prize_ratio_denominator"),
            prize_value_real=props.get("prize_value_real", 0),
            prize_value_bonus=props.get("prize_value_bonus", 0),
            start_time=props["start_time"],
            end_time=props["end_time"],
            min_required_players=props.get("min_required_players", 0),
            status=ContestStatus.CREATED,
            settlement_attempts=0,
            created_ts=now,
            created_by=created_by,
            updated_ts=now,
            updated_by=created_by,
        )
        contest.questions = [
            ContestQuestion(
                question_no=q["question_no"],
                question_text=q["question_text"],
                options=q["options"],
                correct_option_id=q["correct_option_id"],
                is_active=q.get("is_active", True),
            )
            for q in questions
        ]
        session.add(contest)
        await session.flush()
        result = contest.to_dict()

    logger.info(f"🆕 Contest {result['id']} created: {result['title']}")
    return result


async def activate_contest(ctx: AppContext, contest_id: int, updated_by: int | None = None) -> dict:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        if contest.status not in (ContestStatus.CREATED, ContestStatus.INACTIVE):
            raise BusinessError("contest status must be CREATED or INACTIVE")
        if contest.end_time <= now:
            raise BusinessError("contest is ended already")
        if not contest.active_questions:
            raise BusinessError("contest should contain some questions")

        contest.status = ContestStatus.ACTIVE
        contest.updated_ts = now
        contest.updated_by = updated_by
        return contest.to_dict()


async def inactivate_contest(ctx: AppContext, contest_id: int, updated_by: int | None = None) -> dict:
    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        contest = await get_contest(session, contest_id)
        if contest.status not in (ContestStatus.CREATED, ContestStatus.ACTIVE):
            raise BusinessError("contest status must be CREATED or ACTIVE")
        if contest.start_time <= now:
            raise BusinessError("contest is started already")

        contest.status = ContestStatus.INACTIVE
        contest.updated_ts = now
        contest.updated_by = updated_by
        return contest.to_dict()
