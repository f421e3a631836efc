# ==================================================================
# services/referral.py: referral code redemption
# ==================================================================
import logging

from sqlalchemy import func, select, update

from context import AppContext
from db import UnitOfWork
from errors import BusinessError, NotFoundError
from models import SpecialReferralCode, User
from services import ledger, notifications

logger = logging.getLogger(__name__)


async def use_referral_code(ctx: AppContext, user_id: int, referral_code: str) -> dict:
    """
    Redeem a referral code once per user.

    Special codes credit their own bonus to the user only. A regular
    code belongs to another active user: both the user and the referrer
    get a bonus.
    """
    code = (referral_code or "").strip().upper()
    if not code:
        raise BusinessError("Invalid referralCode")

    now = ctx.now()
    async with UnitOfWork(ctx.session_factory) as session:
        user = (
            await session.execute(select(User).where(User.id == user_id).with_for_update())
        ).scalar_one_or_none()
        if user is None or not user.is_active:
            raise NotFoundError("user not found")
        if user.has_used_referral_code:
            raise BusinessError("User has already used referral")
        if user.referral_code and user.referral_code.upper() == code:
            raise BusinessError("Invalid referralCode")

        special = (
            await session.execute(
                select(SpecialReferralCode).where(
                    func.upper(SpecialReferralCode.referral_code) == code,
                    SpecialReferralCode.is_active.is_(True),
                    SpecialReferralCode.valid_till > now,
                )
            )
        ).scalar_one_or_none()

        referrer_id = None
        if special is not None:
            bonus = special.bonus
            await ledger.credit_referral_bonus(session, user_id, bonus, code, now)
        else:
            referrer = (
                await session.execute(
                    select(User).where(
                        func.upper(User.referral_code) == code,
                        User.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
            if referrer is None:
                raise BusinessError("Invalid referralCode")

            referrer_id = referrer.id
            bonus = ctx.settings.referral_bonus
            await ledger.credit_referral_bonus(session, user_id, bonus, code, now)
            await ledger.credit_referrer_bonus(session, referrer_id, ctx.settings.referrer_bonus, user_id, now)
            await notifications.submit(
                session,
                referrer_id,
                notifications.REFERRER_BONUS,
                {"name": user.name, "bonus": ctx.settings.referrer_bonus},
                ts=now,
            )

        await notifications.submit(
            session,
            user_id,
            notifications.REFERRAL_BONUS,
            {"referralCode": code, "bonus": bonus},
            ts=now,
        )

        await session.execute(
            update(User)
            .where(User.id == user_id, User.has_used_referral_code.is_(False))
            .values(
                has_used_referral_code=True,
                used_referral_code=code,
                referred_by=referrer_id,
                updated_ts=now,
            )
            .execution_options(synchronize_session=False)
        )

    logger.info(f"🎁 user_id={user_id} redeemed referral code {code} (referrer={referrer_id})")
    return {"referralCode": code, "bonus": bonus, "referredBy": referrer_id}
