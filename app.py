# =====================================================
# app.py
# =====================================================
import os
import logging

# Force unbuffered output (container logs in real time)
os.environ["PYTHONUNBUFFERED"] = "1"

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Local imports
from config import load_settings
from context import AppContext
from db import build_engine, build_session_factory, init_db, test_connection
from errors import AppError
from logging_setup import setup_logging
from services import leaderboard, notifications, playtracker, referral, wallet
from tasks import start_background_tasks, stop_background_tasks

logger = logging.getLogger(__name__)

router = APIRouter()


# -------------------------------------------------
# Request bodies (camelCase on the wire)
# -------------------------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AmountBody(CamelModel):
    amount: int


class CompleteBody(CamelModel):
    transaction_id: str
    amount: int
    is_successful: bool
    tracking_id: str | None = None
    error_reason: str | None = None


class WithdrawBody(CamelModel):
    amount: int
    receiver_upi_id: str


class ReferralBody(CamelModel):
    referral_code: str


class PayBody(CamelModel):
    bonus_amount: int = 0


class AnswerBody(CamelModel):
    question_no: int
    selected_option_id: int


class NotificationIdBody(CamelModel):
    id: int


# -------------------------------------------------
# Dependencies
# -------------------------------------------------
def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def current_user_id(x_user_id: int = Header(...)) -> int:
    """Caller identity, set by the auth gateway in front of this service."""
    return x_user_id


def ok(data=None) -> dict:
    return {"success": True, "data": data}


# -------------------------------------------------
# Health
# -------------------------------------------------
@router.get("/")
@router.head("/")
async def root():
    return {"status": "ok", "message": "Contest engine is running ✅"}


# -------------------------------------------------
# Wallet
# -------------------------------------------------
@router.get("/wallet/balance")
async def get_balance(ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    balance = await wallet.get_balance(ctx, user_id)
    return ok(balance.to_dict())


@router.post("/wallet/addBalance/init")
async def add_balance_init(body: AmountBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await wallet.add_balance_init(ctx, user_id, body.amount))


@router.post("/wallet/addBalance/complete")
async def add_balance_complete(body: CompleteBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    balance = await wallet.add_balance_complete(
        ctx, user_id, body.transaction_id, body.amount, body.is_successful, body.tracking_id, body.error_reason
    )
    return ok(balance.to_dict() if balance else None)


@router.post("/wallet/withdraw/init")
async def withdraw_init(body: WithdrawBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await wallet.withdraw_init(ctx, user_id, body.amount, body.receiver_upi_id))


@router.post("/wallet/withdraw/complete")
async def withdraw_complete(body: CompleteBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    balance = await wallet.withdraw_complete(
        ctx, user_id, body.transaction_id, body.amount, body.is_successful, body.tracking_id, body.error_reason
    )
    return ok(balance.to_dict() if balance else None)


@router.post("/referral/use")
async def use_referral(body: ReferralBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await referral.use_referral_code(ctx, user_id, body.referral_code))


@router.get("/leaderboard")
async def get_leaderboard(ctx: AppContext = Depends(get_ctx)):
    return ok(await leaderboard.get_leaderboard(ctx))


# -------------------------------------------------
# Notification inbox
# -------------------------------------------------
@router.get("/notification")
async def get_notifications(
    page_index: int = Query(0, alias="pageIndex"),
    page_size: int = Query(notifications.DEFAULT_PAGE_SIZE, alias="pageSize"),
    ctx: AppContext = Depends(get_ctx),
    user_id: int = Depends(current_user_id),
):
    return ok(await notifications.get_inbox(ctx, user_id, page_index, page_size))


@router.post("/notification/markRead")
async def mark_read(body: NotificationIdBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    await notifications.mark_read(ctx, user_id, body.id)
    return {"success": True, "message": "Updated successfully"}


@router.post("/notification/markAllRead")
async def mark_all_read(ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    await notifications.mark_read(ctx, user_id)
    return {"success": True, "message": "Updated successfully"}


@router.post("/notification/clear")
async def clear_notification(body: NotificationIdBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    await notifications.clear(ctx, user_id, body.id)
    return {"success": True, "message": "Updated successfully"}


@router.post("/notification/clearAll")
async def clear_all_notifications(ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    await notifications.clear(ctx, user_id)
    return {"success": True, "message": "Updated successfully"}


# -------------------------------------------------
# Play tracker
# -------------------------------------------------
@router.get("/contest/{contest_id}/playTracker")
async def get_play_tracker(contest_id: int, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await playtracker.get_play_tracker(ctx, user_id, contest_id))


@router.post("/contest/{contest_id}/pay")
async def pay_for_contest(contest_id: int, body: PayBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await playtracker.pay_for_contest(ctx, user_id, contest_id, body.bonus_amount))


@router.post("/contest/{contest_id}/start")
async def start_play_tracker(contest_id: int, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await playtracker.start_play_tracker(ctx, user_id, contest_id))


@router.get("/contest/{contest_id}/question")
async def get_next_question(contest_id: int, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await playtracker.get_next_question(ctx, user_id, contest_id))


@router.post("/contest/{contest_id}/answer")
async def answer_question(contest_id: int, body: AnswerBody, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(
        await playtracker.answer_question(ctx, user_id, contest_id, body.question_no, body.selected_option_id)
    )


@router.post("/contest/{contest_id}/finish")
async def finish_play_tracker(contest_id: int, ctx: AppContext = Depends(get_ctx), user_id: int = Depends(current_user_id)):
    return ok(await playtracker.finish_play_tracker(ctx, user_id, contest_id))


# -------------------------------------------------
# App factory
# -------------------------------------------------
def create_app(ctx: AppContext | None = None) -> FastAPI:
    """
    With `ctx` given (tests), the app uses it as-is and starts nothing.
    Otherwise startup builds the context from the environment and
    launches the background loops.
    """
    app = FastAPI()
    app.include_router(router)
    app.state.ctx = ctx

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    if ctx is not None:
        return app

    @app.on_event("startup")
    async def on_startup():
        settings = load_settings()
        setup_logging(settings.log_level, settings.sentry_dsn, settings.environment)
        logger.info("🚀 Starting up contest engine...")

        engine = build_engine(settings.database_url, echo=settings.sql_echo)
        await test_connection(engine)
        if settings.auto_create_tables:
            await init_db(engine)

        app.state.engine = engine
        app.state.ctx = AppContext(settings=settings, session_factory=build_session_factory(engine))

        # ✅ Start background tasks
        await start_background_tasks(app.state.ctx)

    @app.on_event("shutdown")
    async def on_shutdown():
        try:
            await stop_background_tasks()
            await app.state.engine.dispose()
            logger.info("🛑 Contest engine stopped cleanly.")
        except Exception as e:
            logger.warning(f"⚠️ Error while shutting down: {e}")

    return app


app = create_app()
