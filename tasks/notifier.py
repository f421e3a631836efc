# ================================================================
# tasks/notifier.py
# RENDER + DELIVER NOTIFICATION REQUESTS
# ================================================================
"""
Two passes per tick:
  1. NEW            -> READY_TO_SEND  (template rendered, address resolved)
  2. READY_TO_SEND  -> SENT           (pushed, inbox row written)

A failing request keeps its status and gets `retry_count += 1`; it
turns ERROR once the count reaches NOTIFICATION_MAX_RETRY.
"""
import asyncio
from typing import Protocol

from sqlalchemy import select
from telegram import Bot

from config import Settings
from context import AppContext
from db import UnitOfWork
from logging_setup import logger
from models import (
    Notification,
    NotificationContent,
    NotificationReq,
    NotificationReqStatus,
    User,
)
from services.notifications import render_template


class DeliveryError(Exception):
    pass


# -------------------------------------------------------------
# Transport
# -------------------------------------------------------------
class PushSender(Protocol):
    async def send(self, address: int, message: str) -> None: ...


class TelegramPushSender:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, address: int, message: str) -> None:
        await self.bot.send_message(chat_id=address, text=message)


def build_push_sender(settings: Settings) -> PushSender | None:
    if not settings.bot_token:
        logger.warning("⚠️ BOT_TOKEN not set, notifications will be rendered but not delivered")
        return None
    return TelegramPushSender(Bot(token=settings.bot_token))


# -------------------------------------------------------------
# Job
# -------------------------------------------------------------
class NotificationJob:
    def __init__(self, ctx: AppContext, sender: PushSender | None = None):
        self.ctx = ctx
        self.sender = sender
        self._lock = asyncio.Lock()

    async def _fetch(self, status: NotificationReqStatus) -> list[NotificationReq]:
        async with UnitOfWork(self.ctx.session_factory) as session:
            result = await session.execute(
                select(NotificationReq)
                .where(NotificationReq.status == status)
                .order_by(NotificationReq.created_ts.asc())
                .limit(self.ctx.settings.notification_fetch_limit)
            )
            return list(result.scalars().all())

    async def _fail(self, req_id, message: str):
        async with UnitOfWork(self.ctx.session_factory) as session:
            req = await session.get(NotificationReq, req_id)
            if req is None:
                logger.warning(f"⚠️ Notification {req_id} vanished before its failure was recorded: {message}")
                return
            req.retry_count = (req.retry_count or 0) + 1
            req.error_message = message
            req.updated_ts = self.ctx.now()
            if req.retry_count >= self.ctx.settings.notification_max_retry:
                req.status = NotificationReqStatus.ERROR
                logger.error(f"❌ Notification {req_id} gave up after {req.retry_count} tries: {message}")
            else:
                logger.warning(f"⚠️ Notification {req_id} failed (try {req.retry_count}): {message}")

    async def _tg_id(self, session, user_id: int) -> int:
        tg_id = (
            await session.execute(
                select(User.tg_id).where(User.id == user_id, User.is_active.is_(True))
            )
        ).scalar_one_or_none()
        if tg_id is None:
            raise DeliveryError(f"no active user with a delivery address for user_id={user_id}")
        return tg_id

    # ---------------------------------------------------------
    # Pass 1: NEW -> READY_TO_SEND
    # ---------------------------------------------------------
    async def _prepare(self, req: NotificationReq):
        async with UnitOfWork(self.ctx.session_factory) as session:
            content = (
                await session.execute(
                    select(NotificationContent.content).where(
                        NotificationContent.event_name == req.event_name
                    )
                )
            ).scalar_one_or_none()
            if content is None:
                raise DeliveryError(f"no notification content for event {req.event_name}")

            await self._tg_id(session, req.user_id)
            message = render_template(content, req.data or {}).strip()
            if not message:
                raise DeliveryError("rendered message is empty")

            row = await session.get(NotificationReq, req.id)
            row.final_message = message
            row.status = NotificationReqStatus.READY_TO_SEND
            row.updated_ts = self.ctx.now()

    async def prepare_new(self) -> int:
        done = 0
        for req in await self._fetch(NotificationReqStatus.NEW):
            try:
                await self._prepare(req)
                done += 1
            except Exception as e:
                await self._fail(req.id, str(e))
        return done

    # ---------------------------------------------------------
    # Pass 2: READY_TO_SEND -> SENT
    # ---------------------------------------------------------
    async def _deliver(self, req: NotificationReq):
        async with UnitOfWork(self.ctx.session_factory) as session:
            tg_id = await self._tg_id(session, req.user_id)

        await self.sender.send(tg_id, req.final_message)

        now = self.ctx.now()
        async with UnitOfWork(self.ctx.session_factory) as session:
            row = await session.get(NotificationReq, req.id)
            row.status = NotificationReqStatus.SENT
            row.updated_ts = now
            session.add(
                Notification(
                    event_name=req.event_name,
                    notification_type=req.notification_type,
                    user_id=req.user_id,
                    message=req.final_message,
                    created_ts=now,
                )
            )

    async def send_ready(self) -> int:
        if self.sender is None:
            return 0
        sent = 0
        for req in await self._fetch(NotificationReqStatus.READY_TO_SEND):
            try:
                await self._deliver(req)
                sent += 1
            except Exception as e:
                await self._fail(req.id, str(e))
        return sent

    async def run_once(self) -> tuple[int, int]:
        async with self._lock:
            prepared = await self.prepare_new()
            sent = await self.send_ready()
        if prepared or sent:
            logger.info(f"📨 Notifications: {prepared} prepared, {sent} sent")
        return prepared, sent

    async def loop(self):
        interval = self.ctx.settings.notification_job_interval
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Notifier task error: {e}")
            await asyncio.sleep(interval)
