# ==================================================================
# services/notifications.py: notification requests and user inbox
# ==================================================================
import logging
import re

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from context import AppContext
from db import UnitOfWork
from models import Notification, NotificationReq, NotificationReqStatus, NotificationType

logger = logging.getLogger(__name__)

# Event names (keys into notification_contents)
CREDIT_PRIZE = "CREDIT_PRIZE"
CONTEST_CANCELLED = "CONTEST_CANCELLED"
REFERRAL_BONUS = "REFERRAL_BONUS"
REFERRER_BONUS = "REFERRER_BONUS"

DEFAULT_PAGE_SIZE = 1000

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


async def submit(
    session: AsyncSession,
    user_id: int,
    event_name: str,
    data: dict | None = None,
    ts: int | None = None,
    notification_type: NotificationType = NotificationType.PUSH_MESSAGE,
) -> NotificationReq:
    """
    Enqueue a NEW notification request on the caller's session.
    Nothing is persisted unless the caller's transaction commits.
    """
    req = NotificationReq(
        event_name=event_name,
        notification_type=notification_type,
        user_id=user_id,
        data={k: str(v) for k, v in (data or {}).items()},
        status=NotificationReqStatus.NEW,
        retry_count=0,
        created_ts=ts,
        updated_ts=ts,
    )
    session.add(req)
    return req


def render_template(content: str, data: dict) -> str:
    """Replace each {{key}} with data[key]; unknown keys are left as-is."""

    def _sub(match):
        key = match.group(1)
        return str(data[key]) if key in data else match.group(0)

    return _PLACEHOLDER.sub(_sub, content)


# ---------------------------------------------------------------
# Inbox (delivered push messages)
# ---------------------------------------------------------------
async def get_inbox(ctx: AppContext, user_id: int, page_index: int = 0, page_size: int = DEFAULT_PAGE_SIZE) -> list[dict]:
    """Uncleared push messages, newest first."""
    page_index = max(page_index, 0)
    page_size = max(page_size, 1)
    async with UnitOfWork(ctx.session_factory) as session:
        result = await session.execute(
            select(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.is_cleared.is_(False),
                Notification.notification_type == NotificationType.PUSH_MESSAGE,
            )
            .order_by(Notification.id.desc())
            .offset(page_index * page_size)
            .limit(page_size)
        )
        return [n.to_dict() for n in result.scalars().all()]


async def _flag(ctx: AppContext, user_id: int, column, notification_id: int | None) -> int:
    conditions = [Notification.user_id == user_id, column.is_(False)]
    if notification_id is not None:
        conditions.append(Notification.id == notification_id)
    async with UnitOfWork(ctx.session_factory) as session:
        result = await session.execute(
            update(Notification)
            .where(*conditions)
            .values({column.key: True, "updated_ts": ctx.now()})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


async def mark_read(ctx: AppContext, user_id: int, notification_id: int | None = None) -> int:
    """Mark one (or, without an id, every) unread message as read. Returns rows changed."""
    return await _flag(ctx, user_id, Notification.is_read, notification_id)


async def clear(ctx: AppContext, user_id: int, notification_id: int | None = None) -> int:
    """Hide one (or, without an id, every) message from the inbox. Returns rows changed."""
    return await _flag(ctx, user_id, Notification.is_cleared, notification_id)
