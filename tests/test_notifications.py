import pytest
from sqlalchemy import delete

from db import UnitOfWork
from models import Notification, NotificationContent, NotificationReq, NotificationReqStatus, NotificationType
from services import notifications
from tasks.notifier import NotificationJob


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, address, message):
        if self.fail:
            raise ConnectionError("telegram unreachable")
        self.sent.append((address, message))


async def add_content(ctx, event_name, content):
    async with UnitOfWork(ctx.session_factory) as session:
        session.add(NotificationContent(event_name=event_name, content=content))


async def submit(ctx, user_id, event_name, data):
    async with UnitOfWork(ctx.session_factory) as session:
        req = await notifications.submit(session, user_id, event_name, data, ts=ctx.now())
    return req.id


class TestEmitter:
    def test_render_template(self):
        rendered = notifications.render_template("Hi {{name}}, rank {{ rank }} {{missing}}", {"name": "Ada", "rank": 1})
        assert rendered == "Hi Ada, rank 1 {{missing}}"

    async def test_submit_values_are_strings(self, ctx, factory):
        user_id = await factory.user()
        await submit(ctx, user_id, notifications.CREDIT_PRIZE, {"rank": 2})
        req = (await factory.rows(NotificationReq))[0]
        assert req.status == NotificationReqStatus.NEW
        assert req.data == {"rank": "2"}

    async def test_rolled_back_transaction_leaves_no_request(self, ctx, factory):
        user_id = await factory.user()
        with pytest.raises(RuntimeError):
            async with UnitOfWork(ctx.session_factory) as session:
                await notifications.submit(session, user_id, notifications.CREDIT_PRIZE, {}, ts=ctx.now())
                raise RuntimeError("settlement failed")
        assert await factory.rows(NotificationReq) == []


class TestNotificationJob:
    """NEW -> READY_TO_SEND -> SENT, with bounded retries"""

    async def test_happy_path(self, ctx, factory):
        user_id = await factory.user(name="Ada", tg_id=555)
        await add_content(ctx, notifications.CREDIT_PRIZE, "Congrats {{name}}! You ranked {{rank}}.")
        req_id = await submit(ctx, user_id, notifications.CREDIT_PRIZE, {"name": "Ada", "rank": 1})
        sender = RecordingSender()

        prepared, sent = await NotificationJob(ctx, sender).run_once()

        assert (prepared, sent) == (1, 1)
        assert sender.sent == [(555, "Congrats Ada! You ranked 1.")]
        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.SENT
        assert req.final_message == "Congrats Ada! You ranked 1."
        inbox = await factory.rows(Notification, Notification.user_id == user_id)
        assert [n.message for n in inbox] == ["Congrats Ada! You ranked 1."]

    async def test_missing_content_retries_then_errors(self, ctx, factory):
        user_id = await factory.user(tg_id=1)
        req_id = await submit(ctx, user_id, "UNKNOWN_EVENT", {})
        job = NotificationJob(ctx, RecordingSender())

        await job.run_once()
        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.NEW
        assert req.retry_count == 1
        assert "UNKNOWN_EVENT" in req.error_message

        await job.run_once()
        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.ERROR
        assert req.retry_count == ctx.settings.notification_max_retry

    async def test_user_without_address_fails(self, ctx, factory):
        user_id = await factory.user(tg_id=None)
        await add_content(ctx, notifications.CREDIT_PRIZE, "hello")
        req_id = await submit(ctx, user_id, notifications.CREDIT_PRIZE, {})

        await NotificationJob(ctx, RecordingSender()).prepare_new()

        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.NEW
        assert req.retry_count == 1

    async def test_send_failure_keeps_ready_until_budget_spent(self, ctx, factory):
        user_id = await factory.user(tg_id=9)
        await add_content(ctx, notifications.CONTEST_CANCELLED, "Contest {{contestTitle}} was cancelled")
        req_id = await submit(ctx, user_id, notifications.CONTEST_CANCELLED, {"contestTitle": "Quiz"})
        job = NotificationJob(ctx, RecordingSender(fail=True))

        await job.run_once()
        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.READY_TO_SEND
        assert req.retry_count == 1

        await job.run_once()
        req = await factory.get(NotificationReq, req_id)
        assert req.status == NotificationReqStatus.ERROR
        assert await factory.rows(Notification) == []

    async def test_without_sender_only_renders(self, ctx, factory):
        user_id = await factory.user(tg_id=9)
        await add_content(ctx, notifications.CREDIT_PRIZE, "hi")
        req_id = await submit(ctx, user_id, notifications.CREDIT_PRIZE, {})

        assert await NotificationJob(ctx, None).run_once() == (1, 0)
        assert (await factory.get(NotificationReq, req_id)).status == NotificationReqStatus.READY_TO_SEND

    async def test_request_removed_mid_delivery(self, ctx, factory):
        user_id = await factory.user(tg_id=9)
        await add_content(ctx, notifications.CREDIT_PRIZE, "hi")
        await submit(ctx, user_id, notifications.CREDIT_PRIZE, {})

        class PurgingSender:
            async def send(self, address, message):
                async with UnitOfWork(ctx.session_factory) as session:
                    await session.execute(delete(NotificationReq))
                raise ConnectionError("telegram unreachable")

        assert await NotificationJob(ctx, PurgingSender()).run_once() == (1, 0)
        assert await factory.rows(NotificationReq) == []


async def deliver(ctx, user_id, message, notification_type=NotificationType.PUSH_MESSAGE):
    async with UnitOfWork(ctx.session_factory) as session:
        row = Notification(
            event_name=notifications.CREDIT_PRIZE,
            notification_type=notification_type,
            user_id=user_id,
            message=message,
            created_ts=ctx.now(),
        )
        session.add(row)
        await session.flush()
        return row.id


class TestInbox:
    """Delivered messages: list, mark read, clear"""

    async def test_newest_first_and_paged(self, ctx, factory):
        user_id = await factory.user()
        other = await factory.user()
        for n in range(3):
            await deliver(ctx, user_id, f"m{n}")
        await deliver(ctx, user_id, "sms", NotificationType.SMS_MESSAGE)
        await deliver(ctx, other, "not yours")

        inbox = await notifications.get_inbox(ctx, user_id)
        assert [n["message"] for n in inbox] == ["m2", "m1", "m0"]
        assert inbox[0]["isRead"] is False

        page = await notifications.get_inbox(ctx, user_id, page_index=1, page_size=2)
        assert [n["message"] for n in page] == ["m0"]

    async def test_mark_read_one_and_all(self, ctx, factory, clock):
        user_id = await factory.user()
        first = await deliver(ctx, user_id, "a")
        await deliver(ctx, user_id, "b")
        clock.advance(10)

        assert await notifications.mark_read(ctx, user_id, first) == 1
        assert await notifications.mark_read(ctx, user_id, first) == 0
        row = await factory.get(Notification, first)
        assert row.is_read is True
        assert row.updated_ts == clock.now

        assert await notifications.mark_read(ctx, user_id) == 1
        assert all(n["isRead"] for n in await notifications.get_inbox(ctx, user_id))

    async def test_cannot_touch_other_users_messages(self, ctx, factory):
        owner = await factory.user()
        other = await factory.user()
        note = await deliver(ctx, owner, "private")

        assert await notifications.mark_read(ctx, other, note) == 0
        assert await notifications.clear(ctx, other, note) == 0
        row = await factory.get(Notification, note)
        assert (row.is_read, row.is_cleared) == (False, False)

    async def test_clear_hides_from_inbox(self, ctx, factory):
        user_id = await factory.user()
        first = await deliver(ctx, user_id, "a")
        await deliver(ctx, user_id, "b")
        await deliver(ctx, user_id, "c")

        await notifications.clear(ctx, user_id, first)
        assert [n["message"] for n in await notifications.get_inbox(ctx, user_id)] == ["c", "b"]

        assert await notifications.clear(ctx, user_id) == 2
        assert await notifications.get_inbox(ctx, user_id) == []
