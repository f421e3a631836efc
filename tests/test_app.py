import httpx
import pytest

from app import create_app
from db import UnitOfWork
from models import Notification


@pytest.fixture
async def client(ctx):
    transport = httpx.ASGITransport(app=create_app(ctx))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHttp:
    """Routes are thin wrappers around the services"""

    async def test_health(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_balance(self, client, factory):
        user_id = await factory.user()
        await factory.fund(user_id, 70, 30)

        resp = await client.get("/wallet/balance", headers={"X-User-Id": str(user_id)})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "data": {"real": 70, "bonus": 30, "withdrawable": 0}}

    async def test_missing_identity(self, client):
        resp = await client.get("/wallet/balance")
        assert resp.status_code == 422

    async def test_play_flow(self, client, factory):
        contest = await factory.contest()
        user_id = await factory.user()
        await factory.fund(user_id, 100, 20)
        headers = {"X-User-Id": str(user_id)}
        base = f"/contest/{contest['id']}"

        resp = await client.post(f"{base}/pay", json={"bonusAmount": 20}, headers=headers)
        assert resp.json()["data"]["status"] == "PAID"

        resp = await client.post(f"{base}/start", headers=headers)
        assert resp.json()["data"]["status"] == "STARTED"

        resp = await client.get(f"{base}/question", headers=headers)
        question_no = resp.json()["data"]["questionNo"]

        resp = await client.post(
            f"{base}/answer", json={"questionNo": question_no, "selectedOptionId": 1}, headers=headers
        )
        assert resp.json()["data"]["score"] == 1

        resp = await client.post(f"{base}/finish", headers=headers)
        assert resp.json()["data"]["status"] == "FINISHED"

        resp = await client.get(f"{base}/playTracker", headers=headers)
        assert resp.json()["data"]["finishTs"] is not None

    async def test_business_error_envelope(self, client, factory):
        contest = await factory.contest()
        user_id = await factory.user()

        resp = await client.post(f"/contest/{contest['id']}/start", headers={"X-User-Id": str(user_id)})

        assert resp.status_code == 400
        assert resp.json() == {"success": False, "message": "contest not paid yet"}

    async def test_not_found(self, client, factory):
        user_id = await factory.user()
        resp = await client.get("/contest/999/playTracker", headers={"X-User-Id": str(user_id)})
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    async def test_top_up_round_trip(self, client, factory):
        user_id = await factory.user()
        headers = {"X-User-Id": str(user_id)}

        init = (await client.post("/wallet/addBalance/init", json={"amount": 250}, headers=headers)).json()["data"]
        resp = await client.post(
            "/wallet/addBalance/complete",
            json={"transactionId": init["transactionId"], "amount": 250, "isSuccessful": True, "trackingId": "UTR9"},
            headers=headers,
        )

        assert resp.json()["data"]["real"] == 250

    async def test_referral(self, client, factory):
        await factory.user(referral_code="FRIEND")
        user_id = await factory.user()
        resp = await client.post("/referral/use", json={"referralCode": "FRIEND"}, headers={"X-User-Id": str(user_id)})
        assert resp.json()["data"]["bonus"] == 50

    async def test_negative_top_up_completion_is_rejected(self, client, factory):
        user_id = await factory.user()
        headers = {"X-User-Id": str(user_id)}
        init = (await client.post("/wallet/addBalance/init", json={"amount": 250}, headers=headers)).json()["data"]

        resp = await client.post(
            "/wallet/addBalance/complete",
            json={"transactionId": init["transactionId"], "amount": -1, "isSuccessful": True},
            headers=headers,
        )

        assert resp.status_code == 400
        assert resp.json() == {"success": False, "message": "amount must be at least 1"}

    async def test_leaderboard(self, client, factory):
        await factory.user(name="idle")
        resp = await client.get("/leaderboard")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "data": []}

    async def test_inbox(self, client, factory, ctx):
        user_id = await factory.user()
        headers = {"X-User-Id": str(user_id)}
        async with UnitOfWork(ctx.session_factory) as session:
            for message in ("first", "second"):
                session.add(Notification(event_name="CREDIT_PRIZE", user_id=user_id, message=message, created_ts=ctx.now()))

        inbox = (await client.get("/notification", headers=headers)).json()["data"]
        assert [n["message"] for n in inbox] == ["second", "first"]

        resp = await client.post("/notification/markRead", json={"id": inbox[0]["id"]}, headers=headers)
        assert resp.json() == {"success": True, "message": "Updated successfully"}
        await client.post("/notification/clear", json={"id": inbox[1]["id"]}, headers=headers)

        inbox = (await client.get("/notification", params={"pageSize": 10}, headers=headers)).json()["data"]
        assert [(n["message"], n["isRead"]) for n in inbox] == [("second", True)]

        await client.post("/notification/markAllRead", headers=headers)
        await client.post("/notification/clearAll", headers=headers)
        assert (await client.get("/notification", headers=headers)).json()["data"] == []
