import httpx
import pytest

from app.core.scheduler import scheduler, AUTO_CHECK_JOB_PREFIX
from app.main import app
from app.services.auth.security import SecurityService
from tests.conftest import legacy_callback, seed_appointment, seed_code, seed_price


def auth(user_id, role="user"):
    token = SecurityService.create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(db, gateway):
    await db.users.insert_one({"user_id": "7", "is_active": True, "role": "user"})
    await db.users.insert_one({"user_id": "8", "is_active": True, "role": "user"})
    await db.users.insert_one({"user_id": "admin-1", "is_active": True, "role": "admin"})
    await db.users.insert_one({"user_id": "9", "is_active": False, "role": "user"})
    await seed_price(db)
    await seed_appointment(db)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    scheduler.remove_all_jobs()


async def initiate(client, user_id="7", **body):
    payload = {"appointmentId": "123"}
    payload.update(body)
    return await client.post("/api/payment/initiate", json=payload, headers=auth(user_id))


class TestAuth:

    async def test_missing_token(self, client):
        response = await client.post("/api/payment/initiate", json={"appointmentId": "123"})

        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Authentication required"}

    async def test_invalid_token(self, client):
        response = await client.get("/api/payment/history", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_inactive_user(self, client):
        response = await client.get("/api/payment/history", headers=auth("9"))

        assert response.status_code == 401

    async def test_admin_routes_need_admin_role(self, client):
        response = await client.get("/api/payment/admin", headers=auth("7"))

        assert response.status_code == 403


class TestPaymentFlow:

    async def test_initiate_callback_and_status(self, client, fake_psp):
        response = await initiate(client)
        body = response.json()

        assert response.status_code == 200
        assert body["message"] == "Payment initiated successfully"
        data = body["data"]
        assert data["final_amount"] == 500.0
        assert data["payment_url"].startswith("https://mercury-t2.phonepe.com/transact/")
        assert scheduler.get_job(f"{AUTO_CHECK_JOB_PREFIX}{data['payment_id']}") is not None

        again = await initiate(client)
        assert again.json()["message"] == "Payment already initiated"
        assert again.json()["data"]["payment_id"] == data["payment_id"]

        callback = await client.post("/api/payment/phonepe/callback",
                                     json=legacy_callback(data["merchant_transaction_id"]))
        assert callback.status_code == 200
        assert callback.json()["payment_status"] == "success"

        status = await client.get(f"/api/payment/status/{data['payment_id']}", headers=auth("7"))
        assert status.status_code == 200
        assert status.json()["data"]["status"] == "success"
        assert status.json()["data"]["appointment"]["status"] == "confirmed"
        assert fake_psp.status_calls == []

    async def test_initiate_with_redeem_code(self, db, client, fake_psp):
        await seed_code(db, "SAVE10")

        response = await initiate(client, redeemCode="SAVE10")

        assert response.status_code == 200
        assert response.json()["data"]["final_amount"] == 450.0
        assert fake_psp.orders[0]["payload"]["amount"] == 45000

    async def test_initiate_for_someone_elses_appointment(self, client):
        response = await initiate(client, user_id="8")

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    async def test_psp_failure_is_reported(self, client, fake_psp):
        fake_psp.order_response = (500, {"code": "INTERNAL_SERVER_ERROR", "message": "Something went wrong"})

        response = await initiate(client)

        assert response.status_code == 400
        assert response.json()["error_code"] == "PAYMENT_INITIATION_FAILED"

    async def test_status_of_someone_elses_payment(self, client):
        data = (await initiate(client)).json()["data"]

        response = await client.get(f"/api/payment/status/{data['payment_id']}", headers=auth("8"))

        assert response.status_code == 404

    async def test_sync(self, client, fake_psp):
        data = (await initiate(client)).json()["data"]
        fake_psp.set_status(data["merchant_transaction_id"], "COMPLETED", amount=50000)

        response = await client.post(f"/api/payment/sync/{data['payment_id']}", headers=auth("admin-1", "admin"))

        assert response.status_code == 200
        assert response.json()["message"] == "Payment status updated"
        assert response.json()["data"]["new_status"] == "success"

    async def test_sync_by_other_user(self, client):
        data = (await initiate(client)).json()["data"]

        response = await client.post(f"/api/payment/sync/{data['payment_id']}", headers=auth("8"))

        assert response.status_code == 403

    async def test_history_details_and_pending(self, client):
        pending = await client.get("/api/payment/pending", headers=auth("7"))
        assert pending.json()["data"]["count"] == 1

        data = (await initiate(client)).json()["data"]

        history = await client.get("/api/payment/history", headers=auth("7"))
        details = await client.get(f"/api/payment/details/{data['payment_id']}", headers=auth("7"))

        assert history.json()["data"]["pagination"]["total"] == 1
        assert history.json()["data"]["payments"][0]["amount"] == 500.0
        assert details.json()["data"]["payment"]["appointment"]["appointment_id"] == "123"
        assert "psp_response" not in details.json()["data"]["payment"]

    async def test_methods(self, client):
        response = await client.get("/api/payment/methods")

        assert response.json()["data"]["gateway"] == "phonepe"
        assert {m["type"] for m in response.json()["data"]["methods"]} == {"UPI", "CARD", "NETBANKING", "WALLET"}


class TestCallbackRoute:

    async def test_invalid_json(self, client):
        response = await client.post("/api/payment/phonepe/callback", content=b"not json",
                                     headers={"Content-Type": "application/json"})

        assert response.status_code == 400

    async def test_bad_checksum(self, client):
        data = (await initiate(client)).json()["data"]
        body = legacy_callback(data["merchant_transaction_id"])
        body["checksum"] = "f" * 64 + "###1"

        response = await client.post("/api/payment/phonepe/callback", json=body)

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    async def test_unknown_transaction(self, client):
        response = await client.post("/api/payment/phonepe/callback", json=legacy_callback("TXN_7_999_1"))

        assert response.status_code == 404

    async def test_checksum_in_header(self, client):
        data = (await initiate(client)).json()["data"]
        body = legacy_callback(data["merchant_transaction_id"])
        checksum = body.pop("checksum")

        response = await client.post("/api/payment/phonepe/callback", json=body, headers={"X-VERIFY": checksum})

        assert response.status_code == 200
        assert response.json()["payment_status"] == "success"


class TestAdminRoutes:

    async def test_listing_stats_details_and_refund(self, client):
        data = (await initiate(client)).json()["data"]
        await client.post("/api/payment/phonepe/callback", json=legacy_callback(data["merchant_transaction_id"]))
        admin = auth("admin-1", "admin")

        listing = await client.get("/api/payment/admin", params={"status": "success"}, headers=admin)
        stats = await client.get("/api/payment/admin/stats", headers=admin)
        details = await client.get(f"/api/payment/admin/{data['payment_id']}", headers=admin)
        refund = await client.post(f"/api/payment/admin/{data['payment_id']}/refund",
                                   json={"reason": "Doctor unavailable"}, headers=admin)
        again = await client.post(f"/api/payment/admin/{data['payment_id']}/refund",
                                  json={"reason": "Doctor unavailable"}, headers=admin)

        assert listing.json()["data"]["pagination"]["total"] == 1
        assert stats.json()["data"]["revenue"]["total_revenue"] == 500.0
        assert "psp_callback_payload" in details.json()["data"]["payment"]
        assert refund.status_code == 200
        assert refund.json()["data"]["status"] == "refunded"
        assert refund.json()["data"]["refund_amount"] == 500.0
        assert again.status_code == 400

    async def test_offset_date_filter(self, client):
        response = await client.get("/api/payment/admin/stats", params={"fromDate": "2026-01-01T00:00:00+05:30"},
                                    headers=auth("admin-1", "admin"))

        assert response.status_code == 200

    async def test_bad_date_filter(self, client):
        response = await client.get("/api/payment/admin", params={"fromDate": "soon"},
                                    headers=auth("admin-1", "admin"))

        assert response.status_code == 400


class TestRedeemCodeRoutes:

    async def test_validate(self, db, client):
        await seed_code(db, "SAVE10")

        response = await client.get("/api/redeem-codes/validate/save10", params={"amount": "500"},
                                    headers=auth("7"))

        assert response.status_code == 200
        assert response.json()["data"]["discount_amount"] == 50.0

    async def test_unknown_code(self, client):
        response = await client.get("/api/redeem-codes/validate/NOPE", headers=auth("7"))

        assert response.status_code == 404
        assert response.json()["error_code"] == "INVALID_CODE"

    async def test_stats_for_admin_only(self, db, client):
        code = await seed_code(db, "SAVE10")

        user = await client.get(f"/api/redeem-codes/admin/{code['_id']}/stats", headers=auth("7"))
        admin = await client.get(f"/api/redeem-codes/admin/{code['_id']}/stats", headers=auth("admin-1", "admin"))

        assert user.status_code == 403
        assert admin.status_code == 200
        assert admin.json()["data"]["statistics"]["total_usage"] == 0


class TestServiceEndpoints:

    async def test_health(self, client):
        assert (await client.get("/health")).json() == {"status": "healthy"}
        webhook = await client.get("/api/payment/webhook/health")
        assert webhook.status_code == 200
        assert webhook.json()["status"] == "ok"

    async def test_scheduler_status(self, client):
        await initiate(client)

        response = await client.get("/scheduler/status")

        assert response.status_code == 200
        assert response.json()["pending_auto_checks"] == 1
