"""HTTP surface tests over an in-process ASGI transport."""

from decimal import Decimal

import httpx
import pytest

from dispatch_service.main import app
from dispatch_service.service import get_service

from tests.conftest import CENTER

WORKER = {"X-User-Sub": "w1"}
CUSTOMER = {"X-User-Sub": "customer-1"}


@pytest.fixture
async def client(service):
    app.dependency_overrides[get_service] = lambda: service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def register(client, headers=WORKER, **overrides):
    body = {
        "name": "Asha",
        "skills": ["plumbing"],
        "latitude": CENTER.latitude,
        "longitude": CENTER.longitude,
        "timezone": "Asia/Kolkata",
    }
    body.update(overrides)
    return await client.post("/workers", json=body, headers=headers)


async def book(client, **overrides):
    body = {
        "skill": "plumbing",
        "description": "Bathroom tap dripping",
        "latitude": CENTER.latitude,
        "longitude": CENTER.longitude,
        "scheduled_time": "2024-05-02T10:00:00+00:00",
        "priority": "high",
        "estimated_cost": "800",
    }
    body.update(overrides)
    return await client.post("/bookings", json=body, headers=CUSTOMER)


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestWorkers:
    async def test_register_and_fetch_me(self, client):
        resp = await register(client)
        assert resp.status_code == 200
        assert resp.json()["worker_id"] == "w1"

        me = await client.get("/workers/me", headers=WORKER)
        assert me.status_code == 200
        assert me.json()["skills"] == ["plumbing"]
        assert me.json()["timezone"] == "Asia/Kolkata"

    async def test_identity_header_required(self, client):
        resp = await client.get("/workers/me")
        assert resp.status_code == 401

    async def test_unknown_worker_is_404(self, client):
        resp = await client.get("/workers/me", headers={"X-User-Sub": "ghost"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_out_of_range_location_is_422(self, client):
        await register(client)
        resp = await client.put(
            "/workers/me/location", json={"latitude": 95, "longitude": 10}, headers=WORKER
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_failed"

    async def test_half_a_location_is_422(self, client):
        resp = await register(client, longitude=None)
        assert resp.status_code == 422

    async def test_duplicate_registration_is_409(self, client):
        await register(client)
        resp = await register(client)
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_state"

    async def test_availability_toggle(self, client):
        await register(client)
        resp = await client.put("/workers/me/availability", json={"availability": "offline"}, headers=WORKER)
        assert resp.status_code == 200
        assert resp.json()["availability"] == "offline"


class TestBookingFlow:
    async def test_create_dispatches_in_background(self, client):
        await register(client)

        resp = await book(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "pending"
        assert Decimal(body["estimated_cost"]) == Decimal("800")

        fetched = (await client.get(f"/bookings/{body['booking_id']}", headers=CUSTOMER)).json()
        assert fetched["status"] == "assigned"
        assert fetched["assigned_worker_id"] == "w1"
        assert [a["worker_id"] for a in fetched["assignments"]] == ["w1"]

        mine = (await client.get("/workers/me/bookings", headers=WORKER)).json()
        assert [b["booking_id"] for b in mine] == [body["booking_id"]]

    async def test_no_worker_still_creates_booking(self, client):
        resp = await book(client)
        assert resp.status_code == 200

        fetched = (await client.get(f"/bookings/{resp.json()['booking_id']}", headers=CUSTOMER)).json()
        assert fetched["status"] == "pending"
        assert fetched["dispatch_note"]
        assert [e["kind"] for e in fetched["events"]] == ["no_candidate"]

    async def test_full_lifecycle(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]

        resp = await client.post(f"/bookings/{booking_id}/accept", headers=WORKER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        resp = await client.put(
            f"/bookings/{booking_id}/status", json={"status": "in_progress"}, headers=WORKER
        )
        assert resp.json()["status"] == "in_progress"

        resp = await client.put(
            f"/bookings/{booking_id}/status",
            json={"status": "completed", "final_cost": "1000"},
            headers=WORKER,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["settlement"]["settled"] is True
        assert body["settlement"]["transaction_id"]

        balance = (await client.get("/wallet/balance", headers=WORKER)).json()
        assert Decimal(balance["balance"]) == Decimal("1000")
        assert Decimal(balance["available_for_withdrawal"]) == Decimal("500")

        retry = await client.post(f"/bookings/{booking_id}/settlement/retry")
        assert retry.json()["settlement"]["already_settled"] is True

    async def test_invalid_transition_is_409(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]

        resp = await client.put(
            f"/bookings/{booking_id}/status", json={"status": "completed"}, headers=WORKER
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "invalid_transition"
        assert (body["source"], body["target"]) == ("assigned", "completed")

    async def test_wrong_worker_is_403(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]

        resp = await client.post(f"/bookings/{booking_id}/accept", headers={"X-User-Sub": "w2"})
        assert resp.status_code == 403

    async def test_reject_returns_reassignment(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]

        resp = await client.post(f"/bookings/{booking_id}/reject", json={"reason": "busy"}, headers=WORKER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "pending"
        assert body["reassignment"]["outcome"] == "unassigned"

        removed = await client.delete(f"/bookings/{booking_id}/rejections/w1")
        assert removed.json()["removed"] == 1
        dispatched = await client.post(f"/bookings/{booking_id}/dispatch")
        assert dispatched.json()["outcome"] == "assigned"
        assert dispatched.json()["worker_id"] == "w1"

    async def test_requester_cancel(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]
        await client.post(f"/bookings/{booking_id}/accept", headers=WORKER)

        resp = await client.post(f"/bookings/{booking_id}/cancel", json={"reason": "sorted it"}, headers=CUSTOMER)
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    async def test_booking_visible_to_requester_and_assigned_worker(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]

        as_worker = await client.get(f"/bookings/{booking_id}", headers=WORKER)
        assert as_worker.status_code == 200
        assert as_worker.json()["assigned_worker_id"] == "w1"

        stranger = await client.get(f"/bookings/{booking_id}", headers={"X-User-Sub": "someone-else"})
        assert stranger.status_code == 403
        assert stranger.json()["error"] == "not_authorized"

        anonymous = await client.get(f"/bookings/{booking_id}")
        assert anonymous.status_code == 401

    async def test_rejecting_worker_loses_access(self, client):
        await register(client)
        booking_id = (await book(client)).json()["booking_id"]
        await client.post(f"/bookings/{booking_id}/reject", json={"reason": "busy"}, headers=WORKER)

        resp = await client.get(f"/bookings/{booking_id}", headers=WORKER)
        assert resp.status_code == 403

    async def test_stats(self, client):
        await book(client)
        resp = await client.get("/bookings/stats")
        assert resp.status_code == 200
        assert resp.json()["bookings"]["pending"] == 1


class TestWallet:
    async def test_withdraw_rule_violations_are_listed(self, client, service):
        await register(client)
        await service.ledger.settle_earning("w1", "seed", 600)

        resp = await client.post(
            "/wallet/withdraw", json={"amount": "200", "destination": "ACCT-1234"}, headers=WORKER
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "ledger_rule_violation"
        assert [v["rule"] for v in body["violations"]] == ["minimum_reserve"]

    async def test_withdraw_confirm_and_history(self, client, service):
        await register(client)
        await service.ledger.settle_earning("w1", "seed", 2000)

        resp = await client.post(
            "/wallet/withdraw", json={"amount": "300", "destination": "ACCT-1234"}, headers=WORKER
        )
        assert resp.status_code == 200
        txn = resp.json()
        assert txn["status"] == "pending"
        assert txn["destination"] == "****1234"

        confirmed = await client.post(
            f"/wallet/transactions/{txn['transaction_id']}/confirm",
            json={"succeeded": True, "reference": "PAYOUT-9"},
        )
        assert confirmed.json()["status"] == "completed"

        history = (await client.get("/wallet/transactions?limit=1", headers=WORKER)).json()
        assert history["pagination"] == {
            "current_page": 1,
            "total_pages": 2,
            "total": 2,
            "has_next": True,
            "has_prev": False,
        }
        assert history["transactions"][0]["type"] == "withdrawal"

        filtered = (await client.get("/wallet/transactions?type=earning", headers=WORKER)).json()
        assert [t["type"] for t in filtered["transactions"]] == ["earning"]
