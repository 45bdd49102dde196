"""Tests for the HTTP surface."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from snapsplit.backend.deps import get_bill_service, get_engine, get_repository
from snapsplit.backend.main import app
from snapsplit.backend.services.bill_repository import InMemoryBillRepository
from snapsplit.backend.services.bill_service import BillService
from snapsplit.backend.services.sync.reconciliation import ReconciliationEngine


@pytest.fixture
def http():
    repo = InMemoryBillRepository()
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_engine] = lambda: ReconciliationEngine(repo)
    app.dependency_overrides[get_bill_service] = lambda: BillService(repo)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(http, name="Trip"):
    response = http.post("/bills", json={"name": name, "local_id": "local-1"})
    assert response.status_code == 201
    return response.json()["data"]


def _sync(http, bill_id, body, user="u1"):
    return http.post(f"/bills/{bill_id}/sync", json=body, headers={"X-User-Id": user})


def _seed_members(http, bill_id):
    body = {
        "baseVersion": 1,
        "members": {"add": [{"localId": "m1", "name": "Alice"}, {"localId": "m2", "name": "Bob"}]},
        "expenses": {
            "add": [{
                "localId": "e1",
                "name": "Dinner",
                "amount": "90",
                "paidByMemberId": "m1",
                "participantIds": ["m1", "m2"],
            }],
        },
    }
    return _sync(http, bill_id, body).json()["data"]


class TestBasics:
    def test_root(self, http):
        assert http.get("/").json()["status"] == "SnapSplit Online"

    def test_health(self, http):
        assert http.get("/health").json()["ok"] is True
        store = http.get("/health/store").json()
        assert store["ok"] is True


class TestBills:
    def test_create_starts_at_version_one(self, http):
        created = _create(http)
        assert created["version"] == 1
        assert created["name"] == "Trip"

    def test_sync_returns_mappings(self, http):
        bill = _create(http)
        data = _seed_members(http, bill["id"])

        assert data["success"] is True
        assert data["newVersion"] == 2
        assert set(data["idMappings"]["members"]) == {"m1", "m2"}
        assert "mergedBill" not in data

        fetched = http.get(f"/bills/{bill['id']}").json()["data"]
        assert [m["name"] for m in fetched["members"]] == ["Alice", "Bob"]
        assert "sync_status" not in fetched

    def test_conflict_is_a_normal_response(self, http):
        bill = _create(http)
        data = _seed_members(http, bill["id"])
        bob = data["idMappings"]["members"]["m2"]

        response = _sync(http, bill["id"], {
            "baseVersion": 1,
            "members": {"update": [{"remoteId": bob, "name": "Robert"}]},
        })
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["success"] is False
        assert body["conflicts"][0]["resolution"] == "server_wins"
        assert body["conflicts"][0]["entityType"] == "member"
        assert body["conflicts"][0]["localValue"] == "Robert"
        assert body["newVersion"] == 2
        assert body["mergedBill"]["version"] == 2

    def test_unknown_bill_is_404(self, http):
        response = _sync(http, "00000000-0000-0000-0000-000000000000", {"baseVersion": 1})
        assert response.status_code == 404
        assert response.json() == {
            "ok": False,
            "error": "BILL_NOT_FOUND",
            "message": "Bill not found: 00000000-0000-0000-0000-000000000000",
        }

    def test_invalid_body_uses_error_envelope(self, http):
        bill = _create(http)
        response = _sync(http, bill["id"], {"members": {"add": []}})
        assert response.status_code == 422
        assert response.json()["ok"] is False
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_settlement(self, http):
        bill = _create(http)
        data = _seed_members(http, bill["id"])
        alice, bob = data["idMappings"]["members"]["m1"], data["idMappings"]["members"]["m2"]

        settlement = http.get(f"/bills/{bill['id']}/settlement").json()["data"]
        assert settlement["transfers"] == [
            {"from_member_id": bob, "to_member_id": alice, "amount": "45.00", "settled": False}
        ]
        expense_id = data["idMappings"]["expenses"]["e1"]
        assert settlement["expense_shares"][expense_id] == {alice: "45.00", bob: "45.00"}

    def test_delete(self, http):
        bill = _create(http)
        assert http.delete(f"/bills/{bill['id']}").json()["data"] == {"deleted": True}
        assert http.delete(f"/bills/{bill['id']}").json()["data"] == {"deleted": False}
        assert http.get(f"/bills/{bill['id']}").status_code == 404


class TestClaims:
    def test_claim_and_unclaim(self, http):
        bill = _create(http)
        data = _seed_members(http, bill["id"])
        alice = data["idMappings"]["members"]["m1"]
        bob = data["idMappings"]["members"]["m2"]
        url = f"/bills/{bill['id']}/members"

        claimed = http.post(f"{url}/{alice}/claim", json={"display_name": "Alice K."}, headers={"X-User-Id": "acct-1"})
        assert claimed.status_code == 200
        member = claimed.json()["data"]["member"]
        assert member["name"] == "Alice K."
        assert member["original_name"] == "Alice"
        assert member["linked_user_id"] == "acct-1"
        assert claimed.json()["data"]["version"] == 3

        again = http.post(f"{url}/{bob}/claim", headers={"X-User-Id": "acct-1"})
        assert again.status_code == 409
        assert again.json()["error"] == "CLAIM_REJECTED"

        released = http.post(f"{url}/{alice}/unclaim", headers={"X-User-Id": "acct-1"}).json()["data"]["member"]
        assert released["name"] == "Alice"
        assert released["linked_user_id"] is None

    def test_claim_requires_account(self, http):
        bill = _create(http)
        data = _seed_members(http, bill["id"])
        alice = data["idMappings"]["members"]["m1"]
        response = http.post(f"/bills/{bill['id']}/members/{alice}/claim")
        assert response.status_code == 401

    def test_unknown_member(self, http):
        bill = _create(http)
        response = http.post(f"/bills/{bill['id']}/members/nope/claim", headers={"X-User-Id": "acct-1"})
        assert response.status_code == 404
        assert response.json()["error"] == "MEMBER_NOT_FOUND"
