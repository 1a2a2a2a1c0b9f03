from __future__ import annotations

import pytest
from sqlalchemy import text

from conftest import ACCOUNT, credit
from errors import PersistenceFailure
from extensions import db
from services import get_token_ledger


def test_earn_requires_session(client):
    resp = client.post("/api/token/earn", json={"action": "post_like"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Unauthenticated"


def test_earn_requires_action(auth_client):
    resp = auth_client.post("/api/token/earn", json={})
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_earn_and_balance(auth_client):
    resp = auth_client.post("/api/token/earn", json={"action": "post_create", "metadata": {"postId": "p1"}})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["earned"] == 5.0
    assert body["balance"] == 20.0
    assert body["bonuses"] == [{"reason": "first_post", "amount": 15.0}]

    resp = auth_client.get("/api/token/balance")
    body = resp.get_json()
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"
    assert body["balance"] == "20.00"
    assert body["totalEarned"] == "20.00"
    assert body["currency"] == "CYBV"
    assert {tx["reason"] for tx in body["recentTransactions"]} == {"post_create", "first_post"}
    assert body["recentTransactions"][0]["timestamp"] == "now"


def test_unknown_action_is_400(auth_client):
    resp = auth_client.post("/api/token/earn", json={"action": "week_streak"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "UnknownAction"


@pytest.mark.parametrize("action", [5, 1.5, ["post_like"], {"name": "post_like"}])
def test_non_string_action_is_400(auth_client, action):
    resp = auth_client.post("/api/token/earn", json={"action": action})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "UnknownAction"


@pytest.mark.parametrize(
    "path, error",
    [
        ("/api/token/earn", "Action is required"),
        ("/api/token/spend", "UnknownAction"),
        ("/api/token/boost", "postId is required"),
        ("/api/token/stake", "InvalidAmount"),
        ("/api/token/unstake", "Stake ID is required"),
    ],
)
@pytest.mark.parametrize("body", [[1, 2], "earn", 7])
def test_body_must_be_an_object(auth_client, path, error, body):
    resp = auth_client.post(path, json=body)
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False
    assert resp.get_json()["error"] == error


def test_daily_limit_is_429(auth_client):
    assert auth_client.post("/api/token/earn", json={"action": "daily_login"}).status_code == 200
    resp = auth_client.post("/api/token/earn", json={"action": "daily_login"})

    assert resp.status_code == 429
    body = resp.get_json()
    assert body["error"] == "DailyLimitExceeded"
    assert body["limit"] == 1
    assert body["count"] == 1
    assert body["resets_at"] == "2024-06-04T00:00:00"


def test_transactions_and_earnings(auth_client, clock):
    auth_client.post("/api/token/earn", json={"action": "post_like"})
    clock.advance(hours=3)
    auth_client.post("/api/token/earn", json={"action": "post_comment"})

    txs = auth_client.get("/api/token/transactions?limit=5").get_json()["transactions"]
    assert [(t["reason"], t["timestamp"]) for t in txs] == [("post_comment", "now"), ("post_like", "3h ago")]

    body = auth_client.get("/api/token/earnings?days=7").get_json()
    assert [r["reason"] for r in body["byReason"]] == ["post_comment", "post_like"]
    assert body["daily"][0]["earned"] == 3.0


def test_activity_feed(auth_client):
    auth_client.post("/api/token/earn", json={"action": "post_like"})
    rows = auth_client.get("/api/token/activity").get_json()["activity"]
    assert [r["type"] for r in rows] == ["tokens_earned"]


def test_spend_and_boost(auth_client, ledger):
    credit(ledger, ACCOUNT, 40)

    resp = auth_client.post("/api/token/spend", json={"reason": "tip_user", "amount": 5})
    assert resp.get_json()["newBalance"] == 35.0

    resp = auth_client.post("/api/token/boost", json={"postId": "p7", "tier": "premium"})
    assert resp.status_code == 200
    assert resp.get_json()["spent"] == 25.0

    resp = auth_client.post("/api/token/boost", json={"postId": "p7", "tier": "super"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "InsufficientBalance"

    assert auth_client.post("/api/token/boost", json={"tier": "basic"}).status_code == 400


def test_stake_round_trip(auth_client, ledger, clock):
    credit(ledger, ACCOUNT, 100)

    resp = auth_client.post("/api/token/stake", json={"amount": 100, "period": "30d"})
    assert resp.status_code == 200
    stake_id = resp.get_json()["stakeId"]
    assert resp.get_json()["apy"] == 12.0

    assert auth_client.post("/api/token/stake", json={"amount": 1, "period": "7d"}).status_code == 400

    clock.advance(days=10)
    status = auth_client.get("/api/token/stake").get_json()
    active = status["activeStakes"][0]
    assert active["currentRewards"] == 0.33
    assert active["daysRemaining"] == 20
    assert status["config"]["lockPeriods"]["30d"]["apy"] == 12.0

    resp = auth_client.delete("/api/token/stake", json={"stakeId": stake_id})
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["error"] == "StakeNotMatured"
    assert body["daysRemaining"] == 20
    assert body["penaltyIfForced"] == 10.0

    resp = auth_client.post("/api/token/unstake", json={"stakeId": stake_id, "forceUnstake": "true"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["totalReturn"] == 90.0
    assert body["penalty"] == 10.0

    assert auth_client.get("/api/token/balance").get_json()["balance"] == "90.00"


@pytest.mark.parametrize(
    "payload, status, error",
    [
        ({"amount": "abc", "period": "30d"}, 400, "InvalidAmount"),
        ({"amount": 0.5, "period": "30d"}, 400, "OutOfRange"),
        ({"amount": 10, "period": "2d"}, 400, "InvalidPeriod"),
        ({"amount": 10, "period": "30d"}, 400, "InsufficientBalance"),
    ],
)
def test_stake_rejections(auth_client, payload, status, error):
    resp = auth_client.post("/api/token/stake", json=payload)
    assert resp.status_code == status
    assert resp.get_json()["error"] == error


def test_stake_conflict_and_missing(auth_client, ledger):
    credit(ledger, ACCOUNT, 100)
    auth_client.post("/api/token/stake", json={"amount": 10, "period": "7d"})

    resp = auth_client.post("/api/token/stake", json={"amount": 10, "period": "7d"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "StakeAlreadyActive"

    assert auth_client.delete("/api/token/stake", json={}).status_code == 400
    resp = auth_client.delete("/api/token/stake", json={"stakeId": 999, "forceUnstake": True})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "NotFound"


def test_config_is_public(client):
    body = client.get("/api/token/config").get_json()
    assert body["rewards"]["rates"]["post_create"] == 5.0
    assert body["rewards"]["daily_limits"]["post_like"] == 50
    assert body["staking"]["penalties"]["earlyWithdrawal"] == 0.1


def test_unknown_route_is_json(client):
    resp = client.get("/api/token/nope")
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False


def test_persistence_failure_is_503(auth_client, monkeypatch):
    def fail(*args, **kwargs):
        raise PersistenceFailure("The ledger could not be updated, nothing was applied", attempts=2)

    ledger = get_token_ledger(auth_client.application)
    monkeypatch.setattr(ledger.earning, "earn", fail)
    resp = auth_client.post("/api/token/earn", json={"action": "post_like"})
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "PersistenceFailure"


# ---- admin ----

def test_admin_requires_key(client, monkeypatch):
    monkeypatch.setenv("ADMIN_LEDGER_KEY", "s3cret")
    assert client.get("/api/admin/ledger/reconcile").status_code == 403
    assert client.get("/api/admin/ledger/reconcile", headers={"X-Admin-Key": "nope"}).status_code == 403


def test_admin_disabled_without_configured_key(client, monkeypatch):
    monkeypatch.delenv("ADMIN_LEDGER_KEY", raising=False)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    assert client.get("/api/admin/ledger/reconcile", headers={"X-Admin-Key": ""}).status_code == 403


def test_admin_reconcile_and_account(client, ledger, monkeypatch):
    monkeypatch.setenv("ADMIN_LEDGER_KEY", "s3cret")
    headers = {"X-Admin-Key": "s3cret"}
    credit(ledger, ACCOUNT, 12)
    db.session.execute(text("UPDATE token_accounts SET balance = 1"))
    db.session.commit()

    drifted = client.get("/api/admin/ledger/reconcile", headers=headers).get_json()["drifted"]
    assert [d["account_id"] for d in drifted] == [ACCOUNT]

    body = client.post("/api/admin/ledger/reconcile", headers=headers, json={"repair": True}).get_json()
    assert body["drifted"][0]["repaired"] is True

    detail = client.get(f"/api/admin/ledger/accounts/{ACCOUNT}", headers=headers).get_json()
    assert detail["summary"]["balance"] == "12.00"
    assert len(detail["entries"]) == 1
    assert client.get("/api/admin/ledger/accounts/0xmissing", headers=headers).status_code == 404


def test_admin_repair_needs_an_object_body(client, ledger, monkeypatch):
    monkeypatch.setenv("ADMIN_LEDGER_KEY", "s3cret")
    headers = {"X-Admin-Key": "s3cret"}
    credit(ledger, ACCOUNT, 3)
    db.session.execute(text("UPDATE token_accounts SET balance = 0"))
    db.session.commit()

    resp = client.post("/api/admin/ledger/reconcile", headers=headers, json=[{"repair": True}])
    assert resp.status_code == 200
    assert resp.get_json()["repair"] is False
    assert resp.get_json()["drifted"][0]["repaired"] is False
