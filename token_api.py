"""Token API (earn / balance / stake / spend).

Routes:
- POST   /api/token/earn          {action, metadata?, wallet?}
- GET    /api/token/balance
- GET    /api/token/transactions?limit=20
- GET    /api/token/earnings?days=30
- GET    /api/token/activity
- POST   /api/token/spend         {reason, amount, metadata?}
- POST   /api/token/boost         {postId, tier}
- POST   /api/token/stake         {amount, period, wallet?}
- GET    /api/token/stake
- DELETE /api/token/stake         {stakeId, forceUnstake?}
- POST   /api/token/unstake       {stakeId, forceUnstake?}
- GET    /api/token/config

Every route except /config needs a ledger session (see auth_api).
Rejections are LedgerError subclasses rendered by the app error handler.
"""

from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from auth_api import json_body, resolve_account_id
from extensions import limiter
from services import get_token_ledger

CURRENCY = "CYBV"

token_api = Blueprint("token_api", __name__)


def _ledger():
    return get_token_ledger(current_app)


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _int_arg(name: str, default: int, lo: int, hi: int) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(lo, min(value, hi))


def format_time_ago(when: datetime, now: datetime) -> str:
    diff = now - when
    mins = int(diff.total_seconds() // 60)
    if mins < 1:
        return "now"
    if mins < 60:
        return f"{mins}m ago"
    hours = mins // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def _format_tx(entry, now: datetime) -> dict:
    amount = entry.amount
    return {
        "id": entry.id,
        "type": "earned" if amount > 0 else "spent",
        "amount": float(abs(amount)),
        "reason": entry.reason.value,
        "metadata": dict(entry.meta or {}),
        "timestamp": format_time_ago(entry.occurred_at, now),
        "date": entry.occurred_at.isoformat(),
    }


# ---------- earning ----------

@token_api.post("/api/token/earn")
@limiter.limit("60 per minute")
def earn():
    account_id = resolve_account_id()
    data = json_body()
    action = str(data.get("action") or "").strip()
    if not action:
        return jsonify({"success": False, "error": "Action is required"}), 400
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    if data.get("wallet"):
        metadata = {"wallet": data.get("wallet"), **metadata}

    result = _ledger().earning.earn(account_id, action, metadata)
    return jsonify(result.to_dict())


# ---------- balance / history ----------

@token_api.get("/api/token/balance")
def balance():
    account_id = resolve_account_id()
    ledger = _ledger()
    summary = ledger.store.balance(account_id)
    now = ledger.store.clock()
    recent = ledger.store.recent_transactions(account_id, limit=10)
    return jsonify({
        "success": True,
        "account": account_id,
        **summary.to_dict(),
        "recentTransactions": [_format_tx(e, now) for e in recent],
        "currency": CURRENCY,
    })


@token_api.get("/api/token/transactions")
def transactions():
    account_id = resolve_account_id()
    ledger = _ledger()
    limit = _int_arg("limit", 20, 1, 100)
    now = ledger.store.clock()
    entries = ledger.store.recent_transactions(account_id, limit=limit)
    return jsonify({"success": True, "transactions": [_format_tx(e, now) for e in entries], "currency": CURRENCY})


@token_api.get("/api/token/earnings")
def earnings():
    account_id = resolve_account_id()
    store = _ledger().store
    days = _int_arg("days", 30, 1, 365)
    by_reason = store.earnings_by_reason(account_id)
    daily = store.daily_earnings(account_id, days=days)
    return jsonify({
        "success": True,
        "byReason": [
            {
                "reason": r["reason"],
                "totalAmount": float(r["total_amount"]),
                "count": r["count"],
                "lastEarned": r["last_earned"].isoformat() if r["last_earned"] else None,
            }
            for r in by_reason
        ],
        "daily": [
            {
                "date": d["day"].isoformat(),
                "earned": float(d["earned"]),
                "spent": float(d["spent"]),
                "net": float(d["net"]),
                "transactions": d["transactions"],
            }
            for d in daily
        ],
        "currency": CURRENCY,
    })


@token_api.get("/api/token/activity")
def activity():
    account_id = resolve_account_id()
    rows = _ledger().activity.recent(account_id, limit=_int_arg("limit", 20, 1, 100))
    return jsonify({"success": True, "activity": [r.to_dict() for r in rows]})


# ---------- spending ----------

@token_api.post("/api/token/spend")
@limiter.limit("30 per minute")
def spend():
    account_id = resolve_account_id()
    data = json_body()
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    result = _ledger().spending.spend(account_id, data.get("reason"), data.get("amount"), metadata)
    return jsonify(result.to_dict())


@token_api.post("/api/token/boost")
@limiter.limit("30 per minute")
def boost():
    account_id = resolve_account_id()
    data = json_body()
    post_id = str(data.get("postId") or "").strip()
    if not post_id:
        return jsonify({"success": False, "error": "postId is required"}), 400
    result = _ledger().spending.boost_post(account_id, post_id, data.get("tier") or "basic")
    return jsonify(result.to_dict())


# ---------- staking ----------

@token_api.post("/api/token/stake")
@limiter.limit("10 per minute")
def stake_open():
    account_id = resolve_account_id()
    data = json_body()
    ledger = _ledger()
    stake = ledger.staking.open_stake(
        account_id,
        data.get("amount"),
        data.get("period") or "30d",
        wallet_ref=data.get("wallet"),
    )
    return jsonify({
        "success": True,
        "stakeId": stake.id,
        "amount": float(stake.principal),
        "period": stake.period,
        "apy": float(stake.apy),
        "endDate": stake.matures_at.isoformat(),
        "message": f"Successfully staked {stake.principal} CYBV tokens for {stake.period} at {stake.apy:g}% APY",
    })


@token_api.get("/api/token/stake")
def stake_status():
    account_id = resolve_account_id()
    staking = _ledger().staking
    payload = staking.stake_status(account_id).to_dict()
    payload["config"] = staking.config.to_dict()
    return jsonify(payload)


@token_api.route("/api/token/stake", methods=["DELETE"])
@token_api.post("/api/token/unstake")
@limiter.limit("10 per minute")
def stake_close():
    account_id = resolve_account_id()
    data = json_body()
    stake_id = data.get("stakeId")
    if stake_id in (None, ""):
        return jsonify({"success": False, "error": "Stake ID is required"}), 400
    result = _ledger().staking.close_stake(account_id, stake_id, force_early=_truthy(data.get("forceUnstake")))
    return jsonify(result.to_dict())


@token_api.get("/api/token/config")
def token_config():
    ledger = _ledger()
    return jsonify({
        "success": True,
        "currency": CURRENCY,
        "rewards": ledger.policy.to_dict(),
        "staking": ledger.staking.config.to_dict(),
    })
