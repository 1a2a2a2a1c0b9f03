"""Admin ledger APIs.

Access: X-Admin-Key header matching ADMIN_LEDGER_KEY (falls back to
ADMIN_API_KEY). Query params are not accepted for the key.

Routes:
- GET  /api/admin/ledger/reconcile            drifted accounts only
- POST /api/admin/ledger/reconcile            {repair: true} restores caches from the ledger
- GET  /api/admin/ledger/accounts/<id>        account, balance summary, last entries
"""

from __future__ import annotations

import os
import secrets

from flask import Blueprint, current_app, jsonify, request

from auth_api import json_body
from services import get_token_ledger

admin_ledger = Blueprint("admin_ledger", __name__)


def _admin_key() -> str:
    return (os.getenv("ADMIN_LEDGER_KEY") or os.getenv("ADMIN_API_KEY") or "").strip()


def _admin_ok(req) -> bool:
    key = req.headers.get("X-Admin-Key", "")
    expected = _admin_key()
    return bool(expected) and secrets.compare_digest(key, expected)


@admin_ledger.before_request
def _require_admin():
    if not _admin_ok(request):
        return jsonify({"success": False, "error": "Admin access required"}), 403
    return None


@admin_ledger.get("/api/admin/ledger/reconcile")
def reconcile_report():
    drifted = get_token_ledger(current_app).store.reconcile_all(repair=False)
    return jsonify({"success": True, "drifted": [r.to_dict() for r in drifted]})


@admin_ledger.post("/api/admin/ledger/reconcile")
def reconcile_repair():
    data = json_body()
    repair = data.get("repair") is True
    drifted = get_token_ledger(current_app).store.reconcile_all(repair=repair)
    if drifted:
        current_app.logger.warning("ledger reconcile found %d drifted accounts (repair=%s)", len(drifted), repair)
    return jsonify({"success": True, "repair": repair, "drifted": [r.to_dict() for r in drifted]})


@admin_ledger.get("/api/admin/ledger/accounts/<account_id>")
def account_detail(account_id: str):
    store = get_token_ledger(current_app).store
    account = store.get_account(account_id)
    if account is None:
        return jsonify({"success": False, "error": "NotFound"}), 404
    entries = store.recent_transactions(account.account_id, limit=50)
    return jsonify({
        "success": True,
        "account": account.to_dict(),
        "summary": store.balance(account.account_id).to_dict(),
        "entries": [e.to_dict() for e in entries],
    })
