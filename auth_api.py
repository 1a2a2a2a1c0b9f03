"""Wallet signature login: the identity resolver for the token API.

Routes:
- POST /api/auth/nonce   {wallet}
- POST /api/auth/verify  {wallet, nonce, signature}
- POST /api/auth/logout

A verified wallet (lower-cased) becomes the ledger account id and is kept in
the Flask session under ``token_account``.
"""

from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta

from eth_account import Account
from eth_account.messages import encode_defunct
from flask import Blueprint, current_app, jsonify, request, session

from errors import Unauthenticated
from extensions import db, limiter
from ledger import utcnow
from models_auth import LoginNonce

SESSION_KEY = "token_account"

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

auth_api = Blueprint("auth_api", __name__)


def _normalize(a) -> str:
    return str(a or "").strip().lower()


def _nonce_ttl() -> timedelta:
    return timedelta(minutes=int(os.getenv("NONCE_TTL_MINUTES", "10")))


def login_message(nonce: str) -> str:
    return f"Login nonce: {nonce}"


def resolve_account_id() -> str:
    """Map the current request to a ledger account id or raise Unauthenticated."""
    account_id = session.get(SESSION_KEY)
    if not account_id:
        raise Unauthenticated("Authentication required")
    return account_id


def json_body() -> dict:
    """The request JSON object, or an empty dict when the body is not one."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@auth_api.post("/api/auth/nonce")
@limiter.limit("20 per minute")
def auth_nonce():
    data = json_body()
    wallet = _normalize(data.get("wallet"))
    if not _WALLET_RE.match(wallet):
        return jsonify({"success": False, "error": "Invalid wallet"}), 400
    nonce = secrets.token_hex(16)
    db.session.add(LoginNonce(wallet=wallet, nonce=nonce, expires_at=utcnow() + _nonce_ttl(), used=0))
    db.session.commit()
    return jsonify({"success": True, "nonce": nonce, "message": login_message(nonce)})


@auth_api.post("/api/auth/verify")
@limiter.limit("20 per minute")
def auth_verify():
    data = json_body()
    wallet = _normalize(data.get("wallet"))
    signature = str(data.get("signature") or "")
    nonce = str(data.get("nonce") or "")

    if not _WALLET_RE.match(wallet):
        return jsonify({"success": False, "error": "Invalid wallet"}), 400
    if not signature or not nonce:
        return jsonify({"success": False, "error": "Missing signature or nonce"}), 400

    ln = (
        LoginNonce.query.filter_by(wallet=wallet, nonce=nonce, used=0)
        .order_by(LoginNonce.created_at.desc())
        .first()
    )
    if not ln or ln.expires_at < utcnow():
        return jsonify({"success": False, "error": "Nonce expired"}), 400

    try:
        recovered = Account.recover_message(encode_defunct(text=login_message(nonce)), signature=signature)
    except Exception:  # malformed hex, bad length, unrecoverable point
        current_app.logger.info("bad login signature for %s", wallet)
        return jsonify({"success": False, "error": "Bad signature"}), 400

    if _normalize(recovered) != wallet:
        return jsonify({"success": False, "error": "Signature does not match wallet"}), 400

    ln.used = 1
    db.session.commit()

    session[SESSION_KEY] = wallet
    session.permanent = True
    return jsonify({"success": True, "account": wallet})


@auth_api.post("/api/auth/logout")
def auth_logout():
    session.pop(SESSION_KEY, None)
    return jsonify({"success": True})
