from dotenv import load_dotenv
load_dotenv()

import logging
import os
import time
from datetime import timedelta

import redis
from flask import Flask, jsonify, request, session as flask_session
from flask_cors import CORS
from flask_session import Session
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from errors import LedgerError
from extensions import db, limiter
from rate_limiter import STRATEGY_COUNTER
from services import EXTENSION_KEY, build_token_ledger
from staking import StakingConfig

# Model modules register their tables on db.Model.
import models_activity  # noqa: F401
import models_auth  # noqa: F401
import models_ledger  # noqa: F401
import models_staking  # noqa: F401


def _is_production() -> bool:
    return bool(os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        if os.getenv("RENDER") == "true":
            raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
        url = "sqlite:///ledger.db"
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def _engine_options(url: str, db_timeout: float) -> dict:
    # Every statement must finish or fail within db_timeout; a hang is never an answer.
    options = {"pool_pre_ping": True, "pool_recycle": 300}
    if url.startswith("sqlite"):
        options["connect_args"] = {"timeout": db_timeout}
        return options
    options["pool_timeout"] = db_timeout
    if url.startswith("postgresql"):
        options["connect_args"] = {"options": f"-c statement_timeout={int(db_timeout * 1000)}"}
    return options


def _default_config() -> dict:
    secret_key = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY") or "dev-secret-key-change-me"
    return {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": _database_url(),
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": os.getenv("SESSION_COOKIE_SAMESITE", "Lax"),
        "SESSION_COOKIE_SECURE": _is_production(),
        "PERMANENT_SESSION_LIFETIME": timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "1"))),
        "SESSION_IDLE_TIMEOUT_MINUTES": int(os.getenv("SESSION_IDLE_TIMEOUT_MINUTES", "15")),
        "RATELIMIT_STORAGE_URI": os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
        "USE_SERVER_SIDE_SESSIONS": os.getenv("USE_SERVER_SIDE_SESSIONS", "0") == "1",
        "LEDGER_LOCK_TIMEOUT_SECONDS": float(os.getenv("LEDGER_LOCK_TIMEOUT_SECONDS", "5")),
        "LEDGER_DB_TIMEOUT_SECONDS": float(os.getenv("LEDGER_DB_TIMEOUT_SECONDS", "5")),
        "LEDGER_DAILY_LIMIT_STRATEGY": os.getenv("LEDGER_DAILY_LIMIT_STRATEGY", STRATEGY_COUNTER),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "AUTO_CREATE_TABLES": True,
        # Callable returning naive UTC now; tests inject a controllable clock.
        "TOKEN_CLOCK": None,
        "STAKING_CONFIG": None,
    }


def _configure_server_side_sessions(app: Flask):
    """Redis-backed sessions so logouts and idle timeouts revoke for real."""
    redis_url = os.getenv("SESSION_REDIS_URL") or os.getenv("REDIS_URL")
    if not redis_url:
        raise RuntimeError("USE_SERVER_SIDE_SESSIONS=1 but SESSION_REDIS_URL/REDIS_URL is not set")
    app.config["SESSION_TYPE"] = "redis"
    app.config["SESSION_REDIS"] = redis.from_url(redis_url)
    app.config["SESSION_USE_SIGNER"] = True
    app.config["SESSION_PERMANENT"] = True
    app.config["SESSION_KEY_PREFIX"] = os.getenv("SESSION_KEY_PREFIX", "cybv:")
    Session(app)


def create_app(config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(_default_config())
    if config:
        app.config.update(config)
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        _engine_options(app.config["SQLALCHEMY_DATABASE_URI"], app.config["LEDGER_DB_TIMEOUT_SECONDS"]),
    )

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Enforce a strong SECRET_KEY in production (do not allow dev fallbacks).
    if _is_production() and app.config["SECRET_KEY"].startswith("dev-secret-key-change"):
        raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")

    if app.config["USE_SERVER_SIDE_SESSIONS"]:
        _configure_server_side_sessions(app)

    # Trust a single proxy hop (Render's edge proxy)
    if _is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    limiter.init_app(app)
    CORS(app)

    app.extensions[EXTENSION_KEY] = build_token_ledger(
        db,
        clock=app.config["TOKEN_CLOCK"],
        staking_config=app.config["STAKING_CONFIG"] or StakingConfig.from_env(),
        limit_strategy=app.config["LEDGER_DAILY_LIMIT_STRATEGY"],
        lock_timeout=app.config["LEDGER_LOCK_TIMEOUT_SECONDS"],
    )

    from admin_ledger import admin_ledger
    from auth_api import auth_api
    from token_api import token_api

    app.register_blueprint(auth_api)
    app.register_blueprint(token_api)
    app.register_blueprint(admin_ledger)

    _register_request_hooks(app)
    _register_error_handlers(app)

    if app.config["AUTO_CREATE_TABLES"]:
        with app.app_context():
            db.create_all()

    return app


def _register_request_hooks(app: Flask):
    from auth_api import SESSION_KEY

    @app.before_request
    def _enforce_session_idle_timeout():
        if not flask_session.get(SESSION_KEY):
            return
        flask_session.permanent = True

        idle_minutes = int(app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 15))
        now_ts = int(time.time())
        last_seen = flask_session.get("_last_seen_ts")
        if isinstance(last_seen, int) and idle_minutes > 0 and now_ts - last_seen > idle_minutes * 60:
            # Idle timeout: clear all session state.
            flask_session.clear()
            return
        flask_session["_last_seen_ts"] = now_ts

    @app.after_request
    def add_perf_headers(resp):
        # avoid caching balances (user-specific)
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp


def _register_error_handlers(app: Flask):
    @app.errorhandler(LedgerError)
    def _ledger_error(err: LedgerError):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def _http_error(err: HTTPException):
        return jsonify({"success": False, "error": err.name, "message": err.description}), err.code

    @app.errorhandler(Exception)
    def _unexpected(err: Exception):
        # Prevent Flask from returning an HTML 500 page (breaks frontend JSON parsing)
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"success": False, "error": "Internal server error"}), 500


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_ENV", "development") == "development"

    print("=" * 60)
    print("CYBV Token Ledger")
    print("=" * 60)
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1]}")
    print(f"Daily limit strategy: {app.config['LEDGER_DAILY_LIMIT_STRATEGY']}")
    print(f"Admin ledger API: http://localhost:{port}/api/admin/ledger/reconcile")
    print("=" * 60)

    app.run(debug=debug, port=port)
