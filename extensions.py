from flask import request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


db = SQLAlchemy()

# Bound in create_app(); storage comes from RATE_LIMIT_STORAGE_URL.
limiter = Limiter(key_func=get_client_ip, default_limits=["200 per day", "50 per hour"])
