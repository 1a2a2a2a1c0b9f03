from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String

from extensions import db


class LoginNonce(db.Model):
    """One-time nonce signed by a wallet to open a ledger session."""

    __tablename__ = "login_nonces"

    id = Column(Integer, primary_key=True)
    wallet = Column(String(42), nullable=False, index=True)
    nonce = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_login_nonce_wallet_created", "wallet", "created_at"),
    )
