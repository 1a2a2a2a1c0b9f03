"""Staking models (time-locked CYBV principal earning a fixed APY).

- one row per stake position; status goes active -> completed, never back
- at most one active stake per account (partial unique index)
- close figures are recorded on the row when the stake completes
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, text

from extensions import db
from models_ledger import Amount

STAKE_STATUS_ACTIVE = "active"
STAKE_STATUS_COMPLETED = "completed"

UNSTAKE_MATURED = "matured"
UNSTAKE_EARLY = "early"


class Stake(db.Model):
    __tablename__ = "token_stakes"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("token_accounts.account_id"), nullable=False, index=True)

    principal = Column(Amount, nullable=False)
    period = Column(String(8), nullable=False)  # 7d / 30d / 90d / 365d
    apy = Column(Numeric(6, 2), nullable=False)  # percent, captured at open
    wallet_ref = Column(String(64), nullable=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    matures_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=STAKE_STATUS_ACTIVE)

    accrued_rewards_at_close = Column(Amount, nullable=True)
    penalty_at_close = Column(Amount, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    unstake_type = Column(String(10), nullable=True)  # matured / early

    __table_args__ = (
        Index("idx_token_stakes_account_status", "account_id", "status"),
        Index("idx_token_stakes_matures_status", "matures_at", "status"),
        Index(
            "uq_token_stakes_one_active",
            "account_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "amount": float(self.principal),
            "period": self.period,
            "apy": float(self.apy),
            "wallet": self.wallet_ref,
            "startDate": self.started_at.isoformat() if self.started_at else None,
            "endDate": self.matures_at.isoformat() if self.matures_at else None,
            "status": self.status,
            "finalRewards": float(self.accrued_rewards_at_close) if self.accrued_rewards_at_close is not None else None,
            "penalty": float(self.penalty_at_close) if self.penalty_at_close is not None else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "unstakeType": self.unstake_type,
        }
