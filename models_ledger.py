"""Token ledger models.

- token_accounts holds the cached balance and the login-streak state
- token_ledger is append-only; balance == SUM(amount) per account
- token_daily_counters backs the per-UTC-day action caps
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, event,
)

from errors import LedgerImmutableError
from extensions import db

LEDGER_STATUS_COMPLETED = "completed"

# Token amounts carry two decimal places everywhere.
Amount = Numeric(20, 2)


class LedgerReason(str, enum.Enum):
    # earning
    POST_CREATE = "post_create"
    POST_LIKE = "post_like"
    POST_COMMENT = "post_comment"
    POST_SHARE = "post_share"
    BLOG_CREATE = "blog_create"
    NFT_MINT = "nft_mint"
    DAILY_LOGIN = "daily_login"
    REFERRAL = "referral"
    CONTENT_VIEW = "content_view"
    AI_CONTENT_GENERATION = "ai_content_generation"
    PROFILE_COMPLETE = "profile_complete"
    EMAIL_VERIFY = "email_verify"
    # bonuses
    FIRST_POST = "first_post"
    WEEK_STREAK = "week_streak"
    MONTH_STREAK = "month_streak"
    # staking
    STAKE_LOCK = "stake_lock"
    STAKE_REWARD = "stake_reward"
    UNSTAKE_RETURN = "unstake_return"
    # spending
    POST_BOOST = "post_boost"
    NFT_PURCHASE = "nft_purchase"
    PREMIUM_FEATURE = "premium_feature"
    TIP_USER = "tip_user"
    MARKETPLACE_FEE = "marketplace_fee"
    DOMAIN_PURCHASE = "domain_purchase"
    TEMPLATE_PURCHASE = "template_purchase"

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or None when it is not a known reason."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return None


class Account(db.Model):
    __tablename__ = "token_accounts"

    account_id = Column(String(64), primary_key=True)
    balance = Column(Amount, nullable=False, default=Decimal("0"))
    login_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_login_at = Column(DateTime, nullable=True)
    last_earning_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "account_id": self.account_id,
            "balance": float(self.balance or 0),
            "login_streak": int(self.login_streak or 0),
            "longest_streak": int(self.longest_streak or 0),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class LedgerEntry(db.Model):
    __tablename__ = "token_ledger"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("token_accounts.account_id"), nullable=False, index=True)
    amount = Column(Amount, nullable=False)
    reason = Column(
        Enum(
            LedgerReason,
            native_enum=False,
            length=40,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    )
    # "metadata" is reserved on declarative classes, hence the attribute name.
    meta = Column("metadata", JSON, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    status = Column(String(20), nullable=False, default=LEDGER_STATUS_COMPLETED)

    __table_args__ = (
        Index("idx_token_ledger_account_occurred", "account_id", "occurred_at"),
        Index("idx_token_ledger_account_reason_occurred", "account_id", "reason", "occurred_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "amount": float(self.amount),
            "reason": self.reason.value,
            "metadata": dict(self.meta or {}),
            "occurred_at": self.occurred_at.isoformat(),
            "status": self.status,
        }


class DailyActionCounter(db.Model):
    __tablename__ = "token_daily_counters"

    id = Column(Integer, primary_key=True)
    account_id = Column(String(64), ForeignKey("token_accounts.account_id"), nullable=False)
    action = Column(String(40), nullable=False)
    day = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("account_id", "action", "day", name="uq_token_daily_counter"),
    )


@event.listens_for(LedgerEntry, "before_update")
def _refuse_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"ledger entry {target.id} is append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"ledger entry {target.id} is append-only")
