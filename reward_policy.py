"""Reward economics.

The table is code, not data: changing rewards means shipping a new
POLICY_VERSION, never a database write.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

from errors import UnknownAction
from models_ledger import LedgerReason

POLICY_VERSION = "2024-06-01"

# Token earning rates for different actions
EARNING_RATES = MappingProxyType({
    LedgerReason.POST_CREATE: Decimal("5"),
    LedgerReason.POST_LIKE: Decimal("1"),
    LedgerReason.POST_COMMENT: Decimal("2"),
    LedgerReason.POST_SHARE: Decimal("3"),
    LedgerReason.BLOG_CREATE: Decimal("25"),
    LedgerReason.NFT_MINT: Decimal("10"),
    LedgerReason.DAILY_LOGIN: Decimal("1"),
    LedgerReason.REFERRAL: Decimal("50"),
    LedgerReason.CONTENT_VIEW: Decimal("0.1"),
    LedgerReason.AI_CONTENT_GENERATION: Decimal("2"),
    LedgerReason.PROFILE_COMPLETE: Decimal("10"),
    LedgerReason.EMAIL_VERIFY: Decimal("5"),
})

# Daily limits to prevent abuse (per account, per UTC day)
DAILY_LIMITS = MappingProxyType({
    LedgerReason.POST_LIKE: 50,
    LedgerReason.POST_COMMENT: 20,
    LedgerReason.POST_SHARE: 10,
    LedgerReason.DAILY_LOGIN: 1,
    LedgerReason.CONTENT_VIEW: 100,
})

# One-time bonuses; never earnable directly.
BONUS_RATES = MappingProxyType({
    LedgerReason.FIRST_POST: Decimal("15"),
    LedgerReason.WEEK_STREAK: Decimal("20"),
    LedgerReason.MONTH_STREAK: Decimal("100"),
})

# login streak length => bonus reason
STREAK_BONUSES = MappingProxyType({
    7: LedgerReason.WEEK_STREAK,
    30: LedgerReason.MONTH_STREAK,
})


@dataclass(frozen=True)
class ActionPolicy:
    action: LedgerReason
    reward: Decimal
    daily_cap: int | None = None


class RewardPolicy:
    """Read-only view over the reward tables."""

    def __init__(self, rates=EARNING_RATES, limits=DAILY_LIMITS, bonuses=BONUS_RATES,
                 streaks=STREAK_BONUSES, version: str = POLICY_VERSION):
        self.version = version
        self._rates = MappingProxyType(dict(rates))
        self._limits = MappingProxyType(dict(limits))
        self._bonuses = MappingProxyType(dict(bonuses))
        self._streaks = MappingProxyType(dict(streaks))

    def lookup(self, action) -> ActionPolicy:
        reason = LedgerReason.parse(action)
        if reason is None or reason not in self._rates:
            raise UnknownAction("Invalid action for earning", action=str(action))
        return ActionPolicy(action=reason, reward=self._rates[reason], daily_cap=self._limits.get(reason))

    def daily_cap(self, action) -> int | None:
        reason = LedgerReason.parse(action)
        if reason is None:
            return None
        return self._limits.get(reason)

    def bonus_amount(self, reason: LedgerReason) -> Decimal:
        return self._bonuses[reason]

    def streak_bonus(self, streak: int) -> LedgerReason | None:
        return self._streaks.get(streak)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "rates": {k.value: float(v) for k, v in self._rates.items()},
            "daily_limits": {k.value: v for k, v in self._limits.items()},
            "bonuses": {k.value: float(v) for k, v in self._bonuses.items()},
            "streak_bonuses": {str(days): reason.value for days, reason in self._streaks.items()},
        }
