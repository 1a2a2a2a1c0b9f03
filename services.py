"""Wiring of the ledger components, built once per app in create_app()."""

from __future__ import annotations

from dataclasses import dataclass

from activity import ActivityPublisher
from earning import EarningEngine
from ledger import LedgerStore, utcnow
from rate_limiter import STRATEGY_COUNTER, DailyRateLimiter
from reward_policy import RewardPolicy
from spending import SpendingEngine
from staking import StakingConfig, StakingEngine

EXTENSION_KEY = "token_ledger"


@dataclass
class TokenLedger:
    store: LedgerStore
    policy: RewardPolicy
    limiter: DailyRateLimiter
    earning: EarningEngine
    staking: StakingEngine
    spending: SpendingEngine
    activity: ActivityPublisher


def build_token_ledger(db, clock=None, staking_config: StakingConfig | None = None,
                       limit_strategy: str = STRATEGY_COUNTER, lock_timeout: float = 5.0,
                       policy: RewardPolicy | None = None) -> TokenLedger:
    clock = clock or utcnow
    activity = ActivityPublisher(db, clock=clock)
    store = LedgerStore(db, clock=clock, publisher=activity, lock_timeout=lock_timeout)
    policy = policy or RewardPolicy()
    limiter = DailyRateLimiter(policy, strategy=limit_strategy)
    return TokenLedger(
        store=store,
        policy=policy,
        limiter=limiter,
        earning=EarningEngine(store, policy, limiter),
        staking=StakingEngine(store, staking_config or StakingConfig.from_env()),
        spending=SpendingEngine(store),
        activity=activity,
    )


def get_token_ledger(app) -> TokenLedger:
    return app.extensions[EXTENSION_KEY]
