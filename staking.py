"""Staking engine: lock CYBV for a fixed period at a fixed APY.

Rewards are simple interest on whole elapsed days:

    principal * apy / 100 / 365 * days_elapsed   (rounded to 0.01, half-up)

Closing early costs ``early_withdrawal_penalty`` of the principal; the
penalty is first taken out of the accrued rewards (which never go negative)
and the principal returned is reduced by it.

Ledger convention on close: an ``unstake_return`` entry for
principal - penalty, plus a ``stake_reward`` entry when rewards > 0.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from types import MappingProxyType

from errors import (
    InsufficientBalance, InvalidAmount, InvalidPeriod, NotFound, OutOfRange, StakeAlreadyActive, StakeNotMatured,
)
from ledger import CENT, ZERO, LedgerStore, LedgerTransaction, normalize_account_id, to_amount
from models_ledger import LedgerReason
from models_staking import (
    STAKE_STATUS_ACTIVE, STAKE_STATUS_COMPLETED, UNSTAKE_EARLY, UNSTAKE_MATURED, Stake,
)

log = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class LockPeriod:
    name: str
    days: int
    apy: Decimal  # annual rate, percent


DEFAULT_PERIODS = MappingProxyType({
    "7d": LockPeriod("7d", 7, Decimal("8")),
    "30d": LockPeriod("30d", 30, Decimal("12")),
    "90d": LockPeriod("90d", 90, Decimal("18")),
    "365d": LockPeriod("365d", 365, Decimal("25")),
})


@dataclass(frozen=True)
class StakingConfig:
    minimum_stake: Decimal = Decimal("1")
    maximum_stake: Decimal = Decimal("10000")
    early_withdrawal_penalty: Decimal = Decimal("0.1")
    periods: MappingProxyType = field(default_factory=lambda: DEFAULT_PERIODS)

    @classmethod
    def from_env(cls) -> "StakingConfig":
        return cls(
            minimum_stake=Decimal(os.getenv("STAKE_MIN_AMOUNT", "1")),
            maximum_stake=Decimal(os.getenv("STAKE_MAX_AMOUNT", "10000")),
            early_withdrawal_penalty=Decimal(os.getenv("STAKE_EARLY_PENALTY_RATE", "0.1")),
        )

    @property
    def penalty_label(self) -> str:
        """Early withdrawal rate as a percentage, e.g. ``"10%"`` or ``"12.5%"``."""
        pct = (Decimal(str(self.early_withdrawal_penalty)) * 100).normalize()
        return f"{pct:f}%"

    def to_dict(self):
        return {
            "minimumStake": float(self.minimum_stake),
            "maximumStake": float(self.maximum_stake),
            "lockPeriods": {p.name: {"days": p.days, "apy": float(p.apy)} for p in self.periods.values()},
            "penalties": {"earlyWithdrawal": float(self.early_withdrawal_penalty)},
        }


def projected_rewards(principal, apy, days_elapsed: int) -> Decimal:
    if days_elapsed <= 0:
        return ZERO.quantize(CENT)
    raw = Decimal(principal) * Decimal(apy) * days_elapsed / Decimal(36500)
    return raw.quantize(CENT, rounding=ROUND_HALF_UP)


def days_elapsed(started_at: datetime, now: datetime) -> int:
    if now <= started_at:
        return 0
    return (now - started_at) // ONE_DAY


@dataclass(frozen=True)
class StakeView:
    stake: Stake
    current_rewards: Decimal
    days_staked: int
    days_remaining: int
    can_unstake: bool
    penalty_if_forced: Decimal

    def to_dict(self):
        out = self.stake.to_dict()
        out.update({
            "currentRewards": float(self.current_rewards),
            "daysStaked": self.days_staked,
            "daysRemaining": self.days_remaining,
            "canUnstake": self.can_unstake,
            "penaltyIfForced": float(self.penalty_if_forced),
        })
        return out


@dataclass(frozen=True)
class UnstakeResult:
    stake_id: int
    original_amount: Decimal
    rewards: Decimal
    penalty: Decimal
    total_return: Decimal
    days_staked: int
    is_matured: bool
    balance: Decimal

    def to_dict(self):
        msg = f"Successfully unstaked {self.total_return} CYBV tokens ({self.original_amount} principal + {self.rewards} rewards"
        msg += f" - {self.penalty} penalty)" if self.penalty > ZERO else ")"
        return {
            "success": True,
            "stakeId": self.stake_id,
            "originalAmount": float(self.original_amount),
            "rewards": float(self.rewards),
            "penalty": float(self.penalty),
            "totalReturn": float(self.total_return),
            "daysStaked": self.days_staked,
            "isMatured": self.is_matured,
            "balance": float(self.balance),
            "message": msg,
        }


@dataclass
class StakeStatus:
    active: StakeView | None
    completed: list = field(default_factory=list)
    total_staked: Decimal = ZERO
    total_projected_rewards: Decimal = ZERO
    total_rewards_earned: Decimal = ZERO
    total_penalties: Decimal = ZERO

    def to_dict(self):
        return {
            "success": True,
            "activeStakes": [self.active.to_dict()] if self.active else [],
            "completedStakes": [s.to_dict() for s in self.completed],
            "summary": {
                "totalStaked": float(self.total_staked),
                "totalRewards": float(self.total_projected_rewards),
                "totalRewardsEarned": float(self.total_rewards_earned),
                "totalPenalties": float(self.total_penalties),
                "activeStakeCount": 1 if self.active else 0,
                "completedStakeCount": len(self.completed),
            },
        }


def _parse_principal(value) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Amount must be greater than 0", amount=value)
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Amount must be greater than 0", amount=str(value)) from None
    if not dec.is_finite() or dec <= 0:
        raise InvalidAmount("Amount must be greater than 0", amount=str(value))
    return dec


class StakingEngine:
    def __init__(self, store: LedgerStore, config: StakingConfig | None = None):
        self.store = store
        self.config = config or StakingConfig()

    # ---- open ----

    def open_stake(self, account_id, principal, period, wallet_ref: str | None = None) -> Stake:
        amount = _parse_principal(principal)
        cfg = self.config
        if amount < cfg.minimum_stake:
            raise OutOfRange(f"Minimum stake amount is {cfg.minimum_stake} CYBV",
                             minimum=cfg.minimum_stake, maximum=cfg.maximum_stake, amount=amount)
        if amount > cfg.maximum_stake:
            raise OutOfRange(f"Maximum stake amount is {cfg.maximum_stake} CYBV",
                             minimum=cfg.minimum_stake, maximum=cfg.maximum_stake, amount=amount)
        lock = cfg.periods.get(period) if isinstance(period, str) else None
        if lock is None:
            raise InvalidPeriod("Invalid staking period", period=str(period), allowed=sorted(cfg.periods))
        amount = to_amount(amount)

        def work(txn: LedgerTransaction) -> Stake:
            if txn.balance < amount:
                raise InsufficientBalance("Insufficient balance", available=txn.balance, required=amount)
            if self._active_stake(txn.session, txn.account.account_id, lock_row=True) is not None:
                raise StakeAlreadyActive(
                    "You already have an active stake. Please wait for it to complete or unstake first."
                )
            stake = Stake(
                account_id=txn.account.account_id,
                principal=amount,
                period=lock.name,
                apy=lock.apy,
                wallet_ref=(wallet_ref or None),
                started_at=txn.now,
                matures_at=txn.now + timedelta(days=lock.days),
                status=STAKE_STATUS_ACTIVE,
            )
            txn.session.add(stake)
            txn.session.flush()
            txn.append(-amount, LedgerReason.STAKE_LOCK, {
                "stakeId": stake.id,
                "period": lock.name,
                "apy": str(lock.apy),
                "endDate": stake.matures_at.isoformat(),
            })
            txn.emit("stake_opened", f"Staked {amount} CYBV for {lock.name} at {lock.apy}% APY",
                     {"stakeId": stake.id, "amount": str(amount), "period": lock.name})
            return stake

        stake = self.store.run(account_id, work, operation="stake:open")
        log.info("opened stake %s for %s: %s CYBV / %s", stake.id, stake.account_id, amount, lock.name)
        return stake

    # ---- query ----

    def get_active_stake_with_projected_rewards(self, account_id) -> StakeView | None:
        stake = self._active_stake(self.store.session, normalize_account_id(account_id))
        if stake is None:
            return None
        return self._view(stake, self.store.clock())

    def stake_status(self, account_id) -> StakeStatus:
        account_id = normalize_account_id(account_id)
        stakes = Stake.query.filter_by(account_id=account_id).order_by(Stake.started_at.desc(), Stake.id.desc()).all()
        now = self.store.clock()
        active = next((s for s in stakes if s.status == STAKE_STATUS_ACTIVE), None)
        completed = [s for s in stakes if s.status == STAKE_STATUS_COMPLETED]
        view = self._view(active, now) if active is not None else None
        return StakeStatus(
            active=view,
            completed=completed,
            total_staked=to_amount(active.principal) if active is not None else ZERO,
            total_projected_rewards=view.current_rewards if view else ZERO,
            total_rewards_earned=to_amount(sum((Decimal(s.accrued_rewards_at_close or 0) for s in completed), ZERO)),
            total_penalties=to_amount(sum((Decimal(s.penalty_at_close or 0) for s in completed), ZERO)),
        )

    # ---- close ----

    def close_stake(self, account_id, stake_id, force_early: bool = False) -> UnstakeResult:
        try:
            stake_id = int(stake_id)
        except (TypeError, ValueError):
            raise NotFound("Active stake not found", stakeId=str(stake_id)) from None

        def work(txn: LedgerTransaction) -> UnstakeResult:
            stake = (
                txn.session.query(Stake)
                .filter_by(id=stake_id, account_id=txn.account.account_id, status=STAKE_STATUS_ACTIVE)
                .with_for_update()
                .populate_existing()
                .one_or_none()
            )
            if stake is None:
                raise NotFound("Active stake not found", stakeId=stake_id)

            now = txn.now
            principal = to_amount(stake.principal)
            is_matured = now >= stake.matures_at
            staked_days = days_elapsed(stake.started_at, now)
            rewards = projected_rewards(principal, stake.apy, staked_days)

            if not is_matured and not bool(force_early):
                raise StakeNotMatured(
                    "Stake has not matured yet",
                    stakeId=stake.id,
                    maturityDate=stake.matures_at,
                    daysRemaining=self._days_remaining(stake, staked_days),
                    penaltyIfForced=self._penalty(principal),
                    earlyWithdrawalPenalty=self.config.penalty_label,
                )

            penalty = ZERO
            if not is_matured:
                penalty = self._penalty(principal)
                rewards = max(ZERO, rewards - penalty)

            final_amount = principal - penalty
            total_return = final_amount + rewards

            stake.status = STAKE_STATUS_COMPLETED
            stake.completed_at = now
            stake.accrued_rewards_at_close = rewards
            stake.penalty_at_close = penalty
            stake.unstake_type = UNSTAKE_MATURED if is_matured else UNSTAKE_EARLY

            meta = {"stakeId": stake.id, "period": stake.period, "daysStaked": staked_days, "penalty": str(penalty)}
            if final_amount > ZERO:
                txn.append(final_amount, LedgerReason.UNSTAKE_RETURN, meta)
            if rewards > ZERO:
                txn.append(rewards, LedgerReason.STAKE_REWARD, meta)
            txn.emit("stake_closed", f"Unstaked {total_return} CYBV", {**meta, "totalReturn": str(total_return)})

            return UnstakeResult(
                stake_id=stake.id,
                original_amount=principal,
                rewards=rewards,
                penalty=penalty,
                total_return=total_return,
                days_staked=staked_days,
                is_matured=is_matured,
                balance=txn.balance,
            )

        result = self.store.run(account_id, work, operation="stake:close")
        log.info("closed stake %s: return=%s penalty=%s", result.stake_id, result.total_return, result.penalty)
        return result

    # ---- helpers ----

    def _penalty(self, principal: Decimal) -> Decimal:
        return (principal * self.config.early_withdrawal_penalty).quantize(CENT, rounding=ROUND_HALF_UP)

    @staticmethod
    def _days_remaining(stake: Stake, staked_days: int) -> int:
        return max(0, (stake.matures_at - stake.started_at).days - staked_days)

    @staticmethod
    def _active_stake(session, account_id: str, lock_row: bool = False) -> Stake | None:
        q = session.query(Stake).filter_by(account_id=account_id, status=STAKE_STATUS_ACTIVE)
        if lock_row:
            q = q.with_for_update()
        return q.first()

    def _view(self, stake: Stake, now: datetime) -> StakeView:
        principal = to_amount(stake.principal)
        staked_days = days_elapsed(stake.started_at, now)
        return StakeView(
            stake=stake,
            current_rewards=projected_rewards(principal, stake.apy, staked_days),
            days_staked=staked_days,
            days_remaining=self._days_remaining(stake, staked_days),
            can_unstake=now >= stake.matures_at,
            penalty_if_forced=self._penalty(principal),
        )
