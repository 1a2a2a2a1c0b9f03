from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from conftest import ACCOUNT, OTHER, assert_conserved
from earning import EarningEngine
from errors import DailyLimitExceeded, InvalidAccount, UnknownAction
from models_ledger import DailyActionCounter, LedgerReason
from rate_limiter import STRATEGY_LEDGER, DailyRateLimiter


def test_earn_credits_policy_amount(ledger):
    result = ledger.earning.earn(ACCOUNT, "post_comment", {"postId": "p1"})

    assert result.amount_credited == Decimal("2.00")
    assert result.balance == Decimal("2.00")
    assert result.bonuses == ()
    entries = ledger.store.recent_transactions(ACCOUNT)
    assert [(e.reason, e.amount) for e in entries] == [(LedgerReason.POST_COMMENT, Decimal("2.00"))]
    assert entries[0].meta == {"postId": "p1"}
    assert_conserved(ledger, ACCOUNT)


def test_fractional_reward_is_exact(ledger):
    for _ in range(10):
        ledger.earning.earn(ACCOUNT, "content_view")
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("1.00")
    assert_conserved(ledger, ACCOUNT)


def test_account_ids_are_case_insensitive(ledger):
    ledger.earning.earn(ACCOUNT.upper().replace("0X", "0x"), "post_share")
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("3.00")


@pytest.mark.parametrize("action", ["bogus", "", "first_post", "week_streak", "month_streak", "stake_reward", "tip_user"])
def test_unknown_or_bonus_actions_are_rejected(ledger, action):
    with pytest.raises(UnknownAction):
        ledger.earning.earn(ACCOUNT, action)
    assert ledger.store.get_account(ACCOUNT) is None
    assert ledger.store.ledger_sum(ACCOUNT) == Decimal("0.00")


def test_blank_account_is_rejected(ledger):
    with pytest.raises(InvalidAccount):
        ledger.earning.earn("  ", "post_like")


def test_daily_cap_allows_exactly_cap_credits(ledger):
    for _ in range(50):
        ledger.earning.earn(ACCOUNT, "post_like")

    with pytest.raises(DailyLimitExceeded) as exc:
        ledger.earning.earn(ACCOUNT, "post_like")

    assert exc.value.details["count"] == 50
    assert exc.value.details["limit"] == 50
    assert exc.value.details["resets_at"] == datetime(2024, 6, 4)
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("50.00")
    assert ledger.limiter.count_today(ledger.store, ACCOUNT, LedgerReason.POST_LIKE) == 50
    assert_conserved(ledger, ACCOUNT)


def test_daily_cap_is_per_account(ledger):
    for _ in range(10):
        ledger.earning.earn(ACCOUNT, "post_share")
    ledger.earning.earn(OTHER, "post_share")
    assert ledger.store.get_account(OTHER).balance == Decimal("3.00")


def test_daily_cap_resets_at_utc_midnight(ledger, clock):
    clock.set(datetime(2024, 6, 3, 23, 59, 59))
    for _ in range(10):
        ledger.earning.earn(ACCOUNT, "post_share")
    with pytest.raises(DailyLimitExceeded):
        ledger.earning.earn(ACCOUNT, "post_share")

    clock.set(datetime(2024, 6, 4, 0, 0, 0))
    result = ledger.earning.earn(ACCOUNT, "post_share")
    assert result.balance == Decimal("33.00")


def test_uncapped_action_has_no_daily_limit(ledger):
    for _ in range(5):
        ledger.earning.earn(ACCOUNT, "blog_create")
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("125.00")


def test_counter_matches_ledger_count(ledger):
    for _ in range(7):
        ledger.earning.earn(ACCOUNT, "post_comment")
    counter = DailyActionCounter.query.filter_by(account_id=ACCOUNT, action="post_comment").one()
    assert counter.count == 7
    assert ledger.limiter.count_today(ledger.store, ACCOUNT, LedgerReason.POST_COMMENT) == 7


def test_rejected_earn_does_not_consume_the_counter(ledger):
    for _ in range(10):
        ledger.earning.earn(ACCOUNT, "post_share")
    for _ in range(3):
        with pytest.raises(DailyLimitExceeded):
            ledger.earning.earn(ACCOUNT, "post_share")
    counter = DailyActionCounter.query.filter_by(account_id=ACCOUNT, action="post_share").one()
    assert counter.count == 10


def test_ledger_strategy_enforces_the_same_cap(ledger):
    engine = EarningEngine(ledger.store, ledger.policy, DailyRateLimiter(ledger.policy, STRATEGY_LEDGER))
    for _ in range(20):
        engine.earn(ACCOUNT, "post_comment")
    with pytest.raises(DailyLimitExceeded) as exc:
        engine.earn(ACCOUNT, "post_comment")
    assert exc.value.details["count"] == 20
    assert DailyActionCounter.query.count() == 0
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("40.00")


def test_unknown_strategy_is_a_config_error(ledger):
    with pytest.raises(ValueError):
        DailyRateLimiter(ledger.policy, "bucket")


# ---- bonuses ----

def test_first_post_bonus_once(ledger):
    results = [ledger.earning.earn(ACCOUNT, "post_create") for _ in range(5)]

    assert [b.reason for b in results[0].bonuses] == [LedgerReason.FIRST_POST]
    assert results[0].amount_credited == Decimal("5.00")
    assert all(r.bonuses == () for r in results[1:])
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("40.00")
    assert ledger.store.count_entries(ACCOUNT, LedgerReason.FIRST_POST) == 1
    assert_conserved(ledger, ACCOUNT)


def _login_days(ledger, clock, days):
    results = []
    for day in range(days):
        if day:
            clock.advance(days=1)
        results.append(ledger.earning.earn(ACCOUNT, "daily_login"))
    return results


def test_daily_login_once_per_day(ledger, clock):
    ledger.earning.earn(ACCOUNT, "daily_login")
    with pytest.raises(DailyLimitExceeded) as exc:
        ledger.earning.earn(ACCOUNT, "daily_login")
    assert exc.value.details["limit"] == 1


def test_week_streak_bonus_on_day_seven_only(ledger, clock):
    results = _login_days(ledger, clock, 8)

    assert [r.login_streak for r in results] == [1, 2, 3, 4, 5, 6, 7, 8]
    assert [b.reason for b in results[6].bonuses] == [LedgerReason.WEEK_STREAK]
    assert results[7].bonuses == ()
    # 8 logins + one week bonus
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("28.00")
    assert_conserved(ledger, ACCOUNT)


def test_month_streak_bonus(ledger, clock):
    results = _login_days(ledger, clock, 30)

    assert [b.reason for b in results[29].bonuses] == [LedgerReason.MONTH_STREAK]
    assert ledger.store.count_entries(ACCOUNT, LedgerReason.WEEK_STREAK) == 1
    assert ledger.store.count_entries(ACCOUNT, LedgerReason.MONTH_STREAK) == 1
    assert ledger.store.get_account(ACCOUNT).balance == Decimal("150.00")
    assert ledger.store.get_account(ACCOUNT).longest_streak == 30


def test_missed_day_resets_streak(ledger, clock):
    _login_days(ledger, clock, 3)
    clock.advance(days=2)
    result = ledger.earning.earn(ACCOUNT, "daily_login")

    assert result.login_streak == 1
    account = ledger.store.get_account(ACCOUNT)
    assert account.login_streak == 1
    assert account.longest_streak == 3


def test_streak_uses_calendar_days(ledger, clock):
    clock.set(datetime(2024, 6, 3, 23, 50))
    ledger.earning.earn(ACCOUNT, "daily_login")
    clock.set(datetime(2024, 6, 4, 0, 10))
    assert ledger.earning.earn(ACCOUNT, "daily_login").login_streak == 2


def test_earn_result_payload(ledger):
    payload = ledger.earning.earn(ACCOUNT, "post_create").to_dict()
    assert payload["success"] is True
    assert payload["earned"] == 5.0
    assert payload["balance"] == 20.0
    assert payload["bonuses"] == [{"reason": "first_post", "amount": 15.0}]
    assert "loginStreak" not in payload
