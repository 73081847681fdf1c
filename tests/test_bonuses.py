from datetime import date

import pytest

from choreblimey.bonuses import BonusAwarder, BonusKind, month_bounds, week_to_check
from choreblimey.ledger import Ledger
from choreblimey.models import (
    BonusDecision,
    FamilyBonusConfig,
    MoneyAndStarsBonus,
    MoneyBonus,
    StarsBonus,
    StreakStats,
    payout_from_settings,
)

RUN_START = date(2024, 2, 28)
STREAK_SETTINGS = dict(bonus_enabled=True, bonus_days=3, bonus_money_pence=50, bonus_stars=5, bonus_type="both")


def _config(**overrides) -> FamilyBonusConfig:
    values = dict(family_id=1, bonus_enabled=True, bonus_days=3, streak_bonus=MoneyAndStarsBonus(50, 5))
    values.update(overrides)
    return FamilyBonusConfig(**values)


def _streak(length: int) -> StreakStats:
    return StreakStats(current_streak=length, best_streak=length, run_started_on=RUN_START)


def test_milestone_is_paid_once_and_next_milestone_still_pays(store, clock) -> None:
    config = _config()
    with store.write_session() as session:
        ledger = Ledger(session, now=clock)
        awarder = BonusAwarder(session, ledger, now=clock)
        wallet = ledger.ensure_wallet(1, 7)

        first = awarder.evaluate_streak_bonus(wallet, config, _streak(6))
        assert first.should_award
        entries = awarder.award(wallet, first)
        assert [(entry.amount_pence, entry.stars_delta) for entry in entries] == [(50, 0), (0, 5)]
        assert all(entry.meta_json["type"] == "streak_bonus" for entry in entries)
        assert all(entry.meta_json["streakLength"] == 6 for entry in entries)

        again = awarder.evaluate_streak_bonus(wallet, config, _streak(6))
        assert not again.should_award
        assert awarder.award(wallet, again) == []

        later = awarder.evaluate_streak_bonus(wallet, config, _streak(9))
        assert later.should_award
        assert len(awarder.award(wallet, later)) == 2

        assert (wallet.balance_pence, wallet.balance_stars) == (100, 10)


def test_unique_award_key_refuses_when_the_scan_is_bypassed(store, clock) -> None:
    with store.write_session() as session:
        ledger = Ledger(session, now=clock)
        awarder = BonusAwarder(session, ledger, now=clock)
        wallet = ledger.ensure_wallet(1, 7)

        def decision() -> BonusDecision:
            return BonusDecision(
                kind=BonusKind.STREAK.value,
                should_award=True,
                money_pence=50,
                milestone=6,
                period_key=RUN_START.isoformat(),
            )

        assert len(awarder.award(wallet, decision())) == 1
        replay = decision()
        assert awarder.award(wallet, replay) == []
        assert replay.should_award is False
        assert wallet.balance_pence == 50

    with store.read_session() as session:
        ledger = Ledger(session, now=clock)
        assert len(ledger.transactions(ledger.get_wallet(1, 7).id)) == 1


def test_same_milestone_in_a_new_run_pays_again_after_lookback(store, clock) -> None:
    config = _config()
    with store.write_session() as session:
        ledger = Ledger(session, now=clock)
        awarder = BonusAwarder(session, ledger, now=clock)
        wallet = ledger.ensure_wallet(1, 7)
        awarder.award(wallet, awarder.evaluate_streak_bonus(wallet, config, _streak(3)))

        clock.advance(days=10)
        fresh_run = StreakStats(current_streak=3, run_started_on=date(2024, 3, 12))
        assert len(awarder.award(wallet, awarder.evaluate_streak_bonus(wallet, config, fresh_run))) == 2


@pytest.mark.parametrize(
    "config, length, reason",
    [
        (_config(bonus_enabled=False), 3, "disabled"),
        (_config(), 2, "not a milestone"),
        (_config(), 4, "not a milestone"),
        (_config(streak_bonus=MoneyAndStarsBonus(0, 0)), 3, "pays nothing"),
    ],
)
def test_streak_bonus_refusals(store, clock, config, length, reason) -> None:
    with store.write_session() as session:
        ledger = Ledger(session, now=clock)
        decision = BonusAwarder(session, ledger, now=clock).evaluate_streak_bonus(
            ledger.ensure_wallet(1, 7), config, _streak(length)
        )
        assert not decision.should_award
        assert reason in decision.reason


@pytest.mark.parametrize(
    "payout, expected",
    [(MoneyBonus(30), [(30, 0)]), (StarsBonus(4), [(0, 4)]), (MoneyAndStarsBonus(30, 4), [(30, 0), (0, 4)])],
)
def test_one_entry_per_awarded_component(store, clock, payout, expected) -> None:
    with store.write_session() as session:
        ledger = Ledger(session, now=clock)
        awarder = BonusAwarder(session, ledger, now=clock)
        wallet = ledger.ensure_wallet(1, 7)
        decision = awarder.evaluate_streak_bonus(wallet, _config(streak_bonus=payout), _streak(3))
        entries = awarder.award(wallet, decision)
        assert [(entry.amount_pence, entry.stars_delta) for entry in entries] == expected
        assert [entry.meta_json["component"] for entry in entries] == [
            "money" if amount else "stars" for amount, _ in expected
        ]


def test_payout_variants_from_stored_settings() -> None:
    assert payout_from_settings("money", 10, 2) == MoneyBonus(10)
    assert payout_from_settings("stars", 10, 2) == StarsBonus(2)
    assert payout_from_settings("both", 10, 2).components == (10, 2)
    with pytest.raises(ValueError):
        payout_from_settings("gold", 10, 2)


def test_streak_bonus_through_daily_approvals(bank, clock, make_household) -> None:
    home = make_household("ann", **STREAK_SETTINGS)
    chore = bank.add_chore(home.family_id, "Make bed", base_reward_pence=20)
    assignment = bank.assign_chore(home.family_id, chore.id, child_id=home.children["ann"])

    results = []
    for _ in range(3):
        completion = bank.submit_completion(home.child("ann"), assignment.id)
        results.append(bank.approve_completion(home.parent, completion.id))
        clock.advance(days=1)

    assert [result.streak.current_streak for result in results] == [1, 2, 3]
    assert [len(result.bonus_transactions) for result in results] == [0, 0, 2]
    assert results[-1].wallet.balance_pence == 3 * 20 + 50
    assert results[-1].wallet.balance_stars == 3 * 2 + 5

    # A second approval on the milestone day does not pay the milestone twice.
    clock.advance(days=-1)
    extra = bank.submit_completion(home.child("ann"), assignment.id)
    repeat = bank.approve_completion(home.parent, extra.id)
    assert repeat.streak.current_streak == 3
    assert repeat.bonus_transactions == []
    assert bank.logger.events("streak_bonus_awarded")[0]["streakLength"] == 3


def test_week_and_month_windows() -> None:
    assert week_to_check(date(2024, 3, 10)) == date(2024, 3, 4)  # Sunday: this week
    assert week_to_check(date(2024, 3, 11)) == date(2024, 3, 4)  # Monday: last week
    assert week_to_check(date(2024, 3, 6)) is None
    start, end = month_bounds(date(2024, 12, 15))
    assert (start.date(), end.date()) == (date(2024, 12, 1), date(2025, 1, 1))


PERFECT_WEEK = dict(perfect_week_bonus_enabled=True, perfect_week_bonus_money_pence=100, perfect_week_bonus_type="money")
MONTHLY = dict(monthly_bonus_enabled=True, monthly_bonus_stars=20, monthly_bonus_type="stars")


def test_perfect_week_paid_once_on_monday(bank, clock, make_household) -> None:
    home = make_household("ann", "ben", **PERFECT_WEEK)
    chore = bank.add_chore(home.family_id, "Brush teeth", base_reward_pence=10)
    for name in ("ann", "ben"):
        bank.assign_chore(home.family_id, chore.id, child_id=home.children[name])
    ann_assignment = bank.assign_chore(home.family_id, chore.id, child_id=home.children["ann"])

    clock.advance(days=1)
    for assignment_id in (ann_assignment.id, ann_assignment.id - 2):
        completion = bank.submit_completion(home.child("ann"), assignment_id)
        bank.approve_completion(home.parent, completion.id)

    midweek = bank.run_periodic_bonuses(home.family_id, today=date(2024, 3, 6), kind=BonusKind.PERFECT_WEEK)
    assert not any(outcome.awarded for outcome in midweek)

    monday = date(2024, 3, 11)
    preview = bank.run_periodic_bonuses(home.family_id, today=monday, kind="perfect_week_bonus", dry_run=True)
    assert [(o.child_id, o.decision.should_award, o.awarded) for o in preview] == [
        (home.children["ann"], True, False),
        (home.children["ben"], False, False),
    ]

    paid = bank.run_periodic_bonuses(home.family_id, today=monday, kind=BonusKind.PERFECT_WEEK)
    assert [o.child_id for o in paid if o.awarded] == [home.children["ann"]]
    assert paid[0].transactions[0].meta_json["weekStart"] == "2024-03-04"

    again = bank.run_periodic_bonuses(home.family_id, today=monday, kind=BonusKind.PERFECT_WEEK)
    assert not any(outcome.awarded for outcome in again)
    wallet, _ = bank.wallet(home.parent, home.children["ann"])
    assert wallet.balance_pence == 2 * 10 + 100


def test_monthly_milestone_pays_at_exact_counts(bank, make_household) -> None:
    home = make_household("ann", **MONTHLY)
    chore = bank.add_chore(home.family_id, "Set table", base_reward_pence=10)
    assignment = bank.assign_chore(home.family_id, chore.id)

    for _ in range(9):
        completion = bank.submit_completion(home.child("ann"), assignment.id)
        bank.approve_completion(home.parent, completion.id)
    assert not bank.run_periodic_bonuses(home.family_id, kind=BonusKind.MONTHLY)[0].awarded

    completion = bank.submit_completion(home.child("ann"), assignment.id)
    bank.approve_completion(home.parent, completion.id)
    outcome = bank.run_periodic_bonuses(home.family_id, kind=BonusKind.MONTHLY)[0]
    assert outcome.awarded
    assert outcome.decision.milestone == 10
    assert outcome.transactions[0].stars_delta == 20

    assert not bank.run_periodic_bonuses(home.family_id, kind=BonusKind.MONTHLY)[0].awarded
    assert len(bank.logger.events("periodic_bonus_awarded")) == 1
