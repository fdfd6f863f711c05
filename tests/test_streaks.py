from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from familybank.models import Balance, TransactionReason
from familybank.persistence import ChildStreak
from familybank.streaks import advance, missed_days, streak_bonus_percent


def _never(_: date) -> bool:
    return False


def _row(**values) -> ChildStreak:
    return ChildStreak(family_id="f", child_id="c", **values)


def test_advance_counts_consecutive_days() -> None:
    row = _row()
    assert advance(row, date(2024, 6, 1), protection_days=0, is_excused=_never)
    assert advance(row, date(2024, 6, 2), protection_days=0, is_excused=_never)
    assert not advance(row, date(2024, 6, 2), protection_days=0, is_excused=_never)
    assert (row.current, row.best, row.started_on) == (2, 2, date(2024, 6, 1))


def test_gap_beyond_protection_restarts_streak() -> None:
    row = _row(current=4, best=4, last_activity_day=date(2024, 6, 4), started_on=date(2024, 6, 1))
    advance(row, date(2024, 6, 7), protection_days=1, is_excused=_never)

    assert row.current == 1
    assert row.best == 4
    assert row.is_disrupted
    assert row.started_on == date(2024, 6, 7)


def test_gap_within_protection_keeps_streak() -> None:
    row = _row(current=4, best=4, last_activity_day=date(2024, 6, 4), started_on=date(2024, 6, 1))
    assert advance(row, date(2024, 6, 6), protection_days=1, is_excused=_never)

    assert (row.current, row.is_disrupted, row.last_activity_day) == (4, False, date(2024, 6, 6))

    advance(row, date(2024, 6, 7), protection_days=1, is_excused=_never)
    assert (row.current, row.best) == (5, 5)


def test_activity_on_excused_day_is_frozen() -> None:
    holiday = {date(2024, 6, 5), date(2024, 6, 6)}
    row = _row(current=2, best=2, last_activity_day=date(2024, 6, 4), started_on=date(2024, 6, 3))

    assert not advance(row, date(2024, 6, 5), protection_days=0, is_excused=holiday.__contains__)
    assert not advance(row, date(2024, 6, 6), protection_days=0, is_excused=holiday.__contains__)
    assert (row.current, row.last_activity_day) == (2, date(2024, 6, 4))

    advance(row, date(2024, 6, 7), protection_days=0, is_excused=holiday.__contains__)
    assert row.current == 3


def test_holiday_days_are_not_missed() -> None:
    holiday = {date(2024, 6, 5), date(2024, 6, 6)}
    assert missed_days(date(2024, 6, 4), date(2024, 6, 8), holiday.__contains__) == 1

    row = _row(current=2, best=2, last_activity_day=date(2024, 6, 4), started_on=date(2024, 6, 3))
    advance(row, date(2024, 6, 7), protection_days=0, is_excused=holiday.__contains__)
    assert row.current == 3


@pytest.mark.parametrize(("streak", "percent"), [(0, 0), (2, 0), (3, 10), (4, 10), (5, 15), (6, 15), (7, 20), (30, 20)])
def test_streak_bonus_percent(streak, percent) -> None:
    assert streak_bonus_percent(streak) == percent


@pytest.fixture()
def reading(bank, household):
    task = bank.create_task(household.family_id, household.parent_id, "Reading", 10)
    return bank.create_assignment(household.family_id, household.parent_id, task.id, household.ava)


def _submit(bank, household, assignment, day: date) -> None:
    bank.completions.submit(household.family_id, assignment.id, household.ava, at=datetime.combine(day, datetime.min.time()))


def test_sweep_runs_once_per_day(bank, household) -> None:
    fid = household.family_id
    bank.update_settings(fid, household.parent_id, penalty_enabled=True, first_miss_pence=10, first_miss_stars=1)
    bank.wallet.gift(fid, household.parent_id, household.ava, 100, 5)
    day = date(2024, 6, 3)

    first = bank.streaks.run_daily_sweep(fid, day)
    second = bank.streaks.run_daily_sweep(fid, day)

    assert first.penalties[household.ava] == (10, 1)
    assert not first.already_ran
    assert second.already_ran
    assert bank.wallet.get_balance(fid, household.ava) == Balance(90, 4)


def test_penalties_escalate_after_protection(bank, household) -> None:
    fid = household.family_id
    bank.update_settings(
        fid,
        household.parent_id,
        streak_protection_days=1,
        penalty_enabled=True,
        penalty_type="money",
        first_miss_pence=5,
        first_miss_stars=9,
        second_miss_pence=10,
        third_miss_pence=20,
    )
    bank.wallet.gift(fid, household.parent_id, household.ava, 100, 10)
    start = date(2024, 6, 3)

    reports = [bank.streaks.run_daily_sweep(fid, start + timedelta(days=offset)) for offset in range(5)]

    assert household.ava in reports[0].protected
    assert [report.penalties.get(household.ava) for report in reports[1:]] == [(5, 0), (10, 0), (20, 0), (20, 0)]
    assert bank.wallet.get_balance(fid, household.ava) == Balance(45, 10)


def test_activity_clears_missed_days(bank, household, reading) -> None:
    fid = household.family_id
    bank.update_settings(fid, household.parent_id, penalty_enabled=True, first_miss_pence=5, second_miss_pence=50)
    bank.wallet.gift(fid, household.parent_id, household.ava, 100)
    day = date(2024, 6, 3)

    bank.streaks.run_daily_sweep(fid, day)
    _submit(bank, household, reading, day + timedelta(days=1))
    active = bank.streaks.run_daily_sweep(fid, day + timedelta(days=1))
    missed = bank.streaks.run_daily_sweep(fid, day + timedelta(days=2))

    assert household.ava not in active.penalties
    assert missed.penalties[household.ava] == (5, 0)


def test_penalty_is_clamped_to_floor(bank, household) -> None:
    fid = household.family_id
    bank.update_settings(
        fid, household.parent_id, penalty_enabled=True, penalty_type="both", first_miss_pence=50, second_miss_pence=50
    )
    bank.wallet.gift(fid, household.parent_id, household.ava, 20)

    report = bank.streaks.run_daily_sweep(fid, date(2024, 6, 3))
    assert report.penalties[household.ava] == (20, 0)
    assert household.ben not in report.penalties
    assert bank.wallet.get_balance(fid, household.ava) == Balance(0, 0)

    bank.update_settings(fid, household.parent_id, min_balance_pence=-15)
    report = bank.streaks.run_daily_sweep(fid, date(2024, 6, 4))
    assert report.penalties[household.ava] == (15, 0)
    assert bank.wallet.get_balance(fid, household.ava).balance_pence == -15
    penalties = [
        entry
        for entry in bank.wallet.list_transactions(fid, household.ava)
        if entry.reason == TransactionReason.STREAK_PENALTY.value
    ]
    assert len(penalties) == 2


def test_missed_day_resets_streaks(bank, household, reading) -> None:
    fid = household.family_id
    day = date(2024, 6, 3)
    _submit(bank, household, reading, day)
    _submit(bank, household, reading, day + timedelta(days=1))
    assert bank.streaks.get_stats(fid, household.ava).current_streak == 2

    bank.streaks.run_daily_sweep(fid, day + timedelta(days=2))
    stats = bank.streaks.get_stats(fid, household.ava)

    assert stats.current_streak == 0
    assert stats.best_streak == 2
    assert [(entry.current, entry.is_disrupted) for entry in stats.per_task] == [(0, True)]


def test_family_holiday_skips_penalties_and_resets(bank, household, reading) -> None:
    fid = household.family_id
    day = date(2024, 6, 3)
    bank.update_settings(
        fid,
        household.parent_id,
        penalty_enabled=True,
        first_miss_pence=10,
        holiday_enabled=True,
        holiday_start=day + timedelta(days=1),
        holiday_end=day + timedelta(days=3),
    )
    bank.wallet.gift(fid, household.parent_id, household.ava, 100)
    _submit(bank, household, reading, day)

    report = bank.streaks.run_daily_sweep(fid, day + timedelta(days=2))

    assert report.holiday
    assert report.penalties == {}
    assert sorted(report.protected) == sorted([household.ava, household.ben])
    assert bank.streaks.get_stats(fid, household.ava).current_streak == 1
    assert bank.wallet.get_balance(fid, household.ava).balance_pence == 100


def test_child_holiday_only_protects_that_child(bank, household) -> None:
    fid = household.family_id
    day = date(2024, 6, 3)
    bank.update_settings(fid, household.parent_id, penalty_enabled=True, first_miss_pence=10)
    bank.set_child_holiday(fid, household.parent_id, household.ava, day, day)
    bank.wallet.gift(fid, household.parent_id, household.ava, 100)
    bank.wallet.gift(fid, household.parent_id, household.ben, 100)

    report = bank.streaks.run_daily_sweep(fid, day)

    assert household.ava in report.protected
    assert report.penalties == {household.ben: (10, 0)}


def test_bonus_paid_once_per_milestone(bank, household, reading) -> None:
    fid = household.family_id
    bank.update_settings(
        fid,
        household.parent_id,
        bonus_enabled=True,
        bonus_interval_days=3,
        bonus_money_pence=25,
        bonus_stars=2,
        bonus_type="both",
    )
    start = date(2024, 6, 3)
    reports = []
    for offset in range(3):
        day = start + timedelta(days=offset)
        _submit(bank, household, reading, day)
        reports.append(bank.streaks.run_daily_sweep(fid, day))

    assert [report.bonuses.get(household.ava) for report in reports] == [None, None, (25, 2)]

    # Still three days long during a holiday the next day: no second payment.
    holiday = start + timedelta(days=3)
    bank.update_settings(fid, household.parent_id, holiday_enabled=True, holiday_start=holiday, holiday_end=holiday)
    assert bank.streaks.run_daily_sweep(fid, holiday).bonuses == {}

    bonuses = [
        entry
        for entry in bank.wallet.list_transactions(fid, household.ava)
        if entry.reason == TransactionReason.STREAK_BONUS.value
    ]
    assert len(bonuses) == 1


def test_holiday_still_pays_earned_bonus(bank, household, reading) -> None:
    fid = household.family_id
    start = date(2024, 6, 3)
    holiday = start + timedelta(days=2)
    bank.update_settings(
        fid,
        household.parent_id,
        bonus_enabled=True,
        bonus_interval_days=2,
        bonus_stars=3,
        bonus_type="stars",
        holiday_enabled=True,
        holiday_start=holiday,
        holiday_end=holiday,
    )
    for offset in range(2):
        _submit(bank, household, reading, start + timedelta(days=offset))
    _submit(bank, household, reading, holiday)
    assert bank.streaks.get_stats(fid, household.ava).current_streak == 2

    report = bank.streaks.run_daily_sweep(fid, holiday)

    assert report.holiday
    assert report.bonuses == {household.ava: (0, 3)}
    assert bank.wallet.get_balance(fid, household.ava) == Balance(0, 3)


def test_holiday_submissions_do_not_move_streaks(bank, household, reading) -> None:
    fid = household.family_id
    start = date(2024, 6, 3)
    bank.update_settings(
        fid,
        household.parent_id,
        holiday_enabled=True,
        holiday_start=start + timedelta(days=1),
        holiday_end=start + timedelta(days=2),
    )
    _submit(bank, household, reading, start)
    _submit(bank, household, reading, start + timedelta(days=1))
    _submit(bank, household, reading, start + timedelta(days=2))

    stats = bank.streaks.get_stats(fid, household.ava)
    assert (stats.current_streak, stats.total_active_days) == (1, 3)
    assert [entry.current for entry in stats.per_task] == [1]
    assert bank.streaks.family_streak(fid).current == 1

    _submit(bank, household, reading, start + timedelta(days=3))
    assert bank.streaks.get_stats(fid, household.ava).current_streak == 2


def test_protected_gap_keeps_streak_without_adding(bank, household, reading) -> None:
    fid = household.family_id
    bank.update_settings(fid, household.parent_id, streak_protection_days=1)
    start = date(2024, 6, 3)
    for offset in (0, 1, 3):
        _submit(bank, household, reading, start + timedelta(days=offset))

    stats = bank.streaks.get_stats(fid, household.ava)
    assert stats.current_streak == 2
    assert [(entry.current, entry.is_disrupted) for entry in stats.per_task] == [(2, False)]


def test_sweep_all_covers_every_family(bank, household) -> None:
    other = bank.create_family("Other")
    reports = bank.sweep_all(date(2024, 6, 3))

    assert sorted(report.family_id for report in reports) == sorted([household.family_id, other.id])
    assert all(report.already_ran for report in bank.sweep_all(date(2024, 6, 3)))
