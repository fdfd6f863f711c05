from __future__ import annotations

import json
from datetime import date, datetime

import pytest

from familybank.exceptions import AuthorizationError, NotFoundError, ValidationError
from familybank.models import TransactionReason
from familybank.notifications import EventKind
from familybank.service import FamilyBank


def test_family_setup_validates_names(bank) -> None:
    with pytest.raises(ValidationError):
        bank.create_family("  ")
    family = bank.create_family("Mason")
    with pytest.raises(ValidationError):
        bank.add_child(family.id, "")
    with pytest.raises(NotFoundError):
        bank.add_child("missing", "Ava")

    child = bank.add_child(family.id, " Ava ")
    assert child.nickname == "Ava"
    assert [entry.id for entry in bank.list_children(family.id)] == [child.id]


def test_task_and_reward_validation(bank, household) -> None:
    fid = household.family_id
    with pytest.raises(ValidationError):
        bank.create_task(fid, household.parent_id, "Dishes", -1)
    with pytest.raises(ValidationError):
        bank.create_task(fid, household.parent_id, "Dishes", 10, recurrence="monthly")
    with pytest.raises(ValidationError):
        bank.create_reward(fid, household.parent_id, "Free", 0)
    with pytest.raises(NotFoundError):
        bank.create_assignment(fid, household.parent_id, "missing")

    other = bank.create_family("Other")
    task = bank.create_task(other.id, bank.add_parent(other.id, "Mum").id, "Theirs", 10)
    with pytest.raises(NotFoundError):
        bank.create_assignment(fid, household.parent_id, task.id)


def test_chart_changes_need_a_parent(bank, household) -> None:
    fid = household.family_id
    with pytest.raises(AuthorizationError):
        bank.create_task(fid, household.ava, "Dishes", 10)
    with pytest.raises(AuthorizationError):
        bank.create_reward(fid, household.ben, "Sweets", 5)

    task = bank.create_task(fid, household.parent_id, "Dishes", 10)
    reward = bank.create_reward(fid, household.parent_id, "Sweets", 5)
    with pytest.raises(AuthorizationError):
        bank.create_assignment(fid, household.ava, task.id, household.ava)
    with pytest.raises(AuthorizationError):
        bank.set_task_active(fid, household.ava, task.id, False)
    with pytest.raises(AuthorizationError):
        bank.set_reward_active(fid, household.ava, reward.id, False)

    assignment = bank.create_assignment(fid, household.parent_id, task.id, household.ava)
    assert [entry.action for entry in bank.audit_log.entries(fid)] == [
        "task.create",
        "reward.create",
        "assignment.create",
    ]
    assert bank.audit_log.latest(fid).target == assignment.id


def test_settings_updates_are_validated_and_audited(bank, household) -> None:
    fid = household.family_id
    defaults = bank.get_settings(fid)
    assert (defaults.bonus_interval_days, defaults.star_conversion_rate_pence, defaults.buy_stars_enabled) == (7, 10, True)

    with pytest.raises(ValidationError):
        bank.update_settings(fid, household.parent_id, bonus_interval_days=0)
    with pytest.raises(ValidationError):
        bank.update_settings(fid, household.parent_id, penalty_type="gold")
    with pytest.raises(ValidationError):
        bank.update_settings(fid, household.parent_id, min_balance_pence=10)
    with pytest.raises(ValidationError):
        bank.update_settings(fid, household.parent_id, colour="blue")
    with pytest.raises(ValidationError):
        bank.update_settings(
            fid, household.parent_id, holiday_enabled=True, holiday_start=date(2024, 6, 5), holiday_end=date(2024, 6, 1)
        )
    with pytest.raises(AuthorizationError):
        bank.update_settings(fid, household.ava, streak_protection_days=2)

    updated = bank.update_settings(fid, household.parent_id, streak_protection_days=2, bonus_type="stars")
    assert (updated.streak_protection_days, updated.bonus_type) == (2, "stars")
    assert bank.audit_log.latest(fid).action == "settings.update"


def test_child_deactivation(bank, household) -> None:
    fid = household.family_id
    task = bank.create_task(fid, household.parent_id, "Dishes", 10)
    assignment = bank.create_assignment(fid, household.parent_id, task.id)
    bank.set_child_active(fid, household.parent_id, household.ben, False)

    assert [child.id for child in bank.list_children(fid)] == [household.ava]
    with pytest.raises(ValidationError):
        bank.completions.submit(fid, assignment.id, household.ben)


def test_lookups_are_scoped_to_the_family(bank, household) -> None:
    other = bank.create_family("Other")

    assert bank.get_child(household.family_id, household.ava).nickname == "Ava"
    with pytest.raises(NotFoundError):
        bank.get_child(other.id, household.ava)
    assert bank.is_parent(household.family_id, household.parent_id)
    assert not bank.is_parent(other.id, household.parent_id)
    assert not bank.is_parent(household.family_id, household.ava)


def test_family_streak_counts_any_child(bank, household) -> None:
    fid = household.family_id
    task = bank.create_task(fid, household.parent_id, "Water plants", 10)
    assignment = bank.create_assignment(fid, household.parent_id, task.id)
    bank.completions.submit(fid, assignment.id, household.ava, at=datetime(2024, 4, 1, 8, 0))
    bank.completions.submit(fid, assignment.id, household.ben, at=datetime(2024, 4, 2, 8, 0))

    streak = bank.streaks.family_streak(fid)
    assert (streak.current, streak.best, streak.last_activity_day) == (2, 2, date(2024, 4, 2))
    assert bank.streaks.get_stats(fid, household.ava).current_streak == 1


def test_failing_subscriber_does_not_undo_commit(bank, household) -> None:
    def broken(_event) -> None:
        raise RuntimeError("push gateway down")

    bank.notifications.subscribe(broken)
    bank.wallet.credit(household.family_id, household.ava, 10, 0, TransactionReason.GIFT, None)

    assert bank.wallet.get_balance(household.family_id, household.ava).balance_pence == 10
    failures = bank.logger.tail(event_type="notification_failed")
    assert failures and failures[-1]["kind"] == EventKind.WALLET_CHANGED.value


def test_structured_log_is_written_to_file(tmp_path) -> None:
    log_path = tmp_path / "logs" / "bank.log"
    with FamilyBank(f"sqlite:///{tmp_path / 'bank.db'}", log_path=log_path) as bank:
        family = bank.create_family("Mason")
        child = bank.add_child(family.id, "Ava")
        bank.wallet.credit(family.id, child.id, 5, 0, TransactionReason.GIFT, None)

    events = [json.loads(line)["event"] for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert events[0] == "service_started"
    assert "wallet_credit" in events
    assert events[-1] == "service_stopped"


def test_state_survives_a_restart(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'bank.db'}"
    with FamilyBank(url) as bank:
        family = bank.create_family("Mason")
        child = bank.add_child(family.id, "Ava")
        bank.wallet.credit(family.id, child.id, 75, 3, TransactionReason.GIFT, None)

    with FamilyBank(url) as reopened:
        balance = reopened.wallet.get_balance(family.id, child.id)
        assert (balance.balance_pence, balance.stars) == (75, 3)
