from __future__ import annotations

import threading

import pytest

from familybank.exceptions import AuthorizationError, NotFoundError, ValidationError
from familybank.notifications import EventKind
from familybank.service import FamilyBank


@pytest.fixture()
def showdown(bank, household):
    task = bank.create_task(household.family_id, household.parent_id, "Wash the car", 50)
    return bank.create_assignment(household.family_id, household.parent_id, task.id, bidding_enabled=True)


def test_first_bid_is_capped_by_base_reward(bank, household, showdown) -> None:
    fid = household.family_id
    with pytest.raises(ValidationError, match="exceeds base reward"):
        bank.bidding.compete(fid, showdown.id, household.ava, 51)
    with pytest.raises(ValidationError):
        bank.bidding.compete(fid, showdown.id, household.ava, 0)

    bid = bank.bidding.compete(fid, showdown.id, household.ava, 50)
    assert bank.bidding.get_champion(fid, showdown.id).id == bid.id


def test_underbids_must_be_strictly_lower(bank, household, showdown) -> None:
    fid = household.family_id
    bank.bidding.compete(fid, showdown.id, household.ava, 40)

    with pytest.raises(ValidationError, match="lower than current champion"):
        bank.bidding.compete(fid, showdown.id, household.ben, 40)
    with pytest.raises(ValidationError, match="already the champion"):
        bank.bidding.compete(fid, showdown.id, household.ava, 30)

    bank.bidding.compete(fid, showdown.id, household.ben, 35)
    bank.bidding.compete(fid, showdown.id, household.ava, 30)

    champion = bank.bidding.get_champion(fid, showdown.id)
    assert (champion.child_id, champion.amount_pence) == (household.ava, 30)
    assert [bid.amount_pence for bid in bank.bidding.list_bids(fid, showdown.id)] == [30, 35, 40]


def test_no_champion_before_any_bid(bank, household, showdown) -> None:
    assert bank.bidding.get_champion(household.family_id, showdown.id) is None
    assert bank.bidding.list_bids(household.family_id, showdown.id) == []


def test_bidding_rules_on_assignment(bank, household) -> None:
    fid = household.family_id
    task = bank.create_task(fid, household.parent_id, "Hoover", 30)
    plain = bank.create_assignment(fid, household.parent_id, task.id)
    bound = bank.create_assignment(fid, household.parent_id, task.id, household.ava, bidding_enabled=True)

    with pytest.raises(ValidationError):
        bank.bidding.compete(fid, plain.id, household.ava, 10)
    with pytest.raises(AuthorizationError):
        bank.bidding.compete(fid, bound.id, household.ben, 10)

    bank.set_task_active(fid, household.parent_id, task.id, False)
    with pytest.raises(ValidationError):
        bank.bidding.compete(fid, bound.id, household.ava, 10)


def test_assignments_are_family_scoped(bank, household, showdown) -> None:
    other = bank.create_family("Other")
    stranger = bank.add_child(other.id, "Zed")

    with pytest.raises(NotFoundError):
        bank.bidding.compete(other.id, showdown.id, stranger.id, 10)
    with pytest.raises(NotFoundError):
        bank.bidding.compete(household.family_id, showdown.id, stranger.id, 10)
    with pytest.raises(NotFoundError):
        bank.bidding.get_champion(other.id, showdown.id)


def test_successful_bid_publishes_assignment_update(bank, household, showdown) -> None:
    bank.bidding.compete(household.family_id, showdown.id, household.ava, 45)
    bank.bidding.compete(household.family_id, showdown.id, household.ben, 44)

    updates = bank.notifications.history(kind=EventKind.ASSIGNMENT_UPDATED)
    assert [event.state["championChildId"] for event in updates] == [household.ava, household.ben]
    assert updates[-1].state["previousChampionChildId"] == household.ava
    assert updates[-1].state["bidVersion"] == 2


def test_simultaneous_equal_bids_crown_one_champion(tmp_path) -> None:
    bank = FamilyBank(f"sqlite:///{tmp_path / 'showdown.db'}", retry_attempts=10)
    try:
        family = bank.create_family("Race")
        parent = bank.add_parent(family.id, "Dad")
        children = [bank.add_child(family.id, name) for name in ("Ava", "Ben", "Cal", "Dot")]
        task = bank.create_task(family.id, parent.id, "Wash the car", 50)
        assignment = bank.create_assignment(family.id, parent.id, task.id, bidding_enabled=True)

        barrier = threading.Barrier(len(children))
        outcomes = []

        def bid(child_id: str) -> None:
            barrier.wait()
            try:
                outcomes.append(bank.bidding.compete(family.id, assignment.id, child_id, 30))
            except ValidationError as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=bid, args=(child.id,)) for child in children]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(type(outcome).__name__ for outcome in outcomes) == [
            "Bid",
            "ValidationError",
            "ValidationError",
            "ValidationError",
        ]
        bids = bank.bidding.list_bids(family.id, assignment.id)
        assert len(bids) == 1
        assert bank.bidding.get_champion(family.id, assignment.id).id == bids[0].id
    finally:
        bank.close()
