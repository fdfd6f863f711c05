from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import pytest

from familybank.service import FamilyBank


@dataclass
class Household:
    family_id: str
    parent_id: str
    ava: str
    ben: str


@pytest.fixture()
def bank(tmp_path) -> Iterator[FamilyBank]:
    service = FamilyBank(f"sqlite:///{tmp_path / 'familybank.db'}", log_path=tmp_path / "familybank.log")
    try:
        yield service
    finally:
        service.close()


@pytest.fixture()
def household(bank: FamilyBank) -> Household:
    family = bank.create_family("Mason")
    parent = bank.add_parent(family.id, "Dad")
    ava = bank.add_child(family.id, "Ava")
    ben = bank.add_child(family.id, "Ben")
    return Household(family_id=family.id, parent_id=parent.id, ava=ava.id, ben=ben.id)
