from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest

from choreblimey.config import Settings
from choreblimey.models import Caller, Role
from choreblimey.persistence import Store
from choreblimey.service import ChoreBlimey

# A Monday, so week boundaries in tests are easy to reason about.
START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class Clock:
    """Mutable stand-in for ``utcnow`` injected into the services."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@dataclass
class Household:
    family_id: int
    parent: Caller
    children: Dict[str, int] = field(default_factory=dict)

    def child(self, name: str) -> Caller:
        return Caller(family_id=self.family_id, role=Role.CHILD.value, child_id=self.children[name])

    def relative(self) -> Caller:
        return Caller(family_id=self.family_id, role=Role.RELATIVE.value, user_id=900)


@pytest.fixture()
def clock() -> Clock:
    return Clock(START)


@pytest.fixture()
def store(tmp_path):
    store = Store.from_url(f"sqlite:///{tmp_path / 'choreblimey.db'}")
    yield store
    store.engine.dispose()


@pytest.fixture()
def settings() -> Settings:
    return Settings(database_url="sqlite://", default_star_rate_pence=10, bonus_lookback_days=7)


@pytest.fixture()
def bank(store, clock, settings) -> ChoreBlimey:
    return ChoreBlimey(store, settings=settings, now=clock)


@pytest.fixture()
def make_household(bank):
    def _make(*names: str, **family_settings) -> Household:
        family = bank.create_family("Fisher", **family_settings)
        household = Household(
            family_id=family.id,
            parent=Caller(family_id=family.id, role=Role.PARENT_ADMIN.value, user_id=1),
        )
        for name in names or ("ann",):
            household.children[name] = bank.add_child(family.id, name.title()).id
        return household

    return _make
