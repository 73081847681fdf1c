"""Persistence and SQLModel definitions for ChoreBlimey."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, Optional, Type, TypeVar

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint, event, update
from sqlalchemy.engine import Engine
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Session, SQLModel, create_engine, select

from .models import CompletionStatus, StarPurchaseStatus, utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset on write, so values are normalised to UTC going
    in and tagged as UTC coming out. Naive input is taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _timestamp(*, nullable: bool = False, index: bool = False) -> Column:
    return Column(UTCDateTime(), nullable=nullable, index=index)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------


class Family(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = ""
    streak_protection_days: int = 0
    bonus_enabled: bool = False
    bonus_days: int = 7
    bonus_money_pence: int = 0
    bonus_stars: int = 0
    bonus_type: str = "both"  # money|stars|both
    buy_stars_enabled: bool = True
    star_conversion_rate_pence: Optional[int] = None  # None falls back to the configured default
    perfect_week_bonus_enabled: bool = False
    perfect_week_bonus_money_pence: int = 0
    perfect_week_bonus_stars: int = 0
    perfect_week_bonus_type: str = "both"
    monthly_bonus_enabled: bool = False
    monthly_bonus_money_pence: int = 0
    monthly_bonus_stars: int = 0
    monthly_bonus_type: str = "both"
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Child(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    nickname: str
    paused: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Chore(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    title: str
    description: Optional[str] = None
    frequency: str = "daily"  # daily|weekly|once
    base_reward_pence: int = 0
    stars_override: Optional[int] = None
    min_bid_pence: Optional[int] = None
    max_bid_pence: Optional[int] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Assignment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    chore_id: int = Field(index=True)
    child_id: Optional[int] = None  # None leaves the chore open to any child
    bidding_enabled: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Bid(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    assignment_id: int = Field(index=True)
    child_id: int
    amount_pence: int
    disrupt_target_child_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class Completion(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    assignment_id: int = Field(index=True)
    child_id: int = Field(index=True)
    status: str = Field(default=CompletionStatus.PENDING.value, index=True)
    bid_amount_pence: Optional[int] = None
    proof_url: Optional[str] = None
    note: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    approved_by: Optional[int] = None
    rejected_by: Optional[int] = None
    processed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))


class Streak(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "child_id", "chore_id", name="uq_streak_child_chore"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    child_id: int
    chore_id: int
    current: int = 0
    best: int = 0
    last_increment_date: Optional[date] = None
    is_disrupted: bool = False


class Wallet(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("family_id", "child_id", name="uq_wallet_child"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    child_id: int
    balance_pence: int = 0
    balance_stars: int = 0
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class LedgerTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_id: int = Field(index=True)
    family_id: int = Field(index=True)
    type: str  # credit|debit
    amount_pence: int = 0
    stars_delta: int = 0
    source: str
    meta_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(index=True))


class StarPurchase(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    child_id: int
    amount_pence: int
    stars_requested: int
    conversion_rate_pence: int
    status: str = Field(default=StarPurchaseStatus.PENDING.value, index=True)
    approved_by: Optional[int] = None
    rejected_by: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    processed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))


class RivalryEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(index=True)
    actor_child_id: int
    target_child_id: Optional[int] = None
    type: str  # underbid|rivalry_win
    amount_pence: int = 0
    meta_json: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class BonusAward(SQLModel, table=True):
    """One row per paid milestone; the unique key refuses a second payout."""

    __table_args__ = (
        UniqueConstraint("wallet_id", "kind", "milestone", "period_key", name="uq_bonus_award_milestone"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    wallet_id: int = Field(index=True)
    kind: str
    milestone: int = 0
    period_key: str = ""
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


# ---------------------------------------------------------------------------
# Engine & sessions
# ---------------------------------------------------------------------------
def _serialize_sqlite_writes(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front
    # so status checks and the writes they guard see the same snapshot.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection) -> None:  # pragma: no cover - driver hook
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(database_url: str, *, echo: bool = False) -> Engine:
    connect_args: Dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, echo=echo, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_writes(engine)
    return engine


ModelT = TypeVar("ModelT", bound=SQLModel)


class Store:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, *, create: bool = True) -> "Store":
        store = cls(create_store_engine(database_url))
        if create:
            store.create_all()
        return store

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        SQLModel.metadata.drop_all(self.engine)

    @contextmanager
    def write_session(self) -> Iterator[Session]:
        """One atomic unit: commit on success, roll back on any exception."""

        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read_session(self) -> Iterator[Session]:
        """Read-only unit; closing detaches loaded rows with their values intact."""

        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        finally:
            session.close()


def get_in_family(
    session: Session,
    model: Type[ModelT],
    ident: int,
    family_id: int,
    *,
    for_update: bool = False,
) -> Optional[ModelT]:
    """Load a family-scoped row, optionally locking it for the current transaction."""

    query = select(model).where(model.id == ident).where(model.family_id == family_id)
    if for_update:
        query = query.with_for_update()
    return session.exec(query).first()


def compare_and_set_status(
    session: Session,
    model: Type[ModelT],
    ident: int,
    *,
    expected: str,
    values: Dict[str, Any],
) -> bool:
    """Flip ``status`` only if it still equals ``expected``; True when this call won."""

    result = session.execute(
        update(model)
        .where(model.id == ident)
        .where(model.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


__all__ = [
    "Assignment",
    "Bid",
    "BonusAward",
    "Child",
    "Chore",
    "Completion",
    "Family",
    "LedgerTransaction",
    "RivalryEvent",
    "StarPurchase",
    "Store",
    "Streak",
    "Wallet",
    "compare_and_set_status",
    "create_store_engine",
    "get_in_family",
]
