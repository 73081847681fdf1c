"""Milestone bonuses: streak, perfect week and monthly.

Every award is guarded twice. The ledger is scanned for an earlier system
credit carrying the same metadata key, and a :class:`BonusAward` row with a
unique ``(wallet, kind, milestone, period)`` key is claimed inside a savepoint
before any money moves. Either guard refusing means nothing is paid.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import DEFAULT_BONUS_LOOKBACK_DAYS, MONTHLY_MILESTONES
from .ledger import Ledger
from .models import (
    BonusDecision,
    BonusPayout,
    CompletionStatus,
    FamilyBonusConfig,
    Frequency,
    StreakStats,
    TransactionSource,
    utcnow,
)
from .persistence import Assignment, BonusAward, Chore, Completion, LedgerTransaction, Wallet


class BonusKind(str, Enum):
    STREAK = "streak_bonus"
    PERFECT_WEEK = "perfect_week_bonus"
    MONTHLY = "monthly_bonus"


PERIODIC_KINDS = (BonusKind.PERFECT_WEEK, BonusKind.MONTHLY)

# Metadata field that identifies which milestone a bonus credit paid for.
_MILESTONE_META_KEY = {
    BonusKind.STREAK: "streakLength",
    BonusKind.PERFECT_WEEK: "weekStart",
    BonusKind.MONTHLY: "milestoneCompletions",
}


def week_to_check(today: date) -> Optional[date]:
    """Monday of the week a perfect-week check should look at, if any.

    Sundays look at the week ending today, Mondays at the week that just
    ended; mid-week checks are skipped because the week cannot be perfect yet.
    """

    weekday = today.weekday()
    if weekday == 6:
        return today - timedelta(days=6)
    if weekday == 0:
        return today - timedelta(days=7)
    return None


def month_bounds(today: date) -> tuple[datetime, datetime]:
    start = datetime.combine(today.replace(day=1), time.min, tzinfo=timezone.utc)
    if today.month == 12:
        following = date(today.year + 1, 1, 1)
    else:
        following = date(today.year, today.month + 1, 1)
    return start, datetime.combine(following, time.min, tzinfo=timezone.utc)


@dataclass(slots=True)
class BonusOutcome:
    """A decision together with the ledger entries it produced."""

    child_id: int
    decision: BonusDecision
    transactions: List[LedgerTransaction] = field(default_factory=list)

    @property
    def awarded(self) -> bool:
        return bool(self.transactions)


class BonusAwarder:
    """Evaluate and pay milestone bonuses within the caller's transaction."""

    def __init__(
        self,
        session: Session,
        ledger: Ledger,
        *,
        now: Callable[[], datetime] = utcnow,
        lookback_days: int = DEFAULT_BONUS_LOOKBACK_DAYS,
    ) -> None:
        self._session = session
        self._ledger = ledger
        self._now = now
        self._lookback = timedelta(days=lookback_days)

    # ------------------------------------------------------------------
    # Streak milestones
    # ------------------------------------------------------------------
    def evaluate_streak_bonus(
        self,
        wallet: Wallet,
        config: FamilyBonusConfig,
        stats: StreakStats,
    ) -> BonusDecision:
        kind = BonusKind.STREAK.value
        if not config.bonus_enabled:
            return BonusDecision.refuse(kind, "streak bonus disabled")
        length = stats.current_streak
        interval = config.bonus_days
        if interval <= 0 or length < interval or length % interval != 0:
            return BonusDecision.refuse(kind, "not a milestone day")
        already = self._ledger.find_by_meta(
            wallet.id,
            since=self._now() - self._lookback,
            meta_type=kind,
            streakLength=length,
        )
        if already:
            return BonusDecision.refuse(kind, f"already awarded for {length} days")
        period_key = stats.run_started_on.isoformat() if stats.run_started_on else ""
        return self._decide(
            kind,
            config.streak_bonus,
            milestone=length,
            period_key=period_key,
            reason=f"{length} day streak!",
        )

    # ------------------------------------------------------------------
    # Periodic milestones
    # ------------------------------------------------------------------
    def evaluate_perfect_week(
        self,
        wallet: Wallet,
        config: FamilyBonusConfig,
        child_id: int,
        today: date,
    ) -> BonusDecision:
        kind = BonusKind.PERFECT_WEEK.value
        if config.perfect_week_bonus is None:
            return BonusDecision.refuse(kind, "perfect week bonus disabled")
        week_start = week_to_check(today)
        if week_start is None:
            return BonusDecision.refuse(kind, "only checked on Sunday or Monday")
        start = datetime.combine(week_start, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=7)

        assignment_ids = self._session.exec(
            select(Assignment.id)
            .join(Chore, Chore.id == Assignment.chore_id)
            .where(Assignment.family_id == config.family_id)
            .where(Assignment.child_id == child_id)
            .where(Assignment.created_at < end)
            .where(Chore.frequency == Frequency.DAILY.value)
            .where(Chore.active == True)  # noqa: E712
        ).all()
        if not assignment_ids:
            return BonusDecision.refuse(kind, "no daily chores assigned")
        completed = set(
            self._session.exec(
                select(Completion.assignment_id)
                .where(Completion.child_id == child_id)
                .where(Completion.assignment_id.in_(assignment_ids))
                .where(Completion.status == CompletionStatus.APPROVED.value)
                .where(Completion.timestamp >= start)
                .where(Completion.timestamp < end)
            ).all()
        )
        if not set(assignment_ids) <= completed:
            return BonusDecision.refuse(kind, "not every daily chore was completed")

        period_key = week_start.isoformat()
        if self._ledger.find_by_meta(wallet.id, since=start, meta_type=kind, weekStart=period_key):
            return BonusDecision.refuse(kind, "already awarded this week")
        return self._decide(
            kind,
            config.perfect_week_bonus,
            milestone=0,
            period_key=period_key,
            reason="Perfect week! All chores completed!",
        )

    def evaluate_monthly(
        self,
        wallet: Wallet,
        config: FamilyBonusConfig,
        child_id: int,
        today: date,
    ) -> BonusDecision:
        kind = BonusKind.MONTHLY.value
        if config.monthly_bonus is None:
            return BonusDecision.refuse(kind, "monthly bonus disabled")
        start, end = month_bounds(today)
        count = self._session.exec(
            select(func.count())
            .select_from(Completion)
            .where(Completion.family_id == config.family_id)
            .where(Completion.child_id == child_id)
            .where(Completion.status == CompletionStatus.APPROVED.value)
            .where(Completion.timestamp >= start)
            .where(Completion.timestamp < end)
        ).one()
        if count not in MONTHLY_MILESTONES:
            return BonusDecision.refuse(kind, f"{count} completions is not a milestone")
        if self._ledger.find_by_meta(
            wallet.id, since=start, until=end, meta_type=kind, milestoneCompletions=count
        ):
            return BonusDecision.refuse(kind, f"already awarded for {count} completions")
        return self._decide(
            kind,
            config.monthly_bonus,
            milestone=count,
            period_key=start.strftime("%Y-%m"),
            reason=f"{count} chores this month!",
        )

    def evaluate_periodic(
        self,
        kind: BonusKind,
        wallet: Wallet,
        config: FamilyBonusConfig,
        child_id: int,
        today: date,
    ) -> BonusDecision:
        if kind is BonusKind.PERFECT_WEEK:
            return self.evaluate_perfect_week(wallet, config, child_id, today)
        if kind is BonusKind.MONTHLY:
            return self.evaluate_monthly(wallet, config, child_id, today)
        raise ValueError(f"{kind.value} is not a periodic bonus")

    def sweep(
        self,
        config: FamilyBonusConfig,
        child_ids: Sequence[int],
        today: date,
        *,
        kinds: Sequence[BonusKind] = PERIODIC_KINDS,
        dry_run: bool = False,
    ) -> List[BonusOutcome]:
        """Check every child for every periodic kind, paying unless ``dry_run``."""

        outcomes: List[BonusOutcome] = []
        for child_id in child_ids:
            wallet = self._ledger.ensure_wallet(config.family_id, child_id)
            for kind in kinds:
                decision = self.evaluate_periodic(kind, wallet, config, child_id, today)
                outcome = BonusOutcome(child_id=child_id, decision=decision)
                if decision.should_award and not dry_run:
                    outcome.transactions = self.award(wallet, decision)
                outcomes.append(outcome)
        return outcomes

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------
    def award(self, wallet: Wallet, decision: BonusDecision, **meta) -> List[LedgerTransaction]:
        """Pay an authorized decision; returns one entry per non-zero component."""

        if not decision.should_award:
            return []
        if not self._claim(wallet, decision):
            decision.should_award = False
            decision.reason = "already awarded"
            return []
        kind = BonusKind(decision.kind)
        base_meta = {
            "type": kind.value,
            _MILESTONE_META_KEY[kind]: decision.period_key if kind is BonusKind.PERFECT_WEEK else decision.milestone,
            "reason": decision.reason,
            **meta,
        }
        entries: List[LedgerTransaction] = []
        if decision.money_pence:
            entries.append(
                self._ledger.credit(
                    wallet,
                    decision.money_pence,
                    source=TransactionSource.SYSTEM,
                    meta={**base_meta, "component": "money"},
                )
            )
        if decision.stars:
            entries.append(
                self._ledger.credit(
                    wallet,
                    0,
                    decision.stars,
                    source=TransactionSource.SYSTEM,
                    meta={**base_meta, "component": "stars"},
                )
            )
        return entries

    def _claim(self, wallet: Wallet, decision: BonusDecision) -> bool:
        try:
            with self._session.begin_nested():
                self._session.add(
                    BonusAward(
                        wallet_id=wallet.id,
                        kind=decision.kind,
                        milestone=decision.milestone,
                        period_key=decision.period_key,
                        created_at=self._now(),
                    )
                )
        except IntegrityError:
            return False
        return True

    @staticmethod
    def _decide(
        kind: str,
        payout: BonusPayout,
        *,
        milestone: int,
        period_key: str,
        reason: str,
    ) -> BonusDecision:
        money_pence, stars = payout.components
        if money_pence <= 0 and stars <= 0:
            return BonusDecision.refuse(kind, "bonus pays nothing")
        return BonusDecision(
            kind=kind,
            should_award=True,
            money_pence=max(0, money_pence),
            stars=max(0, stars),
            milestone=milestone,
            period_key=period_key,
            reason=reason,
        )


__all__ = [
    "BonusAwarder",
    "BonusKind",
    "BonusOutcome",
    "PERIODIC_KINDS",
    "month_bounds",
    "week_to_check",
]
