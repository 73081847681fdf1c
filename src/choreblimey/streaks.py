"""Consecutive-day streak tracking.

Two views of the same history live here. :func:`calculate_streak_stats` is a
pure function over a child's submission timestamps and answers "how long is
the current run, and is it still alive?". :func:`record_chore_submission`
maintains the incremental per-chore ``Streak`` row on every submission.

The family's ``protection_days`` only ever decides whether a run is still
alive. It never counts a missed day towards the run's length: a child who
submits on day 1 and day 4 with two protection days has a streak of 1.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from sqlmodel import Session, select

from .models import CompletionStatus, StreakStats
from .persistence import Completion, Streak

ONE_DAY = timedelta(days=1)

# (minimum current streak, informational bonus percent), highest first
STREAK_BONUS_TIERS = ((7, 20), (5, 15), (3, 10))

COUNTED_STATUSES = (CompletionStatus.PENDING.value, CompletionStatus.APPROVED.value)


def day_of(moment: datetime) -> date:
    """Calendar day in UTC; naive datetimes are taken to be UTC."""

    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()


def unique_days(timestamps: Iterable[datetime]) -> List[date]:
    """Collapse timestamps to distinct UTC days, most recent first."""

    return sorted({day_of(moment) for moment in timestamps}, reverse=True)


def current_run(days: Sequence[date], *, today: date, protection_days: int = 0) -> List[date]:
    """Return the days of the live run, most recent first (empty if broken).

    ``days`` must be unique and sorted newest first.
    """

    days = [day for day in days if day <= today]
    if not days:
        return []
    if (today - days[0]).days > protection_days:
        return []
    run = [days[0]]
    for day in days[1:]:
        if run[-1] - day != ONE_DAY:
            break
        run.append(day)
    return run


def best_run_length(days: Sequence[date]) -> int:
    if not days:
        return 0
    best = length = 1
    for newer, older in zip(days, days[1:]):
        if newer - older == ONE_DAY:
            length += 1
            best = max(best, length)
        else:
            length = 1
    return best


def streak_bonus_percent(current_streak: int) -> int:
    """Display-only boost shown next to a streak; never paid out."""

    for threshold, percent in STREAK_BONUS_TIERS:
        if current_streak >= threshold:
            return percent
    return 0


def calculate_streak_stats(
    timestamps: Iterable[datetime],
    *,
    today: date,
    protection_days: int = 0,
) -> StreakStats:
    days = unique_days(timestamps)
    if not days:
        return StreakStats()
    run = current_run(days, today=today, protection_days=protection_days)
    current = len(run)
    return StreakStats(
        current_streak=current,
        best_streak=max(best_run_length(days), current),
        total_completed_days=len(days),
        streak_bonus_percent=streak_bonus_percent(current),
        run_started_on=run[-1] if run else None,
    )


class StreakCalculator:
    """Load a child's submissions and derive their streak."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def submission_times(self, family_id: int, child_id: int) -> Sequence[datetime]:
        # Pending counts: a slow parent review must not cost a streak day.
        return self._session.exec(
            select(Completion.timestamp)
            .where(Completion.family_id == family_id)
            .where(Completion.child_id == child_id)
            .where(Completion.status.in_(COUNTED_STATUSES))
        ).all()

    def stats_for_child(
        self,
        family_id: int,
        child_id: int,
        *,
        today: date,
        protection_days: int = 0,
    ) -> StreakStats:
        return calculate_streak_stats(
            self.submission_times(family_id, child_id),
            today=today,
            protection_days=protection_days,
        )

    def chore_streaks(self, family_id: int, child_id: int) -> Sequence[Streak]:
        return self._session.exec(
            select(Streak)
            .where(Streak.family_id == family_id)
            .where(Streak.child_id == child_id)
            .order_by(Streak.chore_id)
        ).all()


def record_chore_submission(
    session: Session,
    *,
    family_id: int,
    child_id: int,
    chore_id: int,
    submitted_at: datetime,
) -> Streak:
    """Advance the ``(child, chore)`` streak for a submission made at ``submitted_at``."""

    submitted_on = day_of(submitted_at)
    streak: Optional[Streak] = session.exec(
        select(Streak)
        .where(Streak.family_id == family_id)
        .where(Streak.child_id == child_id)
        .where(Streak.chore_id == chore_id)
    ).first()
    if streak is None:
        streak = Streak(
            family_id=family_id,
            child_id=child_id,
            chore_id=chore_id,
            current=1,
            best=1,
            last_increment_date=submitted_on,
            is_disrupted=False,
        )
        session.add(streak)
        session.flush()
        return streak

    last = streak.last_increment_date
    if last == submitted_on:
        return streak
    if last is not None and submitted_on - last == ONE_DAY:
        streak.current += 1
        streak.best = max(streak.best, streak.current)
        streak.is_disrupted = False
    else:
        streak.current = 1
        streak.best = max(1, streak.best)
        streak.is_disrupted = True
    streak.last_increment_date = submitted_on
    session.add(streak)
    session.flush()
    return streak


__all__ = [
    "STREAK_BONUS_TIERS",
    "StreakCalculator",
    "best_run_length",
    "calculate_streak_stats",
    "current_run",
    "day_of",
    "record_chore_submission",
    "streak_bonus_percent",
    "unique_days",
]
