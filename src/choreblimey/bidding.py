"""Sibling rivalry: children underbid each other for the right to do a chore."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from sqlmodel import Session, desc, select

from .config import RIVALRY_FEED_LIMIT
from .exceptions import ChallengeLockedError, ForbiddenError, NoChampionYetError, NotFoundError
from .models import CompletionStatus, Frequency, RivalryEventType, utcnow
from .money import require_pence
from .persistence import Assignment, Bid, Child, Chore, Completion, RivalryEvent, get_in_family
from .streaks import day_of


def select_champion(bids: Sequence[Bid]) -> Optional[Bid]:
    """Lowest amount wins; at equal price the earliest bid keeps the lock."""

    if not bids:
        return None
    return min(bids, key=lambda bid: (bid.amount_pence, bid.created_at, bid.id or 0))


def bid_bounds(chore: Chore) -> tuple[int, int]:
    """Allowed bid range: explicit chore limits, else half to one and a half times base."""

    base = chore.base_reward_pence
    low = chore.min_bid_pence if chore.min_bid_pence is not None else base // 2
    high = chore.max_bid_pence if chore.max_bid_pence is not None else (base * 3) // 2
    return low, high


def clamp_bid(amount_pence: int, chore: Chore) -> int:
    low, high = bid_bounds(chore)
    return max(low, min(high, amount_pence))


def period_start(frequency: str, today: date) -> Optional[datetime]:
    """Start of the chore period containing ``today``; ``None`` for one-off chores."""

    if frequency == Frequency.DAILY.value:
        return datetime.combine(today, time.min, tzinfo=timezone.utc)
    if frequency == Frequency.WEEKLY.value:
        monday = today - timedelta(days=today.weekday())
        return datetime.combine(monday, time.min, tzinfo=timezone.utc)
    return None


class BiddingArbiter:
    """Champion lookups, bid placement and the rivalry feed for one session.

    The champion is always recomputed from the stored bids, never cached, so
    the caller's transaction decides which snapshot of bids is seen.
    """

    def __init__(self, session: Session, *, now: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._now = now

    def bids_for(self, family_id: int, assignment_id: int) -> Sequence[Bid]:
        return self._session.exec(
            select(Bid)
            .where(Bid.family_id == family_id)
            .where(Bid.assignment_id == assignment_id)
            .order_by(Bid.amount_pence, Bid.created_at, Bid.id)
        ).all()

    def current_champion(self, family_id: int, assignment_id: int) -> Optional[Bid]:
        return select_champion(self.bids_for(family_id, assignment_id))

    def gate_submission(self, assignment: Assignment, child_id: int) -> Optional[Bid]:
        """Return the winning bid the child may submit under, or raise."""

        if not assignment.bidding_enabled:
            return None
        champion = self.current_champion(assignment.family_id, assignment.id)
        if champion is None:
            raise NoChampionYetError("Nobody has bid on this chore yet.")
        if champion.child_id != child_id:
            raise ChallengeLockedError(
                "Another child holds the lowest bid on this chore.",
                champion_child_id=champion.child_id,
            )
        return champion

    def winning_bid(self, assignment: Assignment, child_id: int) -> Optional[Bid]:
        """The champion's bid if ``child_id`` currently holds it, else ``None``."""

        if not assignment.bidding_enabled:
            return None
        champion = self.current_champion(assignment.family_id, assignment.id)
        if champion is None or champion.child_id != child_id:
            return None
        return champion

    def bidding_closed(self, assignment_id: int, chore: Chore) -> bool:
        """A pending completion closes the contest; an approved one closes it for the chore's period."""

        pending = self._session.exec(
            select(Completion.id)
            .where(Completion.assignment_id == assignment_id)
            .where(Completion.status == CompletionStatus.PENDING.value)
        ).first()
        if pending is not None:
            return True
        query = (
            select(Completion.id)
            .where(Completion.assignment_id == assignment_id)
            .where(Completion.status == CompletionStatus.APPROVED.value)
        )
        start = period_start(chore.frequency, day_of(self._now()))
        if start is not None:
            query = query.where(Completion.timestamp >= start)
        return self._session.exec(query).first() is not None

    def place_bid(
        self,
        family_id: int,
        assignment_id: int,
        child_id: int,
        amount_pence: int,
        *,
        target_child_id: Optional[int] = None,
    ) -> Bid:
        require_pence(amount_pence)
        assignment = get_in_family(self._session, Assignment, assignment_id, family_id, for_update=True)
        if assignment is None or not assignment.bidding_enabled:
            raise NotFoundError("Assignment not found or bidding not enabled.")
        chore = get_in_family(self._session, Chore, assignment.chore_id, family_id)
        if chore is None:
            raise NotFoundError(f"Chore {assignment.chore_id} does not exist.")
        if get_in_family(self._session, Child, child_id, family_id) is None:
            raise NotFoundError(f"Child {child_id} does not exist.")
        if assignment.child_id is not None and assignment.child_id != child_id:
            raise ForbiddenError("This chore is not assigned to you.")
        if target_child_id is not None and get_in_family(self._session, Child, target_child_id, family_id) is None:
            raise NotFoundError(f"Child {target_child_id} does not exist.")
        if self.bidding_closed(assignment.id, chore):
            raise ForbiddenError("Bidding is closed while a completion is pending or already approved.")

        amount = clamp_bid(amount_pence, chore)
        bid = Bid(
            family_id=family_id,
            assignment_id=assignment.id,
            child_id=child_id,
            amount_pence=amount,
            disrupt_target_child_id=target_child_id,
            created_at=self._now(),
        )
        self._session.add(bid)
        self.record_event(
            family_id,
            RivalryEventType.UNDERBID,
            actor_child_id=child_id,
            target_child_id=target_child_id,
            amount_pence=amount,
            meta={"assignmentId": assignment.id, "requestedPence": amount_pence},
        )
        self._session.flush()
        return bid

    def record_event(
        self,
        family_id: int,
        event_type: RivalryEventType,
        *,
        actor_child_id: int,
        target_child_id: Optional[int] = None,
        amount_pence: int = 0,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> RivalryEvent:
        event = RivalryEvent(
            family_id=family_id,
            actor_child_id=actor_child_id,
            target_child_id=target_child_id,
            type=event_type.value,
            amount_pence=amount_pence,
            meta_json=dict(meta or {}),
            created_at=self._now(),
        )
        self._session.add(event)
        return event

    def feed(self, family_id: int, *, limit: int = RIVALRY_FEED_LIMIT) -> Sequence[RivalryEvent]:
        return self._session.exec(
            select(RivalryEvent)
            .where(RivalryEvent.family_id == family_id)
            .order_by(desc(RivalryEvent.created_at), desc(RivalryEvent.id))
            .limit(limit)
        ).all()


__all__ = ["BiddingArbiter", "bid_bounds", "clamp_bid", "period_start", "select_champion"]
