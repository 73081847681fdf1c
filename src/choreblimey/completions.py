"""Completion state machine: ``pending`` to ``approved`` or ``rejected``, once."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session, desc, select

from .bidding import BiddingArbiter
from .bonuses import BonusAwarder
from .config import COMPLETION_LIST_LIMIT, DEFAULT_BONUS_LOOKBACK_DAYS
from .exceptions import AlreadyProcessedError, ForbiddenError, NotFoundError
from .ledger import Ledger
from .models import (
    BonusDecision,
    CompletionStatus,
    FamilyBonusConfig,
    RewardQuote,
    RivalryEventType,
    StreakStats,
    TransactionSource,
    utcnow,
)
from .money import stars_for_reward
from .persistence import (
    Assignment,
    Child,
    Chore,
    Completion,
    LedgerTransaction,
    Streak,
    Wallet,
    compare_and_set_status,
    get_in_family,
)
from .streaks import StreakCalculator, day_of, record_chore_submission


@dataclass(slots=True)
class SubmissionResult:
    completion: Completion
    chore: Chore
    streak: Streak


@dataclass(slots=True)
class ApprovalResult:
    completion: Completion
    chore: Chore
    wallet: Wallet
    reward: RewardQuote
    streak: StreakStats
    bonus: BonusDecision
    reward_transaction: Optional[LedgerTransaction] = None
    bonus_transactions: List[LedgerTransaction] = field(default_factory=list)


@dataclass(slots=True)
class RejectionResult:
    completion: Completion
    chore: Chore


class CompletionService:
    """Submit, approve and reject completions inside one open transaction.

    Every method expects to run in a single write transaction; any exception
    raised here, including a failed ledger credit, must roll the whole unit
    back so a completion never ends ``approved`` without its reward.
    """

    def __init__(
        self,
        session: Session,
        *,
        now: Callable[[], datetime] = utcnow,
        bonus_lookback_days: int = DEFAULT_BONUS_LOOKBACK_DAYS,
    ) -> None:
        self._session = session
        self._now = now
        self.ledger = Ledger(session, now=now)
        self.arbiter = BiddingArbiter(session, now=now)
        self.awarder = BonusAwarder(session, self.ledger, now=now, lookback_days=bonus_lookback_days)
        self.streaks = StreakCalculator(session)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------
    def submit(
        self,
        family_id: int,
        assignment_id: int,
        child_id: int,
        *,
        proof_url: Optional[str] = None,
        note: Optional[str] = None,
    ) -> SubmissionResult:
        # Locking the assignment serializes the champion check with the insert.
        assignment = get_in_family(self._session, Assignment, assignment_id, family_id, for_update=True)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} does not exist.")
        chore = self._chore_for(assignment)
        if not chore.active:
            raise ForbiddenError(f"Chore '{chore.title}' is no longer active.")
        if get_in_family(self._session, Child, child_id, family_id) is None:
            raise NotFoundError(f"Child {child_id} does not exist.")
        if assignment.child_id is not None and assignment.child_id != child_id:
            raise ForbiddenError("This chore is not assigned to you.")

        champion = self.arbiter.gate_submission(assignment, child_id)
        if champion is not None and self.arbiter.bidding_closed(assignment.id, chore):
            raise AlreadyProcessedError("This contested chore already has a completion.")

        submitted_at = self._now()
        completion = Completion(
            family_id=family_id,
            assignment_id=assignment.id,
            child_id=child_id,
            status=CompletionStatus.PENDING.value,
            bid_amount_pence=champion.amount_pence if champion is not None else None,
            proof_url=proof_url or None,
            note=note or None,
            timestamp=submitted_at,
        )
        self._session.add(completion)
        streak = record_chore_submission(
            self._session,
            family_id=family_id,
            child_id=child_id,
            chore_id=chore.id,
            submitted_at=submitted_at,
        )
        self._session.flush()
        return SubmissionResult(completion=completion, chore=chore, streak=streak)

    # ------------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------------
    def approve(
        self,
        config: FamilyBonusConfig,
        completion_id: int,
        approver_id: Optional[int] = None,
    ) -> ApprovalResult:
        completion = self._pending(config.family_id, completion_id)
        assignment = get_in_family(self._session, Assignment, completion.assignment_id, config.family_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {completion.assignment_id} does not exist.")
        chore = self._chore_for(assignment)

        self._flip(
            completion,
            {
                "status": CompletionStatus.APPROVED.value,
                "approved_by": approver_id,
                "processed_at": self._now(),
            },
        )

        reward = self.quote_reward(assignment, chore, completion.child_id)
        wallet = self.ledger.ensure_wallet(config.family_id, completion.child_id)
        reward_entry = None
        if reward.reward_pence or reward.stars:
            reward_entry = self.ledger.credit(
                wallet,
                reward.reward_pence,
                reward.stars,
                source=TransactionSource.SYSTEM,
                meta={
                    "completionId": completion.id,
                    "choreId": chore.id,
                    "rivalryBonus": reward.rivalry_bonus,
                    "doubledStars": reward.rivalry_bonus,
                    "baseRewardPence": reward.base_reward_pence,
                    "bidAmountPence": reward.bid_amount_pence,
                },
            )
        if reward.rivalry_bonus:
            self.arbiter.record_event(
                config.family_id,
                RivalryEventType.RIVALRY_WIN,
                actor_child_id=completion.child_id,
                amount_pence=reward.reward_pence,
                meta={"assignmentId": assignment.id, "completionId": completion.id, "doubledStars": True},
            )

        # The streak as it stood when the child submitted, submission day included.
        stats = self.streaks.stats_for_child(
            config.family_id,
            completion.child_id,
            today=day_of(completion.timestamp),
            protection_days=config.protection_days,
        )
        decision = self.awarder.evaluate_streak_bonus(wallet, config, stats)
        bonus_entries = self.awarder.award(wallet, decision, completionId=completion.id)
        return ApprovalResult(
            completion=completion,
            chore=chore,
            wallet=wallet,
            reward=reward,
            streak=stats,
            bonus=decision,
            reward_transaction=reward_entry,
            bonus_transactions=bonus_entries,
        )

    def quote_reward(self, assignment: Assignment, chore: Chore, child_id: int) -> RewardQuote:
        """Base reward, or the winning bid with doubled stars for the champion."""

        winning = self.arbiter.winning_bid(assignment, child_id)
        if winning is None:
            return RewardQuote(
                reward_pence=chore.base_reward_pence,
                stars=stars_for_reward(chore.base_reward_pence, chore.stars_override),
                base_reward_pence=chore.base_reward_pence,
            )
        amount = winning.amount_pence
        return RewardQuote(
            reward_pence=amount,
            stars=stars_for_reward(amount, chore.stars_override) * 2,
            base_reward_pence=chore.base_reward_pence,
            rivalry_bonus=True,
            bid_amount_pence=amount,
        )

    # ------------------------------------------------------------------
    # Reject
    # ------------------------------------------------------------------
    def reject(
        self,
        family_id: int,
        completion_id: int,
        *,
        rejected_by: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RejectionResult:
        completion = self._pending(family_id, completion_id)
        assignment = get_in_family(self._session, Assignment, completion.assignment_id, family_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {completion.assignment_id} does not exist.")
        chore = self._chore_for(assignment)
        # The submission's streak increment is kept.
        self._flip(
            completion,
            {
                "status": CompletionStatus.REJECTED.value,
                "rejected_by": rejected_by,
                "processed_at": self._now(),
                "note": f"Rejected: {reason}" if reason else completion.note,
            },
        )
        return RejectionResult(completion=completion, chore=chore)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list(
        self,
        family_id: int,
        *,
        status: CompletionStatus | str | None = None,
        child_id: Optional[int] = None,
        limit: int = COMPLETION_LIST_LIMIT,
    ) -> Sequence[Completion]:
        query = select(Completion).where(Completion.family_id == family_id)
        if status is not None:
            query = query.where(Completion.status == CompletionStatus(status).value)
        if child_id is not None:
            query = query.where(Completion.child_id == child_id)
        query = query.order_by(desc(Completion.timestamp), desc(Completion.id)).limit(limit)
        return self._session.exec(query).all()

    def get(self, family_id: int, completion_id: int) -> Completion:
        completion = get_in_family(self._session, Completion, completion_id, family_id)
        if completion is None:
            raise NotFoundError(f"Completion {completion_id} does not exist.")
        return completion

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _pending(self, family_id: int, completion_id: int) -> Completion:
        completion = get_in_family(self._session, Completion, completion_id, family_id, for_update=True)
        if completion is None:
            raise NotFoundError(f"Completion {completion_id} does not exist.")
        if completion.status != CompletionStatus.PENDING.value:
            raise AlreadyProcessedError(f"Completion {completion_id} has already been {completion.status}.")
        return completion

    def _flip(self, completion: Completion, values: dict) -> None:
        won = compare_and_set_status(
            self._session,
            Completion,
            completion.id,
            expected=CompletionStatus.PENDING.value,
            values=values,
        )
        if not won:
            raise AlreadyProcessedError(f"Completion {completion.id} has already been processed.")
        self._session.refresh(completion)

    def _chore_for(self, assignment: Assignment) -> Chore:
        chore = get_in_family(self._session, Chore, assignment.chore_id, assignment.family_id)
        if chore is None:
            raise NotFoundError(f"Chore {assignment.chore_id} does not exist.")
        return chore


__all__ = ["ApprovalResult", "CompletionService", "RejectionResult", "SubmissionResult"]
