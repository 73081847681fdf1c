"""Convert ChoreBlimey records to JSON friendly dictionaries."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Dict, Optional, Sequence, TYPE_CHECKING

from .ledger import wallet_snapshot
from .models import BonusDecision, RewardQuote, StreakStats
from .persistence import (
    Bid,
    Chore,
    Completion,
    LedgerTransaction,
    RivalryEvent,
    StarPurchase,
    Streak,
    Wallet,
)

if TYPE_CHECKING:  # pragma: no cover
    from .completions import ApprovalResult


def _iso(moment: Optional[datetime | date]) -> Optional[str]:
    return moment.isoformat() if moment is not None else None


class ApiExporter:
    """Shapes shared by the web adapter, domain events and log entries."""

    def completion(self, completion: Completion) -> Dict[str, object]:
        return {
            "id": completion.id,
            "assignmentId": completion.assignment_id,
            "childId": completion.child_id,
            "status": completion.status,
            "bidAmountPence": completion.bid_amount_pence,
            "proofUrl": completion.proof_url,
            "note": completion.note,
            "timestamp": _iso(completion.timestamp),
            "approvedBy": completion.approved_by,
            "rejectedBy": completion.rejected_by,
            "processedAt": _iso(completion.processed_at),
        }

    def chore(self, chore: Chore) -> Dict[str, object]:
        return {
            "id": chore.id,
            "title": chore.title,
            "frequency": chore.frequency,
            "baseRewardPence": chore.base_reward_pence,
            "starsOverride": chore.stars_override,
            "active": chore.active,
        }

    def wallet(self, wallet: Wallet, transactions: Sequence[LedgerTransaction] = ()) -> Dict[str, object]:
        payload: Dict[str, object] = dict(wallet_snapshot(wallet))
        if transactions:
            payload["transactions"] = [self.transaction(entry) for entry in transactions]
        return payload

    def transaction(self, entry: LedgerTransaction) -> Dict[str, object]:
        return {
            "id": entry.id,
            "walletId": entry.wallet_id,
            "type": entry.type,
            "amountPence": entry.amount_pence,
            "starsDelta": entry.stars_delta,
            "source": entry.source,
            "metaJson": dict(entry.meta_json or {}),
            "createdAt": _iso(entry.created_at),
        }

    def bid(self, bid: Bid) -> Dict[str, object]:
        return {
            "id": bid.id,
            "assignmentId": bid.assignment_id,
            "childId": bid.child_id,
            "amountPence": bid.amount_pence,
            "disruptTargetChildId": bid.disrupt_target_child_id,
            "createdAt": _iso(bid.created_at),
        }

    def rivalry_event(self, event: RivalryEvent) -> Dict[str, object]:
        return {
            "id": event.id,
            "type": event.type,
            "actorChildId": event.actor_child_id,
            "targetChildId": event.target_child_id,
            "amountPence": event.amount_pence,
            "createdAt": _iso(event.created_at),
            "metaJson": dict(event.meta_json or {}),
        }

    def star_purchase(self, purchase: StarPurchase) -> Dict[str, object]:
        return {
            "id": purchase.id,
            "childId": purchase.child_id,
            "amountPence": purchase.amount_pence,
            "starsRequested": purchase.stars_requested,
            "conversionRatePence": purchase.conversion_rate_pence,
            "status": purchase.status,
            "approvedBy": purchase.approved_by,
            "rejectedBy": purchase.rejected_by,
            "createdAt": _iso(purchase.created_at),
            "processedAt": _iso(purchase.processed_at),
        }

    def streak_stats(self, stats: StreakStats, chore_streaks: Sequence[Streak] = ()) -> Dict[str, object]:
        return {
            "currentStreak": stats.current_streak,
            "bestStreak": stats.best_streak,
            "totalCompletedDays": stats.total_completed_days,
            "streakBonus": stats.streak_bonus_percent,
            "choreStreaks": [self.chore_streak(streak) for streak in chore_streaks],
        }

    def chore_streak(self, streak: Streak) -> Dict[str, object]:
        return {
            "choreId": streak.chore_id,
            "current": streak.current,
            "best": streak.best,
            "lastIncrementDate": _iso(streak.last_increment_date),
            "isDisrupted": streak.is_disrupted,
        }

    def reward(self, quote: RewardQuote) -> Dict[str, object]:
        return {
            "rewardAmountPence": quote.reward_pence,
            "starsAwarded": quote.stars,
            "baseRewardPence": quote.base_reward_pence,
            "rivalryBonus": quote.rivalry_bonus,
        }

    def bonus(self, decision: BonusDecision) -> Dict[str, object]:
        return {
            "type": decision.kind,
            "awarded": decision.should_award,
            "moneyPence": decision.money_pence if decision.should_award else 0,
            "stars": decision.stars if decision.should_award else 0,
            "milestone": decision.milestone,
            "reason": decision.reason,
        }

    def approval(self, result: "ApprovalResult") -> Dict[str, object]:
        return {
            "completion": self.completion(result.completion),
            "chore": self.chore(result.chore),
            "wallet": self.wallet(result.wallet),
            "reward": self.reward(result.reward),
            "streakLength": result.streak.current_streak,
            "streakBonus": self.bonus(result.bonus),
        }

    def to_json(self, payload: Dict[str, object]) -> str:
        return json.dumps(payload, sort_keys=True)


__all__ = ["ApiExporter"]
