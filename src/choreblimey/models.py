"""Domain value objects shared by the ChoreBlimey core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .money import DEFAULT_STAR_CONVERSION_RATE_PENCE


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp, the convention for every stored datetime."""

    return datetime.now(timezone.utc)


class CompletionStatus(str, Enum):
    """Lifecycle for a submitted chore completion."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StarPurchaseStatus(str, Enum):
    """Lifecycle for a request to convert wallet money into stars."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ONCE = "once"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSource(str, Enum):
    """Where a ledger entry originated."""

    SYSTEM = "system"
    PARENT = "parent"
    RELATIVE = "relative"
    BUY_STARS = "buy_stars"
    BUY_STARS_APPROVED = "buy_stars_approved"
    BUY_STARS_REFUND = "buy_stars_refund"


class RivalryEventType(str, Enum):
    UNDERBID = "underbid"
    RIVALRY_WIN = "rivalry_win"


class EventType(str, Enum):
    """Domain events handed to the notification collaborator."""

    COMPLETION_CREATED = "completion.created"
    COMPLETION_APPROVED = "completion.approved"
    COMPLETION_REJECTED = "completion.rejected"
    BID_PLACED = "bid.placed"
    STAR_PURCHASE_REQUESTED = "star_purchase.requested"
    STAR_PURCHASE_APPROVED = "star_purchase.approved"
    STAR_PURCHASE_REJECTED = "star_purchase.rejected"
    BONUS_AWARDED = "bonus.awarded"


class Role(str, Enum):
    PARENT_ADMIN = "parent_admin"
    PARENT_CO_PARENT = "parent_co_parent"
    RELATIVE = "relative_contributor"
    CHILD = "child_player"


# ---------------------------------------------------------------------------
# Bonus payouts: one variant per bonus type, each carrying only its fields.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class MoneyBonus:
    money_pence: int

    @property
    def components(self) -> Tuple[int, int]:
        return self.money_pence, 0


@dataclass(frozen=True, slots=True)
class StarsBonus:
    stars: int

    @property
    def components(self) -> Tuple[int, int]:
        return 0, self.stars


@dataclass(frozen=True, slots=True)
class MoneyAndStarsBonus:
    money_pence: int
    stars: int

    @property
    def components(self) -> Tuple[int, int]:
        return self.money_pence, self.stars


BonusPayout = Union[MoneyBonus, StarsBonus, MoneyAndStarsBonus]


def payout_from_settings(bonus_type: str, money_pence: int, stars: int) -> BonusPayout:
    """Build the payout variant selected by a stored ``money|stars|both`` value."""

    if bonus_type == "money":
        return MoneyBonus(money_pence=money_pence)
    if bonus_type == "stars":
        return StarsBonus(stars=stars)
    if bonus_type == "both":
        return MoneyAndStarsBonus(money_pence=money_pence, stars=stars)
    raise ValueError(f"Unknown bonus type: {bonus_type!r}")


@dataclass(frozen=True, slots=True)
class FamilyBonusConfig:
    """Per-family settings read once per operation and passed explicitly."""

    family_id: int
    protection_days: int = 0
    bonus_enabled: bool = False
    bonus_days: int = 7
    streak_bonus: BonusPayout = field(default_factory=lambda: MoneyAndStarsBonus(0, 0))
    buy_stars_enabled: bool = True
    star_conversion_rate_pence: int = DEFAULT_STAR_CONVERSION_RATE_PENCE
    perfect_week_bonus: Optional[BonusPayout] = None
    monthly_bonus: Optional[BonusPayout] = None

    @classmethod
    def from_family(
        cls, family: Any, *, default_rate_pence: int = DEFAULT_STAR_CONVERSION_RATE_PENCE
    ) -> "FamilyBonusConfig":
        """Snapshot the bonus columns of a stored family row."""

        perfect_week = None
        if family.perfect_week_bonus_enabled:
            perfect_week = payout_from_settings(
                family.perfect_week_bonus_type,
                family.perfect_week_bonus_money_pence,
                family.perfect_week_bonus_stars,
            )
        monthly = None
        if family.monthly_bonus_enabled:
            monthly = payout_from_settings(
                family.monthly_bonus_type,
                family.monthly_bonus_money_pence,
                family.monthly_bonus_stars,
            )
        return cls(
            family_id=family.id,
            protection_days=max(0, family.streak_protection_days or 0),
            bonus_enabled=bool(family.bonus_enabled),
            bonus_days=family.bonus_days,
            streak_bonus=payout_from_settings(
                family.bonus_type, family.bonus_money_pence, family.bonus_stars
            ),
            buy_stars_enabled=bool(family.buy_stars_enabled),
            star_conversion_rate_pence=family.star_conversion_rate_pence or default_rate_pence,
            perfect_week_bonus=perfect_week,
            monthly_bonus=monthly,
        )


@dataclass(frozen=True, slots=True)
class Caller:
    """Identity triple supplied by the session collaborator; trusted as-is."""

    family_id: int
    role: str
    user_id: Optional[int] = None
    child_id: Optional[int] = None

    @property
    def is_child(self) -> bool:
        return self.role == Role.CHILD.value

    def acting_child_id(self) -> Optional[int]:
        return self.child_id if self.child_id is not None else self.user_id


@dataclass(slots=True)
class StreakStats:
    """Child-level streak summary across every chore."""

    current_streak: int = 0
    best_streak: int = 0
    total_completed_days: int = 0
    streak_bonus_percent: int = 0
    run_started_on: Optional[date] = None


@dataclass(slots=True)
class BonusDecision:
    """Outcome of a bonus eligibility check."""

    kind: str
    should_award: bool
    money_pence: int = 0
    stars: int = 0
    milestone: int = 0
    period_key: str = ""
    reason: str = ""

    @classmethod
    def refuse(cls, kind: str, reason: str = "") -> "BonusDecision":
        return cls(kind=kind, should_award=False, reason=reason)


@dataclass(slots=True)
class RewardQuote:
    """Money and stars owed for one approved completion."""

    reward_pence: int
    stars: int
    base_reward_pence: int
    rivalry_bonus: bool = False
    bid_amount_pence: Optional[int] = None


@dataclass(slots=True)
class DomainEvent:
    """Fire-and-forget event emitted after a committed state transition."""

    type: EventType
    family_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "familyId": self.family_id,
            "createdAt": self.created_at.isoformat(),
            **self.payload,
        }


__all__ = [
    "BonusDecision",
    "BonusPayout",
    "Caller",
    "CompletionStatus",
    "DomainEvent",
    "EventType",
    "FamilyBonusConfig",
    "Frequency",
    "MoneyAndStarsBonus",
    "MoneyBonus",
    "RewardQuote",
    "RivalryEventType",
    "Role",
    "StarPurchaseStatus",
    "StarsBonus",
    "StreakStats",
    "TransactionSource",
    "TransactionType",
    "payout_from_settings",
    "utcnow",
]
