"""ChoreBlimey: chores, sibling rivalry, streaks and a child's wallet."""

from .api import ApiExporter
from .bidding import BiddingArbiter, clamp_bid, select_champion
from .bonuses import BonusAwarder, BonusKind, BonusOutcome
from .completions import ApprovalResult, CompletionService
from .config import Settings
from .exceptions import (
    AlreadyProcessedError,
    AuthenticationError,
    ChallengeLockedError,
    ChoreBlimeyError,
    ForbiddenError,
    InsufficientFundsError,
    LedgerWriteError,
    NoChampionYetError,
    NotFoundError,
)
from .ledger import Ledger
from .models import (
    BonusDecision,
    Caller,
    CompletionStatus,
    DomainEvent,
    EventType,
    FamilyBonusConfig,
    MoneyAndStarsBonus,
    MoneyBonus,
    Role,
    StarPurchaseStatus,
    StarsBonus,
    StreakStats,
    TransactionSource,
)
from .notifications import CacheInvalidator, NotificationCenter
from .ops import StructuredLogger
from .persistence import Store
from .service import ChoreBlimey
from .star_purchases import StarPurchaseService
from .streaks import StreakCalculator, calculate_streak_stats

__all__ = [
    "AlreadyProcessedError",
    "ApiExporter",
    "ApprovalResult",
    "AuthenticationError",
    "BiddingArbiter",
    "BonusAwarder",
    "BonusDecision",
    "BonusKind",
    "BonusOutcome",
    "CacheInvalidator",
    "Caller",
    "ChallengeLockedError",
    "ChoreBlimey",
    "ChoreBlimeyError",
    "CompletionService",
    "CompletionStatus",
    "DomainEvent",
    "EventType",
    "FamilyBonusConfig",
    "ForbiddenError",
    "InsufficientFundsError",
    "Ledger",
    "LedgerWriteError",
    "MoneyAndStarsBonus",
    "MoneyBonus",
    "NoChampionYetError",
    "NotFoundError",
    "NotificationCenter",
    "Role",
    "Settings",
    "StarPurchaseService",
    "StarPurchaseStatus",
    "StarsBonus",
    "Store",
    "StreakCalculator",
    "StreakStats",
    "StructuredLogger",
    "TransactionSource",
    "calculate_streak_stats",
    "clamp_bid",
    "select_champion",
]
