"""High level service coordinating one ChoreBlimey store."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from .api import ApiExporter
from .bidding import BiddingArbiter
from .bonuses import PERIODIC_KINDS, BonusAwarder, BonusKind, BonusOutcome
from .completions import ApprovalResult, CompletionService
from .config import Settings
from .exceptions import ForbiddenError, LedgerWriteError, NotFoundError
from .ledger import Ledger
from .models import (
    Caller,
    CompletionStatus,
    DomainEvent,
    EventType,
    FamilyBonusConfig,
    Frequency,
    Role,
    StarPurchaseStatus,
    StreakStats,
    TransactionSource,
    utcnow,
)
from .notifications import CacheInvalidator, NotificationCenter
from .ops import StructuredLogger
from .persistence import (
    Assignment,
    Bid,
    Child,
    Chore,
    Completion,
    Family,
    LedgerTransaction,
    RivalryEvent,
    StarPurchase,
    Store,
    Streak,
    Wallet,
    get_in_family,
)
from .star_purchases import StarPurchaseService
from .streaks import StreakCalculator, day_of

PARENT_ROLES = frozenset({Role.PARENT_ADMIN.value, Role.PARENT_CO_PARENT.value})
CONTRIBUTOR_ROLES = PARENT_ROLES | {Role.RELATIVE.value}
WALLET_HISTORY_LIMIT = 10


class ChoreBlimey:
    """Run every core operation as one write transaction for the caller's family.

    Domain events, cache invalidation and log entries are emitted only after
    the transaction commits; their failures are logged and never surface.
    """

    __slots__ = ("_store", "_settings", "_now", "_logger", "_notifications", "_cache", "_api")

    def __init__(
        self,
        store: Store,
        *,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
        notifications: Optional[NotificationCenter] = None,
        cache: Optional[CacheInvalidator] = None,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._now = now
        self._logger = logger or StructuredLogger(path=self._settings.log_path, now=now)
        self._notifications = notifications or NotificationCenter(self._logger)
        self._cache = cache or CacheInvalidator(self._logger)
        self._api = ApiExporter()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "ChoreBlimey":
        settings = settings or Settings.from_env()
        return cls(Store.from_url(settings.database_url), settings=settings, **kwargs)

    @property
    def store(self) -> Store:
        return self._store

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    @property
    def cache(self) -> CacheInvalidator:
        return self._cache

    @property
    def api(self) -> ApiExporter:
        return self._api

    # ------------------------------------------------------------------
    # Seed helpers (family management lives outside the core)
    # ------------------------------------------------------------------
    def create_family(self, name: str = "", **settings: object) -> Family:
        with self._store.write_session() as session:
            family = Family(name=name, created_at=self._now(), **settings)
            session.add(family)
            session.flush()
        return family

    def add_child(self, family_id: int, nickname: str) -> Child:
        with self._store.write_session() as session:
            self._family(session, family_id)
            child = Child(family_id=family_id, nickname=nickname, created_at=self._now())
            session.add(child)
            session.flush()
        return child

    def add_chore(
        self,
        family_id: int,
        title: str,
        *,
        base_reward_pence: int,
        frequency: str = "daily",
        stars_override: Optional[int] = None,
        min_bid_pence: Optional[int] = None,
        max_bid_pence: Optional[int] = None,
        active: bool = True,
    ) -> Chore:
        if base_reward_pence < 0:
            raise ValueError("Chore rewards cannot be negative.")
        if stars_override is not None and stars_override < 0:
            raise ValueError("Star overrides cannot be negative.")
        for limit in (min_bid_pence, max_bid_pence):
            if limit is not None and limit < 0:
                raise ValueError("Bid limits cannot be negative.")
        if min_bid_pence is not None and max_bid_pence is not None and min_bid_pence > max_bid_pence:
            raise ValueError("The minimum bid cannot exceed the maximum bid.")
        frequency = Frequency(frequency).value
        with self._store.write_session() as session:
            self._family(session, family_id)
            chore = Chore(
                family_id=family_id,
                title=title,
                frequency=frequency,
                base_reward_pence=base_reward_pence,
                stars_override=stars_override,
                min_bid_pence=min_bid_pence,
                max_bid_pence=max_bid_pence,
                active=active,
                created_at=self._now(),
            )
            session.add(chore)
            session.flush()
        return chore

    def assign_chore(
        self,
        family_id: int,
        chore_id: int,
        *,
        child_id: Optional[int] = None,
        bidding_enabled: bool = False,
    ) -> Assignment:
        with self._store.write_session() as session:
            if get_in_family(session, Chore, chore_id, family_id) is None:
                raise NotFoundError(f"Chore {chore_id} does not exist.")
            if child_id is not None and get_in_family(session, Child, child_id, family_id) is None:
                raise NotFoundError(f"Child {child_id} does not exist.")
            assignment = Assignment(
                family_id=family_id,
                chore_id=chore_id,
                child_id=child_id,
                bidding_enabled=bidding_enabled,
                created_at=self._now(),
            )
            session.add(assignment)
            session.flush()
        return assignment

    def family_config(self, family_id: int) -> FamilyBonusConfig:
        with self._store.read_session() as session:
            return self._config(session, family_id)

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    def submit_completion(
        self,
        caller: Caller,
        assignment_id: int,
        *,
        child_id: Optional[int] = None,
        proof_url: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Completion:
        acting = self._acting_child(caller, child_id)
        with self._write("submit_completion", familyId=caller.family_id) as session:
            result = self._completions(session).submit(
                caller.family_id, assignment_id, acting, proof_url=proof_url, note=note
            )
        completion = result.completion
        self._logger.log(
            "completion_submitted",
            familyId=caller.family_id,
            completionId=completion.id,
            childId=acting,
            streak=result.streak.current,
        )
        self._after_commit(
            EventType.COMPLETION_CREATED,
            caller.family_id,
            {"completion": self._api.completion(completion), "chore": self._api.chore(result.chore)},
            child_id=acting,
        )
        return completion

    def approve_completion(self, caller: Caller, completion_id: int) -> ApprovalResult:
        self._require(caller, PARENT_ROLES)
        with self._write("approve_completion", familyId=caller.family_id, completionId=completion_id) as session:
            config = self._config(session, caller.family_id)
            result = self._completions(session).approve(config, completion_id, caller.user_id)
        completion = result.completion
        self._logger.log(
            "completion_approved",
            familyId=caller.family_id,
            completionId=completion.id,
            childId=completion.child_id,
            rewardPence=result.reward.reward_pence,
            stars=result.reward.stars,
            rivalryBonus=result.reward.rivalry_bonus,
        )
        if result.bonus_transactions:
            self._logger.log(
                "streak_bonus_awarded",
                familyId=caller.family_id,
                childId=completion.child_id,
                streakLength=result.bonus.milestone,
                moneyPence=result.bonus.money_pence,
                stars=result.bonus.stars,
            )
        self._after_commit(EventType.COMPLETION_APPROVED, caller.family_id, self._api.approval(result), child_id=completion.child_id)
        return result

    def reject_completion(self, caller: Caller, completion_id: int, reason: Optional[str] = None) -> Completion:
        self._require(caller, PARENT_ROLES)
        with self._write("reject_completion", familyId=caller.family_id, completionId=completion_id) as session:
            result = self._completions(session).reject(
                caller.family_id, completion_id, rejected_by=caller.user_id, reason=reason
            )
        completion = result.completion
        self._logger.log(
            "completion_rejected",
            familyId=caller.family_id,
            completionId=completion.id,
            childId=completion.child_id,
            reason=reason,
        )
        self._after_commit(
            EventType.COMPLETION_REJECTED,
            caller.family_id,
            {"completion": self._api.completion(completion), "chore": self._api.chore(result.chore), "reason": reason},
            child_id=completion.child_id,
        )
        return completion

    def list_completions(
        self,
        caller: Caller,
        *,
        status: CompletionStatus | str | None = None,
        child_id: Optional[int] = None,
    ) -> Sequence[Completion]:
        if caller.is_child:
            child_id = self._acting_child(caller, child_id)
        with self._store.read_session() as session:
            return self._completions(session).list(caller.family_id, status=status, child_id=child_id)

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------
    def place_bid(
        self,
        caller: Caller,
        assignment_id: int,
        amount_pence: int,
        *,
        child_id: Optional[int] = None,
        target_child_id: Optional[int] = None,
    ) -> Bid:
        acting = self._acting_child(caller, child_id)
        with self._write("place_bid", familyId=caller.family_id, assignmentId=assignment_id) as session:
            bid = BiddingArbiter(session, now=self._now).place_bid(
                caller.family_id, assignment_id, acting, amount_pence, target_child_id=target_child_id
            )
        self._logger.log(
            "bid_placed",
            familyId=caller.family_id,
            assignmentId=assignment_id,
            childId=acting,
            amountPence=bid.amount_pence,
            requestedPence=amount_pence,
        )
        self._after_commit(EventType.BID_PLACED, caller.family_id, {"bid": self._api.bid(bid)})
        return bid

    def list_bids(self, caller: Caller, assignment_id: int) -> Sequence[Bid]:
        with self._store.read_session() as session:
            return BiddingArbiter(session, now=self._now).bids_for(caller.family_id, assignment_id)

    def current_champion(self, caller: Caller, assignment_id: int) -> Optional[Bid]:
        with self._store.read_session() as session:
            return BiddingArbiter(session, now=self._now).current_champion(caller.family_id, assignment_id)

    def rivalry_feed(self, caller: Caller) -> Sequence[RivalryEvent]:
        with self._store.read_session() as session:
            return BiddingArbiter(session, now=self._now).feed(caller.family_id)

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------
    def streak_stats(self, caller: Caller, child_id: Optional[int] = None) -> Tuple[StreakStats, Sequence[Streak]]:
        target = self._acting_child(caller, child_id)
        with self._store.read_session() as session:
            config = self._config(session, caller.family_id)
            self._child(session, caller.family_id, target)
            calculator = StreakCalculator(session)
            stats = calculator.stats_for_child(
                caller.family_id,
                target,
                today=day_of(self._now()),
                protection_days=config.protection_days,
            )
            return stats, calculator.chore_streaks(caller.family_id, target)

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------
    def wallet(self, caller: Caller, child_id: Optional[int] = None) -> Tuple[Optional[Wallet], Sequence[LedgerTransaction]]:
        """Wallet and its most recent entries; ``(None, ())`` before the first credit."""

        target = self._acting_child(caller, child_id)
        with self._store.read_session() as session:
            self._child(session, caller.family_id, target)
            ledger = Ledger(session, now=self._now)
            wallet = ledger.find_wallet(caller.family_id, target)
            if wallet is None:
                return None, ()
            return wallet, ledger.transactions(wallet.id, limit=WALLET_HISTORY_LIMIT)

    def credit_wallet(
        self,
        caller: Caller,
        child_id: int,
        amount_pence: int,
        *,
        note: Optional[str] = None,
    ) -> Wallet:
        self._require(caller, CONTRIBUTOR_ROLES)
        source = TransactionSource.RELATIVE if caller.role == Role.RELATIVE.value else TransactionSource.PARENT
        with self._write("credit_wallet", familyId=caller.family_id, childId=child_id) as session:
            self._child(session, caller.family_id, child_id)
            ledger = Ledger(session, now=self._now)
            wallet = ledger.ensure_wallet(caller.family_id, child_id)
            ledger.credit(wallet, amount_pence, source=source, meta={"note": note, "userId": caller.user_id})
        self._logger.log(
            "wallet_credited",
            familyId=caller.family_id,
            childId=child_id,
            amountPence=amount_pence,
            source=source.value,
        )
        self._invalidate(caller.family_id, child_id)
        return wallet

    def debit_wallet(
        self,
        caller: Caller,
        child_id: int,
        amount_pence: int,
        *,
        note: Optional[str] = None,
    ) -> Wallet:
        self._require(caller, PARENT_ROLES)
        with self._write("debit_wallet", familyId=caller.family_id, childId=child_id) as session:
            self._child(session, caller.family_id, child_id)
            ledger = Ledger(session, now=self._now)
            wallet = ledger.ensure_wallet(caller.family_id, child_id)
            ledger.debit(wallet, amount_pence, meta={"note": note, "userId": caller.user_id})
        self._logger.log("wallet_debited", familyId=caller.family_id, childId=child_id, amountPence=amount_pence)
        self._invalidate(caller.family_id, child_id)
        return wallet

    # ------------------------------------------------------------------
    # Star purchases
    # ------------------------------------------------------------------
    def request_star_purchase(
        self,
        caller: Caller,
        stars_requested: int,
        *,
        child_id: Optional[int] = None,
    ) -> StarPurchase:
        acting = self._acting_child(caller, child_id)
        with self._write("request_star_purchase", familyId=caller.family_id, childId=acting) as session:
            config = self._config(session, caller.family_id)
            result = StarPurchaseService(session, now=self._now).request(config, acting, stars_requested)
        purchase = result.purchase
        self._logger.log(
            "star_purchase_requested",
            familyId=caller.family_id,
            purchaseId=purchase.id,
            childId=acting,
            starsRequested=stars_requested,
            amountPence=purchase.amount_pence,
        )
        self._after_commit(
            EventType.STAR_PURCHASE_REQUESTED,
            caller.family_id,
            {"starPurchase": self._api.star_purchase(purchase), "wallet": self._api.wallet(result.wallet)},
            child_id=acting,
        )
        return purchase

    def approve_star_purchase(self, caller: Caller, purchase_id: int) -> StarPurchase:
        self._require(caller, PARENT_ROLES)
        with self._write("approve_star_purchase", familyId=caller.family_id, purchaseId=purchase_id) as session:
            result = StarPurchaseService(session, now=self._now).approve(caller.family_id, purchase_id, caller.user_id)
        return self._star_purchase_settled(caller, result, EventType.STAR_PURCHASE_APPROVED, "star_purchase_approved")

    def reject_star_purchase(self, caller: Caller, purchase_id: int, reason: Optional[str] = None) -> StarPurchase:
        self._require(caller, PARENT_ROLES)
        with self._write("reject_star_purchase", familyId=caller.family_id, purchaseId=purchase_id) as session:
            result = StarPurchaseService(session, now=self._now).reject(
                caller.family_id, purchase_id, caller.user_id, reason=reason
            )
        return self._star_purchase_settled(caller, result, EventType.STAR_PURCHASE_REJECTED, "star_purchase_rejected")

    def list_star_purchases(
        self,
        caller: Caller,
        *,
        status: StarPurchaseStatus | str | None = None,
        child_id: Optional[int] = None,
    ) -> Sequence[StarPurchase]:
        if caller.is_child:
            child_id = self._acting_child(caller, child_id)
        with self._store.read_session() as session:
            return StarPurchaseService(session, now=self._now).list(caller.family_id, status=status, child_id=child_id)

    # ------------------------------------------------------------------
    # Periodic bonuses (driven by an external scheduler)
    # ------------------------------------------------------------------
    def run_periodic_bonuses(
        self,
        family_id: int,
        *,
        today: Optional[date] = None,
        kind: BonusKind | str | None = None,
        dry_run: bool = False,
    ) -> List[BonusOutcome]:
        today = today or day_of(self._now())
        kinds = PERIODIC_KINDS if kind is None else (BonusKind(kind),)
        opener = self._store.read_session if dry_run else self._store.write_session
        with opener() as session:
            config = self._config(session, family_id)
            child_ids = session.exec(
                select(Child.id)
                .where(Child.family_id == family_id)
                .where(Child.paused == False)  # noqa: E712
                .order_by(Child.id)
            ).all()
            ledger = Ledger(session, now=self._now)
            awarder = BonusAwarder(session, ledger, now=self._now, lookback_days=self._settings.bonus_lookback_days)
            outcomes = awarder.sweep(config, child_ids, today, kinds=kinds, dry_run=dry_run)
        for outcome in outcomes:
            if not outcome.awarded:
                continue
            self._logger.log(
                "periodic_bonus_awarded",
                familyId=family_id,
                childId=outcome.child_id,
                kind=outcome.decision.kind,
                moneyPence=outcome.decision.money_pence,
                stars=outcome.decision.stars,
            )
            self._after_commit(
                EventType.BONUS_AWARDED,
                family_id,
                {"childId": outcome.child_id, "bonus": self._api.bonus(outcome.decision)},
                child_id=outcome.child_id,
            )
        return outcomes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _write(self, action: str, **context: object) -> Iterator[Session]:
        try:
            with self._store.write_session() as session:
                yield session
        except LedgerWriteError as exc:
            self._logger.log("ledger_write_failed", action=action, error=str(exc), **context)
            raise

    def _completions(self, session: Session) -> CompletionService:
        return CompletionService(session, now=self._now, bonus_lookback_days=self._settings.bonus_lookback_days)

    def _star_purchase_settled(self, caller: Caller, result, event_type: EventType, log_event: str) -> StarPurchase:
        purchase = result.purchase
        self._logger.log(log_event, familyId=caller.family_id, purchaseId=purchase.id, childId=purchase.child_id)
        self._after_commit(
            event_type,
            caller.family_id,
            {"starPurchase": self._api.star_purchase(purchase), "wallet": self._api.wallet(result.wallet)},
            child_id=purchase.child_id,
        )
        return purchase

    def _after_commit(
        self,
        event_type: EventType,
        family_id: int,
        payload: dict,
        *,
        child_id: Optional[int] = None,
    ) -> None:
        self._notifications.publish(DomainEvent(type=event_type, family_id=family_id, payload=payload, created_at=self._now()))
        self._invalidate(family_id, child_id)

    def _invalidate(self, family_id: int, child_id: Optional[int]) -> None:
        self._cache.invalidate_family(family_id)
        if child_id is not None:
            self._cache.invalidate_wallet(family_id, child_id)

    def _config(self, session: Session, family_id: int) -> FamilyBonusConfig:
        return FamilyBonusConfig.from_family(
            self._family(session, family_id),
            default_rate_pence=self._settings.default_star_rate_pence,
        )

    @staticmethod
    def _family(session: Session, family_id: int) -> Family:
        family = session.get(Family, family_id)
        if family is None:
            raise NotFoundError(f"Family {family_id} does not exist.")
        return family

    @staticmethod
    def _child(session: Session, family_id: int, child_id: int) -> Child:
        child = get_in_family(session, Child, child_id, family_id)
        if child is None:
            raise NotFoundError(f"Child {child_id} does not exist.")
        return child

    @staticmethod
    def _require(caller: Caller, roles: frozenset) -> None:
        if caller.role not in roles:
            raise ForbiddenError(f"Role '{caller.role}' may not perform this action.")

    @staticmethod
    def _acting_child(caller: Caller, child_id: Optional[int]) -> int:
        """Children always act as themselves; adults must name the child."""

        if caller.is_child:
            own = caller.acting_child_id()
            if own is None:
                raise ForbiddenError("Child ID not found in authentication.")
            if child_id is not None and child_id != own:
                raise ForbiddenError("Children may only act on their own behalf.")
            return own
        if child_id is None:
            raise ValueError("child_id is required.")
        return child_id


__all__ = ["ChoreBlimey", "CONTRIBUTOR_ROLES", "PARENT_ROLES"]
