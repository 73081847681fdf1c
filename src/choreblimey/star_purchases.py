"""Buying stars with wallet money: debit on request, then convert or refund."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlmodel import Session, desc, select

from .config import STAR_PURCHASE_LIST_LIMIT
from .exceptions import AlreadyProcessedError, ForbiddenError, InsufficientFundsError, NotFoundError
from .ledger import Ledger
from .models import FamilyBonusConfig, StarPurchaseStatus, TransactionSource, utcnow
from .money import format_pence, pence_for_stars, require_pence
from .persistence import (
    Child,
    LedgerTransaction,
    StarPurchase,
    Wallet,
    compare_and_set_status,
    get_in_family,
)


@dataclass(slots=True)
class StarPurchaseResult:
    purchase: StarPurchase
    wallet: Wallet
    transaction: LedgerTransaction


class StarPurchaseService:
    """Each transition pairs one ledger entry with one status change.

    Money is reserved at request time, so approval only adds stars and
    rejection only returns the reserved pence.
    """

    def __init__(self, session: Session, *, now: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._now = now
        self.ledger = Ledger(session, now=now)

    def request(self, config: FamilyBonusConfig, child_id: int, stars_requested: int) -> StarPurchaseResult:
        require_pence(stars_requested)
        if not config.buy_stars_enabled:
            raise ForbiddenError("Buying stars is disabled for this family.")
        if get_in_family(self._session, Child, child_id, config.family_id) is None:
            raise NotFoundError(f"Child {child_id} does not exist.")
        wallet = self.ledger.get_wallet(config.family_id, child_id)

        rate = config.star_conversion_rate_pence
        amount = pence_for_stars(stars_requested, rate)
        if wallet.balance_pence < amount:
            raise InsufficientFundsError(
                f"Buying {stars_requested} stars costs {format_pence(amount)}; "
                f"the wallet holds {format_pence(wallet.balance_pence)}."
            )
        entry = self.ledger.debit(
            wallet,
            amount,
            source=TransactionSource.BUY_STARS,
            meta={"type": "buy_stars_request", "starsRequested": stars_requested, "conversionRatePence": rate},
        )
        purchase = StarPurchase(
            family_id=config.family_id,
            child_id=child_id,
            amount_pence=amount,
            stars_requested=stars_requested,
            conversion_rate_pence=rate,
            status=StarPurchaseStatus.PENDING.value,
            created_at=self._now(),
        )
        self._session.add(purchase)
        self._session.flush()
        entry.meta_json = {**entry.meta_json, "purchaseId": purchase.id}
        self._session.add(entry)
        self._session.flush()
        return StarPurchaseResult(purchase=purchase, wallet=wallet, transaction=entry)

    def approve(self, family_id: int, purchase_id: int, approver_id: Optional[int] = None) -> StarPurchaseResult:
        purchase = self._pending(family_id, purchase_id)
        self._flip(
            purchase,
            {
                "status": StarPurchaseStatus.APPROVED.value,
                "approved_by": approver_id,
                "processed_at": self._now(),
            },
        )
        wallet = self.ledger.get_wallet(family_id, purchase.child_id)
        entry = self.ledger.credit(
            wallet,
            0,
            purchase.stars_requested,
            source=TransactionSource.BUY_STARS_APPROVED,
            meta={
                "type": "buy_stars_approved",
                "starsRequested": purchase.stars_requested,
                "amountPence": purchase.amount_pence,
                "purchaseId": purchase.id,
            },
        )
        return StarPurchaseResult(purchase=purchase, wallet=wallet, transaction=entry)

    def reject(
        self,
        family_id: int,
        purchase_id: int,
        rejected_by: Optional[int] = None,
        *,
        reason: Optional[str] = None,
    ) -> StarPurchaseResult:
        purchase = self._pending(family_id, purchase_id)
        self._flip(
            purchase,
            {
                "status": StarPurchaseStatus.REJECTED.value,
                "rejected_by": rejected_by,
                "processed_at": self._now(),
            },
        )
        wallet = self.ledger.get_wallet(family_id, purchase.child_id)
        meta = {
            "type": "buy_stars_rejected",
            "starsRequested": purchase.stars_requested,
            "amountPence": purchase.amount_pence,
            "purchaseId": purchase.id,
        }
        if reason:
            meta["reason"] = reason
        entry = self.ledger.credit(
            wallet,
            purchase.amount_pence,
            source=TransactionSource.BUY_STARS_REFUND,
            meta=meta,
        )
        return StarPurchaseResult(purchase=purchase, wallet=wallet, transaction=entry)

    def list(
        self,
        family_id: int,
        *,
        status: StarPurchaseStatus | str | None = None,
        child_id: Optional[int] = None,
        limit: int = STAR_PURCHASE_LIST_LIMIT,
    ) -> Sequence[StarPurchase]:
        query = select(StarPurchase).where(StarPurchase.family_id == family_id)
        if status is not None:
            query = query.where(StarPurchase.status == StarPurchaseStatus(status).value)
        if child_id is not None:
            query = query.where(StarPurchase.child_id == child_id)
        query = query.order_by(desc(StarPurchase.created_at), desc(StarPurchase.id)).limit(limit)
        return self._session.exec(query).all()

    def _pending(self, family_id: int, purchase_id: int) -> StarPurchase:
        purchase = get_in_family(self._session, StarPurchase, purchase_id, family_id, for_update=True)
        if purchase is None:
            raise NotFoundError(f"Star purchase {purchase_id} does not exist.")
        if purchase.status != StarPurchaseStatus.PENDING.value:
            raise AlreadyProcessedError(f"Star purchase {purchase_id} has already been {purchase.status}.")
        return purchase

    def _flip(self, purchase: StarPurchase, values: dict) -> None:
        won = compare_and_set_status(
            self._session,
            StarPurchase,
            purchase.id,
            expected=StarPurchaseStatus.PENDING.value,
            values=values,
        )
        if not won:
            raise AlreadyProcessedError(f"Star purchase {purchase.id} has already been processed.")
        self._session.refresh(purchase)


__all__ = ["StarPurchaseResult", "StarPurchaseService"]
