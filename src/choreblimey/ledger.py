"""Wallet ledger: atomic credits and debits with an append-only audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, desc, select

from .exceptions import InsufficientFundsError, LedgerWriteError, NotFoundError
from .models import TransactionSource, TransactionType, utcnow
from .money import format_pence, require_pence
from .persistence import LedgerTransaction, Wallet


class Ledger:
    """Wallet operations bound to the caller's open transaction.

    Balances are only ever changed here, and every change appends exactly one
    :class:`LedgerTransaction`. Store failures surface as
    :class:`LedgerWriteError` so the enclosing unit of work rolls back.
    """

    __slots__ = ("_session", "_now")

    def __init__(self, session: Session, *, now: Callable[[], datetime] = utcnow) -> None:
        self._session = session
        self._now = now

    # ------------------------------------------------------------------
    # Wallet lookup
    # ------------------------------------------------------------------
    def find_wallet(self, family_id: int, child_id: int) -> Optional[Wallet]:
        return self._session.exec(
            select(Wallet).where(Wallet.family_id == family_id).where(Wallet.child_id == child_id)
        ).first()

    def get_wallet(self, family_id: int, child_id: int) -> Wallet:
        wallet = self.find_wallet(family_id, child_id)
        if wallet is None:
            raise NotFoundError(f"Wallet for child {child_id} does not exist.")
        return wallet

    def ensure_wallet(self, family_id: int, child_id: int) -> Wallet:
        wallet = self.find_wallet(family_id, child_id)
        if wallet is not None:
            return wallet
        wallet = Wallet(family_id=family_id, child_id=child_id, updated_at=self._now())
        try:
            self._session.add(wallet)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Could not open a wallet for child {child_id}.") from exc
        return wallet

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def credit(
        self,
        wallet: Wallet,
        amount_pence: int,
        stars_delta: int = 0,
        *,
        source: TransactionSource | str = TransactionSource.SYSTEM,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> LedgerTransaction:
        """Add money and/or stars. Credits never fail for lack of funds."""

        require_pence(amount_pence, allow_zero=True)
        require_pence(stars_delta, allow_zero=True)
        if amount_pence == 0 and stars_delta == 0:
            raise ValueError("A credit must move money or stars.")
        statement = (
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                balance_pence=Wallet.balance_pence + amount_pence,
                balance_stars=Wallet.balance_stars + stars_delta,
                updated_at=self._now(),
            )
        )
        return self._apply(wallet, statement, TransactionType.CREDIT, amount_pence, stars_delta, source, meta)

    def debit(
        self,
        wallet: Wallet,
        amount_pence: int,
        *,
        source: TransactionSource | str = TransactionSource.PARENT,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> LedgerTransaction:
        """Remove money if the balance covers it; stars are never debited."""

        require_pence(amount_pence)
        statement = (
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .where(Wallet.balance_pence >= amount_pence)
            .values(balance_pence=Wallet.balance_pence - amount_pence, updated_at=self._now())
        )
        return self._apply(wallet, statement, TransactionType.DEBIT, amount_pence, 0, source, meta)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    def transactions(
        self,
        wallet_id: int,
        *,
        since: Optional[datetime] = None,
        source: TransactionSource | str | None = None,
        limit: Optional[int] = None,
    ) -> Sequence[LedgerTransaction]:
        query = select(LedgerTransaction).where(LedgerTransaction.wallet_id == wallet_id)
        if since is not None:
            query = query.where(LedgerTransaction.created_at >= since)
        if source is not None:
            query = query.where(LedgerTransaction.source == _value(source))
        query = query.order_by(desc(LedgerTransaction.created_at), desc(LedgerTransaction.id))
        if limit is not None:
            query = query.limit(limit)
        return self._session.exec(query).all()

    def find_by_meta(
        self,
        wallet_id: int,
        *,
        since: datetime,
        meta_type: str,
        until: Optional[datetime] = None,
        **meta_fields: Any,
    ) -> List[LedgerTransaction]:
        """Return system entries since ``since`` whose metadata matches every field."""

        matches: List[LedgerTransaction] = []
        for entry in self.transactions(wallet_id, since=since, source=TransactionSource.SYSTEM):
            if until is not None and entry.created_at > until:
                continue
            meta = entry.meta_json or {}
            if meta.get("type") != meta_type:
                continue
            if all(meta.get(key) == value for key, value in meta_fields.items()):
                matches.append(entry)
        return matches

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _apply(
        self,
        wallet: Wallet,
        statement,
        transaction_type: TransactionType,
        amount_pence: int,
        stars_delta: int,
        source: TransactionSource | str,
        meta: Optional[Mapping[str, Any]],
    ) -> LedgerTransaction:
        try:
            result = self._session.execute(statement.execution_options(synchronize_session=False))
            if result.rowcount != 1:
                if transaction_type is TransactionType.DEBIT:
                    self._session.refresh(wallet)
                    raise InsufficientFundsError(
                        f"Wallet {wallet.id} has insufficient funds for {format_pence(amount_pence)}."
                    )
                raise LedgerWriteError(f"Wallet {wallet.id} could not be updated.")
            entry = LedgerTransaction(
                wallet_id=wallet.id,
                family_id=wallet.family_id,
                type=transaction_type.value,
                amount_pence=amount_pence,
                stars_delta=stars_delta,
                source=_value(source),
                meta_json=dict(meta or {}),
                created_at=self._now(),
            )
            self._session.add(entry)
            self._session.flush()
            self._session.refresh(wallet)
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Ledger write failed for wallet {wallet.id}.") from exc
        return entry


def _value(source: TransactionSource | str) -> str:
    return source.value if isinstance(source, TransactionSource) else str(source)


def wallet_snapshot(wallet: Wallet) -> Dict[str, int]:
    return {
        "walletId": wallet.id,
        "childId": wallet.child_id,
        "balancePence": wallet.balance_pence,
        "stars": wallet.balance_stars,
    }


__all__ = ["Ledger", "wallet_snapshot"]
