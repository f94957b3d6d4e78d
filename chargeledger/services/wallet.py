"""Prepaid wallet balances with an append-only transaction journal."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..errors import DuplicateTransactionError, InsufficientFundsError, ValidationError
from ..models import Wallet, WalletTransaction, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CREDIT = "credit"
DEBIT = "debit"
REFUND = "refund"


def to_money(value: Any) -> Decimal:
    """Round ``value`` to two decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class WalletLedger:
    """Manage wallet balances keyed by customer id.

    Every mutation runs inside the caller's database transaction and never
    commits on its own; the caller decides the unit of work.
    """

    def get_or_create_wallet(self, db: Session, customer_id: int, lock: bool = False) -> Wallet:
        q = db.query(Wallet).filter(Wallet.customer_id == customer_id)
        if lock:
            q = q.with_for_update()
        wallet = q.first()
        if wallet is None:
            wallet = Wallet(customer_id=customer_id, balance=Decimal("0.00"))
            db.add(wallet)
            db.flush()
            logger.info("Created wallet for customer %s", customer_id)
        return wallet

    def balance(self, db: Session, customer_id: int) -> Decimal:
        """Return the current balance for ``customer_id``."""
        return to_money(self.get_or_create_wallet(db, customer_id).balance)

    def _append(
        self,
        db: Session,
        wallet: Wallet,
        kind: str,
        category: str,
        amount: Decimal,
        description: str,
        reference_id: Optional[str],
    ) -> WalletTransaction:
        before = to_money(wallet.balance)
        after = before - amount if kind == DEBIT else before + amount
        wallet.balance = after
        wallet.updated_at = utcnow()
        entry = WalletTransaction(
            wallet_id=wallet.id,
            customer_id=wallet.customer_id,
            transaction_type=kind,
            transaction_category=category,
            amount=amount,
            balance_before=before,
            balance_after=after,
            description=description,
            reference_id=reference_id,
            status="completed",
        )
        db.add(entry)
        db.flush()
        logger.info(
            "Wallet %s of %s for customer %s (ref=%s), balance %s -> %s",
            kind, amount, wallet.customer_id, reference_id, before, after,
        )
        return entry

    def _existing(self, db: Session, kind: str, reference_id: Optional[str]) -> Optional[WalletTransaction]:
        if not reference_id:
            return None
        return (
            db.query(WalletTransaction)
            .filter(WalletTransaction.reference_id == reference_id)
            .filter(WalletTransaction.transaction_type == kind)
            .first()
        )

    @staticmethod
    def _positive(amount: Any) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Amount must be greater than 0")
        return value

    def debit(
        self,
        db: Session,
        customer_id: int,
        amount: Any,
        description: str,
        reference_id: Optional[str] = None,
    ) -> WalletTransaction:
        value = self._positive(amount)
        if self._existing(db, DEBIT, reference_id) is not None:
            raise DuplicateTransactionError(f"Duplicate debit for reference {reference_id}")
        wallet = self.get_or_create_wallet(db, customer_id, lock=True)
        if to_money(wallet.balance) < value:
            raise InsufficientFundsError(
                f"Insufficient wallet balance. Available: {to_money(wallet.balance)}, Required: {value}"
            )
        return self._append(db, wallet, DEBIT, "charging", value, description, reference_id)

    def credit(
        self,
        db: Session,
        customer_id: int,
        amount: Any,
        description: str,
        reference_id: Optional[str] = None,
    ) -> WalletTransaction:
        value = self._positive(amount)
        if self._existing(db, CREDIT, reference_id) is not None:
            raise DuplicateTransactionError(f"Duplicate credit for reference {reference_id}")
        wallet = self.get_or_create_wallet(db, customer_id, lock=True)
        return self._append(db, wallet, CREDIT, "topup", value, description, reference_id)

    def find_refund(self, db: Session, reference_id: str) -> Optional[WalletTransaction]:
        return self._existing(db, REFUND, reference_id)

    def refund(
        self,
        db: Session,
        customer_id: int,
        amount: Any,
        description: str,
        reference_id: str,
    ) -> WalletTransaction:
        """Credit back ``amount``; a second refund for the same reference is a no-op."""
        existing = self.find_refund(db, reference_id)
        if existing is not None:
            logger.info("Refund for %s already recorded (%s); skipping", reference_id, existing.id)
            return existing
        value = self._positive(amount)
        wallet = self.get_or_create_wallet(db, customer_id, lock=True)
        return self._append(db, wallet, REFUND, "refund", value, description, reference_id)

    def transactions(
        self,
        db: Session,
        customer_id: int,
        page: int = 1,
        limit: int = 20,
        transaction_type: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        q = db.query(WalletTransaction).filter(WalletTransaction.customer_id == customer_id)
        if transaction_type:
            q = q.filter(WalletTransaction.transaction_type == transaction_type)
        if from_date is not None:
            q = q.filter(WalletTransaction.created_at >= from_date)
        if to_date is not None:
            q = q.filter(WalletTransaction.created_at <= to_date)
        total = q.count()
        rows = (
            q.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "transactions": [serialize_transaction(r) for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }


def serialize_transaction(row: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": row.id,
        "transactionType": row.transaction_type,
        "transactionCategory": row.transaction_category,
        "amount": float(row.amount),
        "balanceBefore": float(row.balance_before),
        "balanceAfter": float(row.balance_after),
        "description": row.description,
        "referenceId": row.reference_id,
        "status": row.status,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }
