"""
Credit Ledger — User balances and the append-only transaction log.

Every balance change goes through transfer(): a conditional UPDATE on the
debited row (credits >= amount) plus the matching Transaction insert, all in
the caller's DB transaction. Nothing here commits; get_db() does, or rolls the
whole request back.

Invariant: users.credits == Σ amount (to_user_id = user) − Σ amount (from_user_id = user).
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InsufficientFunds, NotFoundError, ValidationError
from app.models import User, Transaction, TransactionType, ReferenceType
from app.utils import utcnow

logger = logging.getLogger(__name__)


class CreditLedger:
    """Atomic debit/credit operations with transaction logging, scoped to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ─────────────────────────────────────────────────────────

    async def balance(self, user_id: uuid.UUID) -> int:
        """Committed (or same-transaction) balance, read from the row, not the identity map."""
        result = await self.db.execute(select(User.credits).where(User.id == user_id))
        credits = result.scalar_one_or_none()
        if credits is None:
            raise NotFoundError("User not found")
        return credits

    async def reconcile(self, user_id: uuid.UUID) -> int:
        """Balance recomputed from genesis: Σ received − Σ given."""
        received = await self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(Transaction.to_user_id == user_id)
        )
        given = await self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(Transaction.from_user_id == user_id)
        )
        return int(received.scalar_one()) - int(given.scalar_one())

    async def history(self, user_id: uuid.UUID, limit: int = 200) -> list[dict]:
        """Transactions touching the user, newest first, tagged received/given."""
        result = await self.db.execute(
            select(Transaction)
            .where(or_(Transaction.from_user_id == user_id, Transaction.to_user_id == user_id))
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": str(tx.id),
                "from_user_id": str(tx.from_user_id) if tx.from_user_id else None,
                "to_user_id": str(tx.to_user_id) if tx.to_user_id else None,
                "amount": tx.amount,
                "type": tx.type,
                "reference_type": tx.reference_type,
                "reference_id": str(tx.reference_id) if tx.reference_id else None,
                "description": tx.description,
                "created_at": tx.created_at,
                "direction": "received" if tx.to_user_id == user_id else "given",
            }
            for tx in result.scalars().all()
        ]

    # ── Writes ────────────────────────────────────────────────────────

    async def transfer(
        self,
        from_user_id: Optional[uuid.UUID],
        to_user_id: Optional[uuid.UUID],
        amount: int,
        tx_type: TransactionType | str,
        reference_type: Optional[ReferenceType | str] = None,
        reference_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """
        Move `amount` credits. A null side is the system (escrow / mint / burn).
        Raises InsufficientFunds before any write if the debit would go negative.
        """
        try:
            tx_type = TransactionType(tx_type).value
        except ValueError:
            raise ValidationError(f"Invalid transaction type: {tx_type!r}")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError(f"Transfer amount must be a positive integer, got {amount!r}")
        if from_user_id is None and to_user_id is None:
            raise ValidationError("A transfer needs at least one party")
        if from_user_id is not None and from_user_id == to_user_id:
            raise ValidationError("Cannot transfer credits to the same user")

        # Resolve the credited side first so a missing user fails before the debit is written
        if to_user_id is not None:
            await self._require_user(to_user_id)
        if from_user_id is not None:
            await self._debit(from_user_id, amount)
        if to_user_id is not None:
            await self._credit(to_user_id, amount)

        ref_type = reference_type.value if isinstance(reference_type, ReferenceType) else reference_type
        tx = Transaction(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            type=tx_type,
            reference_type=ref_type,
            reference_id=reference_id,
            description=description,
            created_at=utcnow(),
        )
        self.db.add(tx)
        await self.db.flush()
        logger.info(
            f"Ledger {tx_type}: {amount} credits {from_user_id or 'system'} -> {to_user_id or 'system'} "
            f"({ref_type or '-'}:{reference_id or '-'})"
        )
        return tx

    async def add(self, to_user_id: uuid.UUID, amount: int, reason: Optional[str] = None) -> Transaction:
        """Administrative credit grant (system -> user)."""
        return await self.transfer(
            None, to_user_id, amount, TransactionType.ADMIN_ADD,
            reference_type=ReferenceType.MANUAL,
            description=reason or "Admin credit adjustment",
        )

    async def remove(self, from_user_id: uuid.UUID, amount: int, reason: Optional[str] = None) -> Transaction:
        """
        Administrative credit removal (user -> system). Clamped to the current
        balance; the recorded amount is what was actually removed.
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError(f"Amount must be a positive integer, got {amount!r}")
        current = await self.balance(from_user_id)
        removable = min(amount, current)
        if removable <= 0:
            raise InsufficientFunds("User has no credits to remove", balance=current, required=amount)
        return await self.transfer(
            from_user_id, None, removable, TransactionType.ADMIN_REMOVE,
            reference_type=ReferenceType.MANUAL,
            description=reason or "Admin credit adjustment",
        )

    # ── Internals ─────────────────────────────────────────────────────

    async def _require_user(self, user_id: uuid.UUID) -> None:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError("User not found")

    async def _debit(self, user_id: uuid.UUID, amount: int) -> None:
        # Conditional read-modify-write in one statement: concurrent debits cannot overdraw
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        current = await self.balance(user_id)  # raises NotFoundError for unknown users
        raise InsufficientFunds(
            f"Insufficient credits: balance {current}, required {amount}",
            balance=current,
            required=amount,
        )

    async def _credit(self, user_id: uuid.UUID, amount: int) -> None:
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("User not found")
