"""
Transactions Router — The caller's ledger history and balance.
"""

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import get_current_user_any_status
from app.database import get_db
from app.models import User
from app.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_transactions(
    limit: int = Query(200, ge=1, le=1000),
    user: User = Depends(get_current_user_any_status),
    db: AsyncSession = Depends(get_db),
):
    """Newest first; each entry is tagged received (credited to the caller) or given."""
    return {"transactions": await CreditLedger(db).history(user.id, limit=limit)}


@router.get("/balance")
async def get_balance(
    user: User = Depends(get_current_user_any_status),
    db: AsyncSession = Depends(get_db),
):
    ledger = CreditLedger(db)
    return {
        "credits": await ledger.balance(user.id),
        "ledger_total": await ledger.reconcile(user.id),
    }
