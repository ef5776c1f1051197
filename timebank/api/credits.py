# timebank/api/credits.py
"""
Credit Ledger API Router

Endpoints:
- GET /credits/balance       - Current user's available / held balance
- GET /credits/transactions  - Transaction history (paginated)
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List

from timebank.database import get_db
from timebank.schemas.credits import CreditAccountResponse, CreditTransactionResponse
from timebank.services.ledger_service import get_balance, get_transaction_history
from timebank.utils.security import Actor, get_current_actor

router = APIRouter(prefix="/credits", tags=["credits"])


# ======================
# BALANCE
# ======================
@router.get("/balance", response_model=CreditAccountResponse)
def get_my_balance(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Get the current user's credit balance.

    Returns:
        - available: Spendable credits
        - held: Credits locked in escrow for approved sessions
        - total: available + held
    """
    try:
        return CreditAccountResponse(**get_balance(db, actor.user_id))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ======================
# TRANSACTION HISTORY
# ======================
@router.get("/transactions", response_model=List[CreditTransactionResponse])
def get_my_transactions(
    limit: int = Query(50, ge=1, le=100, description="Number of transactions to return"),
    offset: int = Query(0, ge=0, description="Number of transactions to skip"),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Get the current user's credit transactions, newest first."""
    return [
        CreditTransactionResponse(**t)
        for t in get_transaction_history(db, actor.user_id, limit, offset)
    ]
