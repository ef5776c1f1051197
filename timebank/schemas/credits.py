# timebank/schemas/credits.py
"""
Credit Ledger Pydantic Schemas
API request/response models for balances, history and admin grants
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal


# ======================
# ACCOUNT SCHEMAS
# ======================
class CreditAccountResponse(BaseModel):
    """Balance response for API"""
    user_id: int = Field(..., description="User identifier")
    available: Decimal = Field(..., description="Spendable credits")
    held: Decimal = Field(..., description="Credits locked in session escrow")
    total: Decimal = Field(..., description="available + held")

    model_config = ConfigDict(from_attributes=True)


class OpenAccountRequest(BaseModel):
    """Admin account opening (identity service hook)"""
    user_id: int = Field(..., description="User receiving the account")
    initial_amount: Optional[Decimal] = Field(None, ge=0, description="Defaults to the configured allocation")


# ======================
# TRANSACTION SCHEMAS
# ======================
class CreditTransactionResponse(BaseModel):
    """Transaction history row"""
    transaction_id: int = Field(..., description="Transaction identifier")
    type: str = Field(..., description="initial/grant/hold/release/refund")
    direction: str = Field(..., description="CREDIT/DEBIT/INTERNAL from the caller's perspective")
    amount: Decimal = Field(..., description="Credit amount")
    description: Optional[str] = Field(None, description="Transaction description")
    session_id: Optional[int] = Field(None, description="Associated session ID")
    timestamp: Optional[datetime] = Field(None, description="Transaction timestamp")


class LedgerEntryResponse(BaseModel):
    type: str
    amount: Decimal
    user_id: int
    counterparty_id: Optional[int] = None
    timestamp: Optional[datetime] = None


class SessionLedgerResponse(BaseModel):
    """Escrow state and audit trail for one session"""
    session_id: int
    escrow_state: Optional[str] = Field(None, description="held/released/refunded, or null before approval")
    escrow_amount: Optional[Decimal] = None
    transactions: List[LedgerEntryResponse] = []


# ======================
# ADMIN SCHEMAS
# ======================
class CreditGrantRequest(BaseModel):
    """Admin manual credit adjustment"""
    target_user_id: int = Field(..., description="User receiving credits")
    amount: Decimal = Field(..., gt=0, description="Number of credits to grant")
    reason: str = Field(..., min_length=10, max_length=255, description="Reason for the grant")


class PlatformSummaryResponse(BaseModel):
    total_accounts: int
    total_available: Decimal
    total_held: Decimal
    open_escrow_count: int
    open_escrow_amount: Decimal
