# timebank/schemas/__init__.py

# Auth schemas
from .auth import TokenData

# Session schemas
from .session import (
    SessionCreate,
    SessionReason,
    DisputeResolveRequest,
    SessionResponse,
    SessionProgressResponse,
)

# Ledger schemas
from .credits import (
    CreditAccountResponse,
    OpenAccountRequest,
    CreditTransactionResponse,
    SessionLedgerResponse,
    CreditGrantRequest,
    PlatformSummaryResponse,
)

from .notification import NotificationResponse

__all__ = [
    "TokenData",
    "SessionCreate",
    "SessionReason",
    "DisputeResolveRequest",
    "SessionResponse",
    "SessionProgressResponse",
    "CreditAccountResponse",
    "OpenAccountRequest",
    "CreditTransactionResponse",
    "SessionLedgerResponse",
    "CreditGrantRequest",
    "PlatformSummaryResponse",
    "NotificationResponse",
]
