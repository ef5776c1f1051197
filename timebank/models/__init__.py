# timebank/models/__init__.py
# Import models in dependency order
from .session import Session, SessionStatus, SessionMode, DisputeResolution
from .ledger import CreditAccount, EscrowEntry, EscrowState, CreditTransaction, TransactionType
from .checkpoint import Checkpoint, CheckpointKind
from .notification import Notification

__all__ = [
    "Session",
    "SessionStatus",
    "SessionMode",
    "DisputeResolution",
    "CreditAccount",
    "EscrowEntry",
    "EscrowState",
    "CreditTransaction",
    "TransactionType",
    "Checkpoint",
    "CheckpointKind",
    "Notification",
]
