# timebank/models/ledger.py
from sqlalchemy import Column, Integer, String, ForeignKey, TIMESTAMP, Enum, func
from sqlalchemy.orm import relationship
from timebank.database import Base
from timebank.models.types import CreditAmount
import enum


class EscrowState(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class TransactionType(str, enum.Enum):
    INITIAL = "initial"
    GRANT = "grant"
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)
    available = Column(CreditAmount, default=0, nullable=False)
    held = Column(CreditAmount, default=0, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    @property
    def total(self):
        return self.available + self.held


class EscrowEntry(Base):
    __tablename__ = "escrow_entries"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), unique=True, nullable=False)
    payer_id = Column(Integer, nullable=False, index=True)   # student
    payee_id = Column(Integer, nullable=False, index=True)   # teacher
    amount = Column(CreditAmount, nullable=False)
    state = Column(Enum(EscrowState), default=EscrowState.HELD, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())
    settled_at = Column(TIMESTAMP)

    session = relationship("Session", back_populates="escrow")


class CreditTransaction(Base):
    """Append-only audit record. Rows are never updated or deleted."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    counterparty_id = Column(Integer, nullable=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="SET NULL"), nullable=True, index=True)
    escrow_id = Column(Integer, ForeignKey("escrow_entries.id", ondelete="SET NULL"), nullable=True)
    type = Column(Enum(TransactionType), nullable=False)
    amount = Column(CreditAmount, nullable=False)
    description = Column(String(255))
    timestamp = Column(TIMESTAMP, server_default=func.now())
