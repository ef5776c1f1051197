# timebank/models/session.py
from sqlalchemy import (
    Column, Integer, String, Boolean, Numeric, Text, TIMESTAMP, Enum, func
)
from sqlalchemy.orm import relationship
from timebank.database import Base
from timebank.models.types import CreditAmount
import enum
from decimal import Decimal


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    def can_transition_to(self, target: "SessionStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


class SessionMode(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    HYBRID = "hybrid"


class DisputeResolution(str, enum.Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"
    REJECT = "reject"


# Single source of truth for legal status moves.
ALLOWED_TRANSITIONS = {
    SessionStatus.PENDING: frozenset({
        SessionStatus.APPROVED,
        SessionStatus.REJECTED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.APPROVED: frozenset({
        SessionStatus.IN_PROGRESS,
        SessionStatus.CANCELLED,
        SessionStatus.DISPUTED,
    }),
    SessionStatus.IN_PROGRESS: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.DISPUTED,
    }),
    # Admin-only resolution
    SessionStatus.DISPUTED: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.REJECTED,
    }),
}

ACTIVE_STATUSES = (
    SessionStatus.PENDING,
    SessionStatus.APPROVED,
    SessionStatus.IN_PROGRESS,
)

# Largest terms a booking may carry
MAX_DURATION_HOURS = Decimal("9999.99")
MAX_CREDIT_AMOUNT = Decimal("9999999999.99")


class Session(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)

    # Participants (opaque ids owned by the identity service)
    teacher_id = Column(Integer, nullable=False, index=True)
    student_id = Column(Integer, nullable=False, index=True)
    skill_reference = Column(String(100), nullable=False)

    # Terms
    title = Column(String(200))
    notes = Column(Text)
    duration_hours = Column(Numeric(6, 2), nullable=False)
    credit_amount = Column(CreditAmount, nullable=False)
    mode = Column(Enum(SessionMode), default=SessionMode.ONLINE, nullable=False)
    scheduled_at = Column(TIMESTAMP, nullable=True)
    location = Column(String(255))
    meeting_link = Column(String(255))

    status = Column(Enum(SessionStatus), default=SessionStatus.PENDING, nullable=False, index=True)

    # Check-in barrier mirror
    teacher_checked_in = Column(Boolean, default=False, nullable=False)
    student_checked_in = Column(Boolean, default=False, nullable=False)
    teacher_checked_in_at = Column(TIMESTAMP)
    student_checked_in_at = Column(TIMESTAMP)

    # Completion barrier mirror
    teacher_confirmed = Column(Boolean, default=False, nullable=False)
    student_confirmed = Column(Boolean, default=False, nullable=False)

    # Write-once
    started_at = Column(TIMESTAMP)
    completed_at = Column(TIMESTAMP)

    credit_held = Column(Boolean, default=False, nullable=False)

    # Cancellation / rejection
    cancelled_by = Column(Integer)
    cancellation_reason = Column(Text)
    rejection_reason = Column(Text)

    # Dispute
    disputed_by = Column(Integer)
    dispute_reason = Column(Text)
    dispute_opened_at = Column(TIMESTAMP)
    dispute_resolution = Column(Enum(DisputeResolution))
    dispute_resolved_at = Column(TIMESTAMP)

    version = Column(Integer, nullable=False)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, onupdate=func.now())

    escrow = relationship("EscrowEntry", back_populates="session", uselist=False)
    checkpoints = relationship("Checkpoint", back_populates="session")

    __mapper_args__ = {"version_id_col": version}

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.teacher_id, self.student_id)

    def __repr__(self) -> str:
        return f"<Session id={self.id} status={self.status} version={self.version}>"
