# timebank/models/checkpoint.py
from sqlalchemy import (
    Column, Integer, Boolean, ForeignKey, TIMESTAMP, Enum, UniqueConstraint
)
from sqlalchemy.orm import relationship
from timebank.database import Base
import enum


class CheckpointKind(str, enum.Enum):
    CHECKIN = "checkin"
    COMPLETION = "completion"


class Checkpoint(Base):
    """Two-party barrier row. Slot A is the teacher, slot B the student."""

    __tablename__ = "checkpoints"
    __table_args__ = (
        UniqueConstraint("session_id", "kind", name="uq_checkpoints_session_kind"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(Enum(CheckpointKind), nullable=False)
    arrived_a = Column(Boolean, default=False, nullable=False)
    arrived_b = Column(Boolean, default=False, nullable=False)
    fired = Column(Boolean, default=False, nullable=False)
    fired_at = Column(TIMESTAMP)

    session = relationship("Session", back_populates="checkpoints")
