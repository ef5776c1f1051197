# timebank/services/checkpoint_service.py
"""
Two-party barrier keyed by (session_id, kind).

Each party marks its own slot. The barrier fires exactly once: the caller
whose conditional UPDATE flips ``fired`` from false to true is the only one
that observes FIRE, no matter how close together the two arrivals are.
"""

from __future__ import annotations

import enum
import logging

from sqlalchemy.orm import Session

from timebank.errors import EscrowInconsistency
from timebank.models.checkpoint import Checkpoint, CheckpointKind
from timebank.services.timing_policy import utcnow

logger = logging.getLogger(__name__)


class Slot(str, enum.Enum):
    A = "a"
    B = "b"


class Arrival(str, enum.Enum):
    FIRE = "fire"
    WAIT = "wait"
    ALREADY_FIRED = "already_fired"


def open_barrier(db: Session, session_id: int, kind: CheckpointKind) -> Checkpoint:
    """Create the barrier row. Called once, inside the booking transaction."""
    checkpoint = Checkpoint(session_id=session_id, kind=kind)
    db.add(checkpoint)
    db.flush()
    return checkpoint


def get_barrier(db: Session, session_id: int, kind: CheckpointKind):
    return db.query(Checkpoint).filter(
        Checkpoint.session_id == session_id,
        Checkpoint.kind == kind,
    ).first()


def arrive(db: Session, session_id: int, kind: CheckpointKind, slot: Slot) -> Arrival:
    """
    Mark ``slot`` as arrived and try to fire the barrier.

    Both writes are single conditional UPDATE statements; the fire update
    carries ``fired = false AND arrived_a AND arrived_b`` in its WHERE
    clause, so at most one transaction can ever match it.
    """
    column = Checkpoint.arrived_a if slot == Slot.A else Checkpoint.arrived_b
    db.query(Checkpoint).filter(
        Checkpoint.session_id == session_id,
        Checkpoint.kind == kind,
        column.is_(False),
    ).update({column: True}, synchronize_session=False)

    fired = db.query(Checkpoint).filter(
        Checkpoint.session_id == session_id,
        Checkpoint.kind == kind,
        Checkpoint.fired.is_(False),
        Checkpoint.arrived_a.is_(True),
        Checkpoint.arrived_b.is_(True),
    ).update(
        {Checkpoint.fired: True, Checkpoint.fired_at: utcnow()},
        synchronize_session=False,
    )

    for instance in list(db.identity_map.values()):
        if isinstance(instance, Checkpoint):
            db.expire(instance)

    if fired == 1:
        logger.info("Barrier %s fired for session_id=%s", kind.value, session_id)
        return Arrival.FIRE

    state = get_barrier(db, session_id, kind)
    if state is None:
        logging.getLogger("timebank.integrity").critical(
            "Missing %s barrier for session_id=%s", kind.value, session_id
        )
        raise EscrowInconsistency(
            f"Barrier {kind.value} vanished for session {session_id}", session_id=session_id
        )
    return Arrival.ALREADY_FIRED if state.fired else Arrival.WAIT


def barrier_state(db: Session, session_id: int, kind: CheckpointKind) -> dict:
    checkpoint = get_barrier(db, session_id, kind)
    if checkpoint is None:
        return {"kind": kind.value, "arrived_a": False, "arrived_b": False, "fired": False}
    return {
        "kind": kind.value,
        "arrived_a": checkpoint.arrived_a,
        "arrived_b": checkpoint.arrived_b,
        "fired": checkpoint.fired,
    }
