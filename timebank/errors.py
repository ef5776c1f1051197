# timebank/errors.py
"""
Lifecycle error taxonomy.

Services raise these; API routers turn them into HTTPException responses
using ``status_code`` and ``to_detail()``.
"""

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for every guard or integrity failure raised by the engine."""

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, message: str, *, session_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.session_id is not None:
            detail["session_id"] = self.session_id
        return detail


class SessionNotFound(LifecycleError):
    code = "session_not_found"
    status_code = 404


class InvalidSessionTerms(LifecycleError):
    code = "invalid_session_terms"
    status_code = 422


class InvalidTransition(LifecycleError):
    """The requested action is not legal from the session's current status."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, *, session_id: Optional[int] = None,
                 current_status: Optional[str] = None, action: Optional[str] = None):
        super().__init__(message, session_id=session_id)
        self.current_status = current_status
        self.action = action

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["current_status"] = self.current_status
        detail["action"] = self.action
        return detail


class InsufficientCredits(LifecycleError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, message: str, *, session_id: Optional[int] = None,
                 required: Any = None, available: Any = None):
        super().__init__(message, session_id=session_id)
        self.required = required
        self.available = available

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["required"] = str(self.required) if self.required is not None else None
        detail["available"] = str(self.available) if self.available is not None else None
        return detail


class OutOfCheckInWindow(LifecycleError):
    """Check-in attempted outside [scheduled_at - window, scheduled_at + window]."""

    code = "out_of_checkin_window"
    status_code = 409

    def __init__(self, message: str, *, session_id: Optional[int] = None,
                 seconds_until_open: Optional[int] = None, window_closed: bool = False):
        super().__init__(message, session_id=session_id)
        self.seconds_until_open = seconds_until_open
        self.window_closed = window_closed

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["seconds_until_open"] = self.seconds_until_open
        detail["window_closed"] = self.window_closed
        return detail


class NotParticipant(LifecycleError):
    code = "not_participant"
    status_code = 403


class ForbiddenAction(LifecycleError):
    """A participant attempted an action reserved for the other role."""

    code = "forbidden_action"
    status_code = 403


class ConcurrentModification(LifecycleError):
    """Version mismatch on write. Callers re-read and retry."""

    code = "concurrent_modification"
    status_code = 409


class EscrowInconsistency(LifecycleError):
    """Ledger state contradicts session state. Never retried."""

    code = "escrow_inconsistency"
    status_code = 500
