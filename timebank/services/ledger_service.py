# timebank/services/ledger_service.py
"""
Credit Ledger - Business Logic Service

Per-user balances have two components, ``available`` and ``held``. Session
escrow moves credits between them through three primitives:

- hold:    payer available -> payer held        (creates an EscrowEntry)
- release: payer held      -> payee available   (escrow becomes released)
- refund:  payer held      -> payer available   (escrow becomes refunded)

Each primitive is a conditional UPDATE, so a stale or concurrent caller
cannot apply a transfer twice. The primitives only flush; the caller owns
the surrounding transaction and commits it together with the session row.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timebank import models
from timebank.config import settings
from timebank.errors import (
    ConcurrentModification,
    EscrowInconsistency,
    InsufficientCredits,
)
from timebank.models.ledger import (
    CreditAccount,
    CreditTransaction,
    EscrowEntry,
    EscrowState,
    TransactionType,
)
from timebank.models.types import CENT
from timebank.services.timing_policy import utcnow

logger = logging.getLogger(__name__)
integrity_logger = logging.getLogger("timebank.integrity")

Amount = Union[int, float, str, Decimal]


def to_amount(value: Amount) -> Decimal:
    """Quantize a credit amount to two decimal places."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _expire_ledger_rows(db: Session) -> None:
    """Drop cached ledger objects after a bulk UPDATE bypassed the identity map."""
    for instance in list(db.identity_map.values()):
        if isinstance(instance, (CreditAccount, EscrowEntry)):
            db.expire(instance)


def _record(
    db: Session,
    *,
    user_id: int,
    transaction_type: TransactionType,
    amount: Decimal,
    session_id: Optional[int] = None,
    escrow_id: Optional[int] = None,
    counterparty_id: Optional[int] = None,
    description: Optional[str] = None,
) -> CreditTransaction:
    transaction = CreditTransaction(
        user_id=user_id,
        counterparty_id=counterparty_id,
        session_id=session_id,
        escrow_id=escrow_id,
        type=transaction_type,
        amount=amount,
        description=description,
    )
    db.add(transaction)
    db.flush()
    return transaction


def _integrity_fault(message: str, *, session_id: Optional[int] = None) -> EscrowInconsistency:
    integrity_logger.critical("Escrow integrity fault (session_id=%s): %s", session_id, message)
    return EscrowInconsistency(message, session_id=session_id)


# =====================================
# ACCOUNT OPERATIONS
# =====================================

def get_account(db: Session, user_id: int) -> Optional[CreditAccount]:
    return db.query(CreditAccount).filter(CreditAccount.user_id == user_id).first()


def ensure_account(db: Session, user_id: int) -> CreditAccount:
    """Return the user's account, creating an empty one if needed (flush only)."""
    account = get_account(db, user_id)
    if account:
        return account
    account = CreditAccount(user_id=user_id, available=Decimal("0"), held=Decimal("0"))
    db.add(account)
    db.flush()
    return account


def open_account(db: Session, user_id: int, initial_amount: Optional[Amount] = None) -> CreditAccount:
    """
    Create a credit account with an initial allocation.

    Args:
        db: Database session
        user_id: Opaque user id from the identity service
        initial_amount: Starting available balance (defaults to INITIAL_CREDIT_ALLOCATION)

    Returns:
        Created CreditAccount

    Raises:
        ValueError: If the account already exists or the amount is negative
    """
    if get_account(db, user_id):
        raise ValueError(f"Credit account already exists for user {user_id}")

    amount = to_amount(
        settings.INITIAL_CREDIT_ALLOCATION if initial_amount is None else initial_amount
    )
    if amount < 0:
        raise ValueError("Initial allocation cannot be negative")

    try:
        account = CreditAccount(user_id=user_id, available=amount, held=Decimal("0"))
        db.add(account)
        db.flush()
        _record(
            db,
            user_id=user_id,
            transaction_type=TransactionType.INITIAL,
            amount=amount,
            description="Initial credit allocation",
        )
        db.commit()
        db.refresh(account)
    except IntegrityError:
        db.rollback()
        raise ValueError(f"Credit account already exists for user {user_id}")
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info("Opened credit account user_id=%s available=%s", user_id, amount)
    return account


def grant(db: Session, user_id: int, amount: Amount, reason: str) -> CreditAccount:
    """Add credits to a user's available balance (admin adjustment)."""
    value = to_amount(amount)
    if value <= 0:
        raise ValueError("Grant amount must be positive")

    try:
        account = ensure_account(db, user_id)
        db.query(CreditAccount).filter(CreditAccount.id == account.id).update(
            {CreditAccount.available: CreditAccount.available + value},
            synchronize_session=False,
        )
        _record(
            db,
            user_id=user_id,
            transaction_type=TransactionType.GRANT,
            amount=value,
            description=reason[:255],
        )
        db.commit()
        db.refresh(account)
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info("Granted %s credits to user_id=%s", value, user_id)
    return account


def get_balance(db: Session, user_id: int) -> Dict[str, Any]:
    """
    Get available, held and total balance for a user.

    Raises:
        ValueError: If the account does not exist
    """
    account = get_account(db, user_id)
    if not account:
        raise ValueError(f"Credit account not found for user {user_id}")
    return {
        "user_id": user_id,
        "available": account.available,
        "held": account.held,
        "total": account.available + account.held,
    }


# =====================================
# ESCROW PRIMITIVES
# =====================================

def hold(
    db: Session,
    *,
    session_id: int,
    payer_id: int,
    payee_id: int,
    amount: Amount,
) -> EscrowEntry:
    """
    Move ``amount`` from the payer's available balance into held and open
    an EscrowEntry for the session.

    Raises:
        InsufficientCredits: If available < amount (nothing is changed)
        ConcurrentModification: If an escrow entry already exists for the session
    """
    value = to_amount(amount)

    moved = db.query(CreditAccount).filter(
        CreditAccount.user_id == payer_id,
        CreditAccount.available >= value,
    ).update(
        {
            CreditAccount.available: CreditAccount.available - value,
            CreditAccount.held: CreditAccount.held + value,
        },
        synchronize_session=False,
    )
    if moved != 1:
        available = db.query(CreditAccount.available).filter(
            CreditAccount.user_id == payer_id
        ).scalar()
        raise InsufficientCredits(
            f"Insufficient available credits. Required: {value}, Available: {available or 0}",
            session_id=session_id,
            required=value,
            available=available or Decimal("0"),
        )

    entry = EscrowEntry(
        session_id=session_id,
        payer_id=payer_id,
        payee_id=payee_id,
        amount=value,
        state=EscrowState.HELD,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        raise ConcurrentModification(
            f"Escrow already opened for session {session_id}", session_id=session_id
        )

    _record(
        db,
        user_id=payer_id,
        counterparty_id=payee_id,
        transaction_type=TransactionType.HOLD,
        amount=value,
        session_id=session_id,
        escrow_id=entry.id,
        description=f"Credits held for session {session_id}",
    )
    _expire_ledger_rows(db)
    logger.info("Held %s credits from user_id=%s for session_id=%s", value, payer_id, session_id)
    return entry


def _settle(db: Session, entry_id: int, target: EscrowState) -> bool:
    """Shared release/refund path. Returns False when already settled to ``target``."""
    row = db.query(
        EscrowEntry.session_id,
        EscrowEntry.payer_id,
        EscrowEntry.payee_id,
        EscrowEntry.amount,
    ).filter(EscrowEntry.id == entry_id).one_or_none()
    if row is None:
        raise _integrity_fault(f"Escrow entry {entry_id} does not exist")
    session_id, payer_id, payee_id, amount = row

    claimed = db.query(EscrowEntry).filter(
        EscrowEntry.id == entry_id,
        EscrowEntry.state == EscrowState.HELD,
    ).update(
        {EscrowEntry.state: target, EscrowEntry.settled_at: utcnow()},
        synchronize_session=False,
    )
    if claimed != 1:
        state = db.query(EscrowEntry.state).filter(EscrowEntry.id == entry_id).scalar()
        if state == target:
            logger.info(
                "Escrow %s already %s for session_id=%s; no-op", entry_id, target.value, session_id
            )
            return False
        raise _integrity_fault(
            f"Escrow {entry_id} is {state.value if state else 'missing'}, cannot mark {target.value}",
            session_id=session_id,
        )

    debited = db.query(CreditAccount).filter(
        CreditAccount.user_id == payer_id,
        CreditAccount.held >= amount,
    ).update(
        {CreditAccount.held: CreditAccount.held - amount},
        synchronize_session=False,
    )
    if debited != 1:
        raise _integrity_fault(
            f"Payer {payer_id} holds less than {amount} for escrow {entry_id}",
            session_id=session_id,
        )

    recipient_id = payee_id if target == EscrowState.RELEASED else payer_id
    ensure_account(db, recipient_id)
    db.query(CreditAccount).filter(CreditAccount.user_id == recipient_id).update(
        {CreditAccount.available: CreditAccount.available + amount},
        synchronize_session=False,
    )

    _record(
        db,
        user_id=payer_id,
        counterparty_id=payee_id,
        transaction_type=(
            TransactionType.RELEASE if target == EscrowState.RELEASED else TransactionType.REFUND
        ),
        amount=amount,
        session_id=session_id,
        escrow_id=entry_id,
        description=(
            f"Escrow released to teacher for session {session_id}"
            if target == EscrowState.RELEASED
            else f"Escrow refunded to student for session {session_id}"
        ),
    )
    _expire_ledger_rows(db)
    logger.info(
        "Escrow %s %s: %s credits for session_id=%s", entry_id, target.value, amount, session_id
    )
    return True


def release(db: Session, entry_id: int) -> bool:
    """
    Release held credits to the payee.

    Returns:
        True if the transfer was applied, False if the entry was already released

    Raises:
        EscrowInconsistency: If the entry was refunded or balances disagree
    """
    return _settle(db, entry_id, EscrowState.RELEASED)


def refund(db: Session, entry_id: int) -> bool:
    """
    Return held credits to the payer's available balance.

    Returns:
        True if the transfer was applied, False if the entry was already refunded

    Raises:
        EscrowInconsistency: If the entry was released or balances disagree
    """
    return _settle(db, entry_id, EscrowState.REFUNDED)


def get_escrow_for_session(db: Session, session_id: int) -> Optional[EscrowEntry]:
    return db.query(EscrowEntry).filter(EscrowEntry.session_id == session_id).first()


# =====================================
# TRANSACTION HISTORY
# =====================================

def get_transaction_history(
    db: Session,
    user_id: int,
    limit: int = 50,
    offset: int = 0
) -> List[Dict[str, Any]]:
    """
    Retrieve formatted transaction history for a user, newest first.

    A release appears for both the payer (debit from held) and the payee
    (credit to available).
    """
    transactions = db.query(CreditTransaction).filter(
        or_(
            CreditTransaction.user_id == user_id,
            CreditTransaction.counterparty_id == user_id,
        )
    ).order_by(
        CreditTransaction.timestamp.desc(),
        CreditTransaction.id.desc(),
    ).limit(limit).offset(offset).all()

    history = []
    for t in transactions:
        if t.type == TransactionType.RELEASE:
            direction = "CREDIT" if t.counterparty_id == user_id else "DEBIT"
        elif t.type in (TransactionType.INITIAL, TransactionType.GRANT):
            direction = "CREDIT"
        else:
            # hold and refund only move credits within the payer's own account
            direction = "INTERNAL"
        history.append({
            "transaction_id": t.id,
            "type": t.type.value,
            "direction": direction,
            "amount": t.amount,
            "description": t.description,
            "session_id": t.session_id,
            "timestamp": t.timestamp.isoformat() if t.timestamp else None,
        })
    return history


def get_session_ledger(db: Session, session_id: int) -> Dict[str, Any]:
    """Escrow state and audit trail for one session."""
    entry = get_escrow_for_session(db, session_id)
    transactions = db.query(CreditTransaction).filter(
        CreditTransaction.session_id == session_id
    ).order_by(CreditTransaction.id.asc()).all()

    return {
        "session_id": session_id,
        "escrow_state": entry.state.value if entry else None,
        "escrow_amount": entry.amount if entry else None,
        "transactions": [
            {
                "type": t.type.value,
                "amount": t.amount,
                "user_id": t.user_id,
                "counterparty_id": t.counterparty_id,
                "timestamp": t.timestamp.isoformat() if t.timestamp else None,
            }
            for t in transactions
        ],
    }


# =====================================
# ANALYTICS (ADMIN)
# =====================================

def get_platform_summary(db: Session) -> Dict[str, Any]:
    total_available = db.query(func.sum(CreditAccount.available)).scalar() or Decimal("0")
    total_held = db.query(func.sum(CreditAccount.held)).scalar() or Decimal("0")
    open_escrows = db.query(EscrowEntry).filter(EscrowEntry.state == EscrowState.HELD).count()
    escrowed = db.query(func.sum(EscrowEntry.amount)).filter(
        EscrowEntry.state == EscrowState.HELD
    ).scalar() or Decimal("0")

    return {
        "total_accounts": db.query(models.CreditAccount).count(),
        "total_available": to_amount(total_available),
        "total_held": to_amount(total_held),
        "open_escrow_count": open_escrows,
        "open_escrow_amount": to_amount(escrowed),
    }
