import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailledger.core.constants import ProcessingState
from mailledger.models.email_account import EmailAccount
from mailledger.models.extracted_transaction import ExtractedTransaction
from mailledger.schemas.extracted_transaction import TransactionCandidate
from mailledger.utils.dates import utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 1000


def exists(db: Session, account_id: int, message_id: str) -> bool:
    return db.query(ExtractedTransaction.id).filter(
        ExtractedTransaction.email_account_id == account_id,
        ExtractedTransaction.email_message_id == message_id,
    ).first() is not None


def save(db: Session, account_id: int, message_id: str, candidate: TransactionCandidate) -> Optional[ExtractedTransaction]:
    """Insert a new candidate. Returns None when (account, message) is already stored."""
    row = ExtractedTransaction(
        email_account_id=account_id,
        email_message_id=message_id,
        processing_state=ProcessingState.UNPROCESSED,
        extracted_at=utcnow(),
        **candidate.model_dump(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent run stored the same message first
        db.rollback()
        logger.info(f"[{account_id}] Message {message_id} already extracted, skipping")
        return None
    db.refresh(row)
    return row


def get(db: Session, candidate_id: int) -> Optional[ExtractedTransaction]:
    return db.get(ExtractedTransaction, candidate_id)


def get_for_user(db: Session, candidate_id: int, user_id: int) -> Optional[ExtractedTransaction]:
    return (
        db.query(ExtractedTransaction)
        .join(EmailAccount, ExtractedTransaction.email_account_id == EmailAccount.id)
        .filter(ExtractedTransaction.id == candidate_id, EmailAccount.user_id == user_id)
        .first()
    )


# ==================== STATE TRANSITIONS ====================
# Each transition is one conditional UPDATE; rowcount tells whether we won.

def _transition(db: Session, candidate_id: int, from_states: tuple, values: dict) -> bool:
    result = db.execute(
        update(ExtractedTransaction)
        .where(
            ExtractedTransaction.id == candidate_id,
            ExtractedTransaction.processing_state.in_(from_states),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def claim(db: Session, candidate_id: int, now: Optional[datetime] = None) -> bool:
    """unprocessed → processing. Only one materializer attempt can win a candidate."""
    return _transition(
        db, candidate_id, (ProcessingState.UNPROCESSED,),
        {"processing_state": ProcessingState.PROCESSING, "claimed_at": now or utcnow()},
    )


def mark_processed(db: Session, candidate_id: int, ledger_transaction_id: str, processed_at: Optional[datetime] = None) -> bool:
    return _transition(
        db, candidate_id, (ProcessingState.UNPROCESSED, ProcessingState.PROCESSING),
        {
            "processing_state": ProcessingState.PROCESSED,
            "processed_at": processed_at or utcnow(),
            "created_transaction_id": str(ledger_transaction_id),
            "error_message": None,
        },
    )


def mark_failed(db: Session, candidate_id: int, error_detail: str) -> bool:
    return _transition(
        db, candidate_id, (ProcessingState.UNPROCESSED, ProcessingState.PROCESSING),
        {
            "processing_state": ProcessingState.FAILED,
            "processed_at": utcnow(),
            "created_transaction_id": None,
            "error_message": (error_detail or "")[:ERROR_MESSAGE_MAX_LENGTH],
        },
    )


def reset_for_retry(db: Session, candidate_id: int) -> bool:
    """failed → unprocessed, on an explicit operator decision."""
    return _transition(
        db, candidate_id, (ProcessingState.FAILED,),
        {
            "processing_state": ProcessingState.UNPROCESSED,
            "claimed_at": None,
            "processed_at": None,
            "error_message": None,
        },
    )


def release_stale_claims(db: Session, timeout_seconds: int, now: Optional[datetime] = None) -> int:
    """
    Claims older than the timeout belong to attempts that died mid-flight.
    The ledger call may or may not have happened, so they go to failed for
    manual review instead of back to unprocessed.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=timeout_seconds)
    result = db.execute(
        update(ExtractedTransaction)
        .where(
            ExtractedTransaction.processing_state == ProcessingState.PROCESSING,
            ExtractedTransaction.claimed_at < cutoff,
        )
        .values(
            processing_state=ProcessingState.FAILED,
            processed_at=now or utcnow(),
            error_message="Processing interrupted; ledger outcome unknown, review before retrying",
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


# ==================== QUERIES ====================

def unprocessed_above_threshold(db: Session, threshold: float, limit: int = 100) -> list[ExtractedTransaction]:
    return (
        db.query(ExtractedTransaction)
        .filter(
            ExtractedTransaction.processing_state == ProcessingState.UNPROCESSED,
            ExtractedTransaction.confidence_score >= threshold,
        )
        .order_by(
            ExtractedTransaction.confidence_score.desc(),
            ExtractedTransaction.extracted_at.asc(),
            ExtractedTransaction.id.asc(),
        )
        .limit(limit)
        .all()
    )


def _user_query(db: Session, user_id: int):
    return (
        db.query(ExtractedTransaction)
        .join(EmailAccount, ExtractedTransaction.email_account_id == EmailAccount.id)
        .filter(EmailAccount.user_id == user_id)
    )


def unprocessed_for_user(db: Session, user_id: int) -> list[ExtractedTransaction]:
    return (
        _user_query(db, user_id)
        .filter(ExtractedTransaction.processing_state == ProcessingState.UNPROCESSED)
        .order_by(ExtractedTransaction.transaction_date.desc(), ExtractedTransaction.id.desc())
        .all()
    )


def page_for_user(db: Session, user_id: int, page: int = 0, size: int = 20, unprocessed_only: bool = False):
    q = _user_query(db, user_id)
    if unprocessed_only:
        q = q.filter(ExtractedTransaction.processing_state == ProcessingState.UNPROCESSED)

    total = q.count()
    items = (
        q.order_by(ExtractedTransaction.transaction_date.desc(), ExtractedTransaction.id.desc())
        .offset(page * size)
        .limit(size)
        .all()
    )
    return items, total


def page_for_account(db: Session, account_id: int, page: int = 0, size: int = 20):
    q = db.query(ExtractedTransaction).filter(ExtractedTransaction.email_account_id == account_id)
    total = q.count()
    items = (
        q.order_by(ExtractedTransaction.transaction_date.desc(), ExtractedTransaction.id.desc())
        .offset(page * size)
        .limit(size)
        .all()
    )
    return items, total


def distinct_senders(db: Session, account_ids: list[int]) -> list[str]:
    if not account_ids:
        return []
    rows = (
        db.query(ExtractedTransaction.sender_email)
        .filter(
            ExtractedTransaction.email_account_id.in_(account_ids),
            ExtractedTransaction.sender_email.isnot(None),
        )
        .distinct()
        .order_by(ExtractedTransaction.sender_email)
        .all()
    )
    return [r[0] for r in rows]


def stats_for_user(db: Session, user_id: int, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    since = now - timedelta(hours=24)

    accounts = db.query(
        func.count(EmailAccount.id),
        func.coalesce(func.sum(EmailAccount.total_emails_processed), 0),
        func.coalesce(func.sum(EmailAccount.total_transactions_extracted), 0),
    ).filter(EmailAccount.user_id == user_id).one()

    active = db.query(func.count(EmailAccount.id)).filter(
        EmailAccount.user_id == user_id, EmailAccount.is_active.is_(True)
    ).scalar()

    unprocessed = _user_query(db, user_id).filter(
        ExtractedTransaction.processing_state == ProcessingState.UNPROCESSED
    ).count()

    recent_count, recent_avg = (
        db.query(func.count(ExtractedTransaction.id), func.avg(ExtractedTransaction.confidence_score))
        .join(EmailAccount, ExtractedTransaction.email_account_id == EmailAccount.id)
        .filter(EmailAccount.user_id == user_id, ExtractedTransaction.extracted_at >= since)
        .one()
    )

    return {
        "connected_accounts": accounts[0],
        "active_accounts": active or 0,
        "total_emails_processed": int(accounts[1]),
        "total_transactions_extracted": int(accounts[2]),
        "unprocessed_transactions": unprocessed,
        "extracted_last_24h": recent_count,
        "average_confidence_last_24h": round(float(recent_avg), 4) if recent_avg is not None else None,
    }
