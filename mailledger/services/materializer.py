from typing import Callable, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from mailledger.core.config import settings
from mailledger.core.constants import (
    BANK_TAGS, EMAIL_EXTRACTED_TAG, LedgerTransactionType, ProcessingState, TransactionKind,
)
from mailledger.core.database import SessionLocal
from mailledger.core.log import get_job_logger
from mailledger.models.extracted_transaction import ExtractedTransaction
from mailledger.schemas.ledger import LedgerTransactionCreate
from mailledger.services import extraction_store
from mailledger.services.ledger_client import LedgerClient
from mailledger.utils.dates import as_utc, utcnow
from mailledger.utils.parser import sender_domain

logger = get_job_logger("transaction_materializer")


INCOME_KINDS = {
    TransactionKind.CREDIT,
    TransactionKind.ATM_DEPOSIT,
    TransactionKind.INTEREST_CREDIT,
    TransactionKind.SALARY_CREDIT,
    TransactionKind.DIVIDEND_CREDIT,
    TransactionKind.REFUND,
}


def ledger_type_for(kind: Optional[TransactionKind]) -> LedgerTransactionType:
    # transfers and everything debit-like are expenses
    return LedgerTransactionType.INCOME if kind in INCOME_KINDS else LedgerTransactionType.EXPENSE


def bank_tag_for(sender: Optional[str]) -> Optional[str]:
    domain = sender_domain(sender or "")
    for bank_domain, tag in BANK_TAGS.items():
        if domain == bank_domain or domain.endswith("." + bank_domain):
            return tag
    return None


def build_description(candidate: ExtractedTransaction) -> str:
    if candidate.merchant_name:
        description = f"Payment to {candidate.merchant_name}"
    elif candidate.description:
        description = candidate.description
    else:
        description = "Transaction from email"

    if candidate.transaction_id:
        description += f" (ID: {candidate.transaction_id})"
    return description


def build_notes(candidate: ExtractedTransaction) -> str:
    lines = [
        "Automatically extracted from email",
        f"Sender: {candidate.sender_email or ''}",
        f"Subject: {candidate.email_subject or ''}",
        f"Confidence: {(candidate.confidence_score or 0) * 100:.2f}%",
    ]
    if candidate.account_number_last4:
        lines.append(f"Account: ****{candidate.account_number_last4}")
    if candidate.card_last4:
        lines.append(f"Card: ****{candidate.card_last4}")
    if candidate.reference_number:
        lines.append(f"Reference: {candidate.reference_number}")
    if candidate.category_suggestion:
        lines.append(f"Suggested category: {candidate.category_suggestion}")
    return "\n".join(lines)


def build_ledger_request(candidate: ExtractedTransaction, extra_notes: Optional[str] = None) -> LedgerTransactionCreate:
    kind = candidate.transaction_type or TransactionKind.DEBIT
    tags = [EMAIL_EXTRACTED_TAG, kind.value.lower()]
    bank_tag = bank_tag_for(candidate.sender_email)
    if bank_tag:
        tags.append(bank_tag)

    notes = build_notes(candidate)
    if extra_notes:
        notes += f"\nUser notes: {extra_notes}"

    return LedgerTransactionCreate(
        amount=candidate.amount,
        type=ledger_type_for(kind),
        description=build_description(candidate),
        transaction_date=as_utc(candidate.transaction_date) or as_utc(candidate.extracted_at) or utcnow(),
        category_id=settings.LEDGER_DEFAULT_CATEGORY_ID,
        category_name=candidate.category_suggestion,
        merchant_name=candidate.merchant_name,
        notes=notes,
        source=settings.LEDGER_SOURCE,
        tags=tags,
        account_name=settings.LEDGER_ACCOUNT_NAME,
        payment_method=settings.LEDGER_PAYMENT_METHOD,
    )


class TransactionMaterializer:
    """
    Drains unprocessed high-confidence candidates into the ledger.

    Every attempt first claims the row (unprocessed → processing) with a
    conditional UPDATE, so concurrent runs never create the same ledger
    transaction twice.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        ledger_client: Optional[LedgerClient] = None,
        threshold: Optional[float] = None,
        batch_size: Optional[int] = None,
        claim_timeout_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ledger_client = ledger_client or LedgerClient()
        self.threshold = settings.AUTO_CREATE_CONFIDENCE_THRESHOLD if threshold is None else threshold
        self.batch_size = batch_size or settings.MATERIALIZER_BATCH_SIZE
        self.claim_timeout_seconds = claim_timeout_seconds or settings.MATERIALIZER_CLAIM_TIMEOUT_SECONDS

    def run(self) -> dict:
        summary = {"processed": 0, "failed": 0, "skipped": 0, "stale": 0}
        db = self.session_factory()
        try:
            summary["stale"] = extraction_store.release_stale_claims(db, self.claim_timeout_seconds)
            if summary["stale"]:
                logger.warning(f"Moved {summary['stale']} stale claim(s) to failed")

            candidates = extraction_store.unprocessed_above_threshold(db, self.threshold, self.batch_size)
            candidate_ids = [c.id for c in candidates]
            logger.info(f"{len(candidate_ids)} candidate(s) at or above confidence {self.threshold}")

            for candidate_id in candidate_ids:
                result = self.materialize(db, candidate_id)
                summary[result] += 1
        finally:
            db.close()

        logger.info(
            f"Materializer run: {summary['processed']} processed, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        return summary

    def materialize(self, db: Session, candidate_id: int, extra_notes: Optional[str] = None) -> str:
        """Claim and push one candidate. Returns "processed", "failed" or "skipped"."""
        if not extraction_store.claim(db, candidate_id):
            logger.info(f"[{candidate_id}] Already claimed or no longer unprocessed, skipping")
            return "skipped"
        return self.push_claimed(db, candidate_id, extra_notes)

    def push_claimed(self, db: Session, candidate_id: int, extra_notes: Optional[str] = None) -> str:
        db.expire_all()
        candidate = extraction_store.get(db, candidate_id)
        try:
            user_id = candidate.email_account.user_id
            request = build_ledger_request(candidate, extra_notes)
            ledger_id = self.ledger_client.create_transaction(user_id, request)
        except Exception as exc:
            db.rollback()
            extraction_store.mark_failed(db, candidate_id, f"Processing failed: {exc}")
            logger.error(f"[{candidate_id}] Failed to create ledger transaction: {exc}")
            return "failed"

        extraction_store.mark_processed(db, candidate_id, ledger_id)
        logger.info(f"[{candidate_id}] Created ledger transaction {ledger_id}")
        return "processed"


# ==================== MANUAL REVIEW ====================

def review_candidate(
    db: Session,
    candidate_id: int,
    user_id: int,
    approved: bool,
    notes: Optional[str] = None,
    materializer: Optional[TransactionMaterializer] = None,
) -> ExtractedTransaction:
    """Approve (create now, ignoring the threshold) or reject a candidate the user owns."""
    candidate = extraction_store.get_for_user(db, candidate_id, user_id)
    if not candidate:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Extracted transaction not found",
        )

    if approved:
        if not extraction_store.claim(db, candidate_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Transaction is no longer awaiting review",
            )
        materializer = materializer or TransactionMaterializer(session_factory=lambda: db)
        materializer.push_claimed(db, candidate_id, notes)
    else:
        if not extraction_store.mark_failed(db, candidate_id, f"Rejected by user: {notes or ''}".strip()):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Transaction is no longer awaiting review",
            )
        logger.info(f"[{candidate_id}] Rejected by user {user_id}")

    db.expire_all()
    return extraction_store.get(db, candidate_id)


def retry_candidate(db: Session, candidate_id: int, user_id: int) -> ExtractedTransaction:
    candidate = extraction_store.get_for_user(db, candidate_id, user_id)
    if not candidate:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Extracted transaction not found",
        )
    if candidate.processing_state != ProcessingState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only failed transactions can be retried",
        )
    if not extraction_store.reset_for_retry(db, candidate_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only failed transactions can be retried",
        )
    db.expire_all()
    return extraction_store.get(db, candidate_id)
