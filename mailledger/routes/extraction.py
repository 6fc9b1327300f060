from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mailledger.core.auth_dependencies import get_current_user_id
from mailledger.core.database import get_db
from mailledger.schemas.extracted_transaction import (
    ApprovalRequest,
    ExtractedTransactionPage,
    ExtractedTransactionResponse,
    ExtractionStats,
    SenderListResponse,
)
from mailledger.services import extraction_store
from mailledger.services.account_service import get_account_for_user, list_accounts
from mailledger.services.materializer import review_candidate, retry_candidate

extraction_router = APIRouter(prefix="/api/extraction", tags=["Extraction"])


@extraction_router.get("/transactions", response_model=ExtractedTransactionPage)
def list_transactions(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    processed: Optional[bool] = Query(None, description="false lists only candidates still awaiting processing"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    items, total = extraction_store.page_for_user(
        db, user_id, page=page, size=size, unprocessed_only=processed is False
    )
    return {"items": items, "total": total, "page": page, "size": size}


@extraction_router.get("/stats", response_model=ExtractionStats)
def extraction_stats(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return extraction_store.stats_for_user(db, user_id)


@extraction_router.post("/transactions/{candidate_id}/approve", response_model=ExtractedTransactionResponse)
def approve_transaction(
    candidate_id: int,
    payload: ApprovalRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return review_candidate(db, candidate_id, user_id, payload.approved, payload.notes)


@extraction_router.post("/transactions/{candidate_id}/retry", response_model=ExtractedTransactionResponse)
def retry_transaction(
    candidate_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return retry_candidate(db, candidate_id, user_id)


@extraction_router.get("/accounts/{account_id}/history", response_model=ExtractedTransactionPage)
def account_history(
    account_id: int,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    account = get_account_for_user(db, account_id, user_id)
    items, total = extraction_store.page_for_account(db, account.id, page=page, size=size)
    return {"items": items, "total": total, "page": page, "size": size}


@extraction_router.get("/senders", response_model=SenderListResponse)
def list_senders(
    account_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    if account_id is not None:
        account_ids = [get_account_for_user(db, account_id, user_id).id]
    else:
        account_ids = [a.id for a in list_accounts(db, user_id)]
    return {"senders": extraction_store.distinct_senders(db, account_ids)}


@extraction_router.get("/health")
def health():
    return {"status": "UP", "service": "extraction"}
