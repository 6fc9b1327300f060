from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mailledger.core.auth_dependencies import get_current_user_id
from mailledger.core.database import get_db
from mailledger.schemas.email_account import (
    AuthorizationResponse,
    EmailAccountListResponse,
    EmailAccountResponse,
    SyncRequestedResponse,
)
from mailledger.services.account_service import (
    complete_authorization,
    disconnect_account,
    get_account_for_user,
    initiate_authorization,
    list_accounts,
    parse_provider,
    to_response,
)

email_auth_router = APIRouter(prefix="/api/email-auth", tags=["Email Accounts"])


@email_auth_router.post(
    "/{provider}/authorize",
    response_model=AuthorizationResponse,
)
def authorize_route(
    provider: str,
    user_id: int = Depends(get_current_user_id),
):
    return initiate_authorization(user_id, parse_provider(provider))


@email_auth_router.get(
    "/callback/{provider}",
    response_model=EmailAccountResponse,
)
def callback_route(
    provider: str,
    code: str = Query(...),
    state: str = Query(...),
    db: Session = Depends(get_db),
):
    # the provider redirect carries no bearer token; the state identifies the user
    account = complete_authorization(db, parse_provider(provider), code, state)
    return to_response(account)


@email_auth_router.get(
    "/accounts",
    response_model=EmailAccountListResponse,
)
def list_accounts_route(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    accounts = [to_response(a) for a in list_accounts(db, user_id)]
    return {"accounts": accounts, "total": len(accounts)}


@email_auth_router.delete(
    "/accounts/{account_id}",
    response_model=EmailAccountResponse,
)
def disconnect_account_route(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return to_response(disconnect_account(db, account_id, user_id))


@email_auth_router.post(
    "/accounts/{account_id}/sync",
    response_model=SyncRequestedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_sync_route(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    account = get_account_for_user(db, account_id, user_id)
    if not account.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Account is disconnected; re-authorize it first",
        )

    from mailledger.tasks.extraction_sync import sync_mail_account
    result = sync_mail_account.delay(account.id)
    return {"account_id": account.id, "task_id": result.id, "message": "Sync scheduled"}
