from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from mailledger.core.config import settings
from mailledger.core.database import SessionLocal
from mailledger.core.exceptions import (
    AccountDeactivatedError, ProviderAuthError, ProviderError,
    TransientProviderError, UnsupportedProviderError,
)
from mailledger.core.log import get_job_logger
from mailledger.core.security import TokenCipher
from mailledger.models.email_account import EmailAccount
from mailledger.services import account_service, extraction_store
from mailledger.services.providers.base import MailProviderClient
from mailledger.services.providers.registry import get_provider_client
from mailledger.services.token_service import TokenLifecycleManager
from mailledger.utils.dates import as_utc, utcnow
from mailledger.utils.parser import parse_transaction_email

logger = get_job_logger("sync_orchestrator")
refresh_logger = get_job_logger("token_refresh")


@dataclass
class SyncOutcome:
    """Counters from one account's pass; never persisted on its own."""
    account_id: int
    emails_seen: int = 0
    transactions_extracted: int = 0
    failed_messages: int = 0
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class SyncOrchestrator:
    """
    One sync run: select due accounts, then process each on a bounded
    thread pool with its own session. `run` returns only after every
    dispatched account has finished.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory: Callable[..., MailProviderClient] = get_provider_client,
        cipher: Optional[TokenCipher] = None,
        pool_size: Optional[int] = None,
        max_messages: Optional[int] = None,
        interval_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.cipher = cipher
        self.pool_size = pool_size or settings.SYNC_WORKER_POOL_SIZE
        self.max_messages = max_messages or settings.SYNC_MAX_MESSAGES_PER_RUN
        self.interval_seconds = settings.SYNC_INTERVAL_SECONDS if interval_seconds is None else interval_seconds

    def run(self, now: Optional[datetime] = None) -> list[SyncOutcome]:
        db = self.session_factory()
        try:
            account_ids = account_service.accounts_due_for_sync(db, self.interval_seconds, now)
        finally:
            db.close()

        if not account_ids:
            logger.info("No accounts due for sync")
            return []

        logger.info(f"Syncing {len(account_ids)} account(s) with {self.pool_size} worker(s)")
        outcomes = []
        with ThreadPoolExecutor(max_workers=min(self.pool_size, len(account_ids))) as executor:
            futures = {executor.submit(self.sync_account, account_id): account_id for account_id in account_ids}
            for future in as_completed(futures):
                outcomes.append(future.result())

        synced = sum(1 for o in outcomes if o.ok)
        extracted = sum(o.transactions_extracted for o in outcomes)
        logger.info(f"Sync run finished: {synced}/{len(outcomes)} account(s) synced, {extracted} transaction(s) extracted")
        return sorted(outcomes, key=lambda o: o.account_id)

    def sync_account(self, account_id: int) -> SyncOutcome:
        """Process one account in isolation. Never raises."""
        db = self.session_factory()
        outcome = SyncOutcome(account_id=account_id)
        try:
            self._sync_account(db, account_id, outcome)
        except AccountDeactivatedError as exc:
            outcome.error = str(exc)
            logger.warning(f"[{account_id}] Sync stopped, account needs re-authorization: {exc.reason}")
        except ProviderAuthError as exc:
            # access token rejected mid-run; refresh before the next attempt
            db.rollback()
            outcome.error = str(exc)
            account = db.get(EmailAccount, account_id)
            if account is not None:
                TokenLifecycleManager(db, self.cipher, self.client_factory).invalidate_access_token(account)
            logger.warning(f"[{account_id}] Provider rejected access token, will refresh next run: {exc}")
        except UnsupportedProviderError as exc:
            outcome.skipped = True
            logger.error(f"[{account_id}] Skipping account: {exc}")
        except ProviderError as exc:
            outcome.error = str(exc)
            logger.error(f"[{account_id}] Provider error, counters not advanced: {exc}")
        except Exception as exc:
            db.rollback()
            outcome.error = str(exc)
            logger.exception(f"[{account_id}] Unexpected sync failure: {exc}")
        finally:
            db.close()
        return outcome

    def _sync_account(self, db: Session, account_id: int, outcome: SyncOutcome) -> None:
        started_at = utcnow()
        account = db.get(EmailAccount, account_id)
        if account is None or not account.is_active:
            outcome.skipped = True
            logger.info(f"[{account_id}] Account inactive or removed, skipping")
            return

        client = self.client_factory(account.provider)
        tokens = TokenLifecycleManager(db, self.cipher, self.client_factory)
        access_token = tokens.access_token(account)

        since = as_utc(account.sync_from_date) or started_at - timedelta(days=settings.SYNC_LOOKBACK_DAYS)
        query = client.build_search_query(since)
        message_ids = client.list_message_ids(access_token, query, self.max_messages)
        logger.info(f"[{account_id}] {len(message_ids)} candidate message(s) since {since.date()}")

        for message_id in message_ids:
            if extraction_store.exists(db, account_id, message_id):
                continue

            outcome.emails_seen += 1
            try:
                message = client.fetch_message(access_token, message_id)
                candidate = parse_transaction_email(
                    message.sender, message.subject, message.body,
                    message.received_at or started_at,
                )
                if candidate is None:
                    continue
                if extraction_store.save(db, account_id, message_id, candidate) is not None:
                    outcome.transactions_extracted += 1
            except (TransientProviderError, ProviderAuthError):
                raise
            except Exception as exc:
                db.rollback()
                outcome.failed_messages += 1
                logger.warning(f"[{account_id}] Failed to process message {message_id}: {exc}")

        # a capped listing may have left older mail behind, so keep the watermark
        next_sync_from = started_at if len(message_ids) < self.max_messages else None
        account_service.record_sync(
            db, account_id, outcome.emails_seen, outcome.transactions_extracted,
            now=utcnow(), sync_from=next_sync_from,
        )
        logger.info(
            f"[{account_id}] Synced: {outcome.emails_seen} new email(s), "
            f"{outcome.transactions_extracted} transaction(s), {outcome.failed_messages} failure(s)"
        )


def refresh_expired_tokens(
    session_factory: Callable[[], Session] = SessionLocal,
    client_factory: Callable[..., MailProviderClient] = get_provider_client,
    cipher: Optional[TokenCipher] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Force-refresh every active account whose access token has already expired."""
    db = session_factory()
    try:
        account_ids = account_service.accounts_with_expired_tokens(db, now)
    finally:
        db.close()

    summary = {"refreshed": 0, "deactivated": 0, "failed": 0}
    for account_id in account_ids:
        db = session_factory()
        try:
            account = db.get(EmailAccount, account_id)
            if account is None:
                continue
            TokenLifecycleManager(db, cipher, client_factory).refresh(account)
            summary["refreshed"] += 1
        except AccountDeactivatedError as exc:
            summary["deactivated"] += 1
            refresh_logger.warning(f"[{account_id}] Deactivated during refresh: {exc.reason}")
        except ProviderError as exc:
            summary["failed"] += 1
            refresh_logger.error(f"[{account_id}] Token refresh failed, retrying next sweep: {exc}")
        except Exception as exc:
            db.rollback()
            summary["failed"] += 1
            refresh_logger.exception(f"[{account_id}] Unexpected token refresh failure: {exc}")
        finally:
            db.close()

    refresh_logger.info(
        f"Token sweep: {len(account_ids)} expired, {summary['refreshed']} refreshed, "
        f"{summary['deactivated']} deactivated, {summary['failed']} failed"
    )
    return summary
