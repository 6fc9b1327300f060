from mailledger.core.log import get_job_logger
from mailledger.services.sync_service import SyncOrchestrator, refresh_expired_tokens as sweep_expired_tokens
from mailledger.worker_app import celery_app

logger = get_job_logger("sync_orchestrator")
refresh_logger = get_job_logger("token_refresh")


@celery_app.task(bind=True, max_retries=3, name="mailledger.tasks.extraction_sync.sync_mail_accounts")
def sync_mail_accounts(self):
    """Scheduled run over every account that is due for sync"""
    try:
        outcomes = SyncOrchestrator().run()
    except Exception as exc:
        # per-account failures never get here; this is the selection / pool itself
        logger.error(f"Sync run failed: {exc}")
        raise self.retry(exc=exc, countdown=30)

    return {
        "accounts": len(outcomes),
        "synced": sum(1 for o in outcomes if o.ok),
        "transactions_extracted": sum(o.transactions_extracted for o in outcomes),
    }


@celery_app.task(bind=True, max_retries=3, name="mailledger.tasks.extraction_sync.sync_mail_account")
def sync_mail_account(self, account_id: int):
    """Manual sync of a single account, regardless of when it last ran"""
    try:
        outcome = SyncOrchestrator().sync_account(account_id)
    except Exception as exc:
        logger.error(f"[{account_id}] Manual sync failed: {exc}")
        raise self.retry(exc=exc, countdown=10)

    return {
        "account_id": account_id,
        "emails_seen": outcome.emails_seen,
        "transactions_extracted": outcome.transactions_extracted,
        "error": outcome.error,
    }


@celery_app.task(bind=True, max_retries=3, name="mailledger.tasks.extraction_sync.refresh_expired_tokens")
def refresh_expired_tokens(self):
    try:
        return sweep_expired_tokens()
    except Exception as exc:
        refresh_logger.error(f"Token sweep failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
