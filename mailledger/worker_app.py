from celery import Celery
from datetime import timedelta
from mailledger.core.config import settings

celery_app = Celery(
    "mailledger",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Autodiscover task modules
celery_app.autodiscover_tasks(["mailledger.tasks"])

# Force import so Celery registers tasks
import mailledger.tasks.extraction_sync
import mailledger.tasks.transaction_materializer


celery_app.conf.beat_schedule = {

    # --------------------------------------------------------
    # 1. Mailbox sync for every account that is due
    # --------------------------------------------------------
    "sync-mail-accounts": {
        "task": "mailledger.tasks.extraction_sync.sync_mail_accounts",
        "schedule": timedelta(seconds=settings.SYNC_INTERVAL_SECONDS),
    },

    # --------------------------------------------------------
    # 2. Recover accounts whose access token already expired
    # --------------------------------------------------------
    "refresh-expired-tokens": {
        "task": "mailledger.tasks.extraction_sync.refresh_expired_tokens",
        "schedule": timedelta(seconds=settings.TOKEN_REFRESH_INTERVAL_SECONDS),
    },

    # --------------------------------------------------------
    # 3. Push high-confidence extractions into the ledger
    # --------------------------------------------------------
    "materialize-extracted-transactions": {
        "task": "mailledger.tasks.transaction_materializer.materialize_extracted_transactions",
        "schedule": timedelta(seconds=settings.MATERIALIZER_INTERVAL_SECONDS),
    },

}
