from mailledger.core.log import get_job_logger
from mailledger.services.materializer import TransactionMaterializer
from mailledger.worker_app import celery_app

logger = get_job_logger("transaction_materializer")


@celery_app.task(bind=True, max_retries=3, name="mailledger.tasks.transaction_materializer.materialize_extracted_transactions")
def materialize_extracted_transactions(self):
    """Create ledger transactions for unprocessed candidates above the confidence threshold"""
    try:
        return TransactionMaterializer().run()
    except Exception as exc:
        logger.error(f"Materializer run failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
