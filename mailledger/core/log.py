import logging
from mailledger.core.config import settings


def get_job_logger(name: str) -> logging.Logger:
    """Named logger for a background job, printed to stderr by the worker."""
    logger = logging.getLogger(name)
    logger.setLevel(settings.LOG_LEVEL.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
