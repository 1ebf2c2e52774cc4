"""
Run a read-verify-write body in one database transaction, re-running the whole body when the
database reports a write conflict (deadlock, serialization failure, SQLite "database is locked").
"""
import logging
import time

from django.db import OperationalError, transaction

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 0.05


def run_in_transaction(body, attempts: int = 5, using=None):
    """
    Call `body()` inside transaction.atomic() and return its result.

    Each attempt starts a fresh transaction, so all reads are repeated after a conflict.
    Inside an already open atomic block a retry cannot restart the outer transaction, so the
    body runs once and errors propagate to the outer block.
    """
    connection = transaction.get_connection(using)
    if connection.in_atomic_block:
        with transaction.atomic(using=using):
            return body()

    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic(using=using):
                return body()
        except OperationalError as e:
            if attempt >= attempts:
                logger.error("run_in_transaction: giving up after %s attempts: %s", attempt, e)
                raise
            logger.warning("run_in_transaction: conflict on attempt %s/%s, retrying: %s", attempt, attempts, e)
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
