"""Unit-of-work boundary shared by the write services.

    result = run_write("record_actual", work, item_id=42)

``work(session)`` does all reads, writes and rollups through the session it
is given; ``run_write`` commits, or rolls back and:

    StaleDataError / IntegrityError  → retry, then ConcurrentModificationError
    OperationalError                 → retry, then UnavailableError
    anything else                    → re-raised unchanged, never retried

Attempts are bounded by LEDGER_WRITE_RETRIES with linear backoff
LEDGER_RETRY_BACKOFF_SECONDS × attempt between them.
"""

import logging
import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from budget_ledger.core.exceptions import ConcurrentModificationError, UnavailableError
from budget_ledger.models import db

logger = logging.getLogger(__name__)


def run_write(operation: str, work, **context):
    """Run ``work(session)`` in one transaction and commit it.

    ``context`` (item_id, estimate_id, ...) is attached to every log record.
    """
    retries = max(1, int(current_app.config.get("LEDGER_WRITE_RETRIES", 3)))
    backoff = float(current_app.config.get("LEDGER_RETRY_BACKOFF_SECONDS", 0.05))
    session = db.session
    attempt = 0

    while True:
        attempt += 1
        log_extra = {"operation": operation, "attempt": attempt, **context}
        try:
            result = work(session)
            session.commit()
        except (StaleDataError, IntegrityError) as exc:
            session.rollback()
            if attempt >= retries:
                logger.warning(
                    "%s gave up after %d conflicting attempt(s): %s",
                    operation, attempt, exc, extra=log_extra,
                )
                raise ConcurrentModificationError(operation, attempt) from exc
            logger.warning("%s conflicted, retrying: %s", operation, exc, extra=log_extra)
        except OperationalError as exc:
            session.rollback()
            if attempt >= retries:
                logger.error(
                    "%s gave up after %d attempt(s), store unavailable: %s",
                    operation, attempt, exc, extra=log_extra,
                )
                raise UnavailableError(operation, attempt) from exc
            logger.warning("%s store error, retrying: %s", operation, exc, extra=log_extra)
        except Exception:
            session.rollback()
            raise
        else:
            logger.info("%s committed", operation, extra=log_extra)
            return result
        time.sleep(backoff * attempt)
