from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import farecheck.models  # noqa: F401
# isort: on

import time

from farecheck.core.logging import (
    bind_context,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_context,
)
from farecheck.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="process_document", bind=True)
def process_document_task(self, document_id: str) -> dict:
    from farecheck.modules.uploads.service import process_document

    task_id = getattr(self.request, "id", None)
    tokens = bind_context(celery_task_id=task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="process_document",
        document_id=document_id,
    )
    try:
        outcome = process_document(document_id=document_id)
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_document",
            document_id=document_id,
            outcome=outcome.status,
            retryable=outcome.retryable,
            duration_ms=monotonic_ms(start),
        )
        return {
            "document_id": str(outcome.document_id),
            "status": outcome.status,
            "retryable": outcome.retryable,
        }
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_document",
            document_id=document_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_context(tokens)
