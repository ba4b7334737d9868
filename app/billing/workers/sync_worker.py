"""
Payment sync worker.

Tasks:
- run_payment_sync_session: Runs (or resumes) a batch sync against a processor

Usage:
    from billing.workers import run_payment_sync_session

    run_payment_sync_session.delay(str(workspace.id), "stripe", "initial_sync")
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from billing.adapters import backoff_delay
from billing.services import PaymentSyncCoordinator
from billing.state_machines import PaymentSyncSessionStatus, PaymentSyncSessionType

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_SESSION_RETRIES = 3


# =============================================================================
# Batch Sync Task
# =============================================================================


@shared_task(bind=True, max_retries=MAX_SESSION_RETRIES, acks_late=True)
def run_payment_sync_session(
    self,
    workspace_id: str,
    provider_name: str,
    session_type: str = PaymentSyncSessionType.INITIAL_SYNC,
    entity_types: list[str] | None = None,
    config: dict | None = None,
    session_id: str | None = None,
) -> dict:
    """
    Run a batch sync session.

    A session that fails on a retryable processor error (rate limit,
    outage) is resumed by the retry with the same session_id; items that
    were already applied are skipped through their idempotency keys.

    Returns:
        Dict with:
        - status: Final session status
        - session_id: The session that ran
        - progress: Per-outcome counts
    """
    session = PaymentSyncCoordinator.run_session(
        UUID(str(workspace_id)),
        provider_name,
        session_type=session_type,
        entity_types=entity_types,
        config=config,
        session_id=UUID(str(session_id)) if session_id else None,
    )

    if session.status == PaymentSyncSessionStatus.FAILED:
        last_error = (session.error_summary or [{}])[-1]
        if last_error.get("retryable") and self.request.retries < MAX_SESSION_RETRIES:
            logger.warning(
                "Payment sync session failed, scheduling resume",
                extra={"session_id": str(session.id), "retry": self.request.retries + 1},
            )
            raise self.retry(
                kwargs={
                    "workspace_id": str(workspace_id),
                    "provider_name": provider_name,
                    "session_type": session_type,
                    "entity_types": entity_types,
                    "config": config,
                    "session_id": str(session.id),
                },
                countdown=backoff_delay(self.request.retries + 1),
            )

    return {
        "status": session.status,
        "session_id": str(session.id),
        "progress": session.progress,
    }
