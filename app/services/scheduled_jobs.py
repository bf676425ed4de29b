"""
Scheduled Jobs.

Concrete job implementations run by SchedulerService.

Jobs:
    - webhook_retry_sweep: retries due webhook deliveries
    - approval_sweep: auto-approves timed-out steps, then sends reminders
"""

from __future__ import annotations

import logging
from typing import Any

from app.services import approval_engine, delivery_service
from app.services.scheduler_service import SchedulerService, register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Webhook Retry Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("webhook_retry_sweep")
def sweep_webhook_retries(app) -> dict[str, Any]:
    """Retry pending webhook deliveries whose backoff has elapsed."""
    return delivery_service.process_due_retries(
        limit=app.config.get("WEBHOOK_RETRY_BATCH_SIZE", 100),
        should_stop=SchedulerService.should_stop,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Approval Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("approval_sweep")
def sweep_approvals(app) -> dict[str, Any]:
    """Auto-approve elapsed steps, then remind or escalate idle requests."""
    results = approval_engine.run_sweeps(should_stop=SchedulerService.should_stop)
    logger.info("Approval sweep: %s", results)
    return results
