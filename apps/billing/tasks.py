"""Billing background tasks.

Django-Q2 tasks for payment retries, dunning reminders, scheduled plan
changes, period-end cancellations and stale order reconciliation.
"""

from __future__ import annotations

import logging
from typing import Any

from django_q.models import Schedule
from django_q.tasks import async_task, schedule

from apps.billing.dunning_service import DunningService, PaymentRetryService
from apps.billing.payment_service import OrderPaymentService
from apps.billing.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Task configuration
TASK_SOFT_TIME_LIMIT = 300  # 5 minutes
Q_CLUSTER_NAME = "woofpay-cluster"


def execute_payment_retry(retry_id: str) -> dict[str, Any]:
    """
    Run one scheduled payment retry.

    Args:
        retry_id: PaymentRetry UUID

    Returns:
        Dictionary with the retry outcome
    """
    logger.info(f"🔄 [RetryTask] Executing retry {retry_id}")
    result = PaymentRetryService.execute_retry(retry_id)
    if result.is_err():
        error = result.unwrap_err()
        logger.error(f"🔥 [RetryTask] Retry {retry_id} failed: {error.code} {error.message}")
        return {"success": False, "error": error.message, "code": error.code}
    return {"success": True, **result.unwrap()}


def process_due_payment_retries() -> dict[str, Any]:
    """Sweep every due scheduled retry."""
    try:
        results = PaymentRetryService.process_due_retries()
        return {"success": True, **results}
    except Exception as e:
        logger.exception(f"🔥 [RetryTask] Due retry sweep crashed: {e}")
        return {"success": False, "error": str(e)}


def process_dunning_actions() -> dict[str, Any]:
    """Send due dunning reminders."""
    try:
        return {"success": True, **DunningService.process_due_actions()}
    except Exception as e:
        logger.exception(f"🔥 [DunningTask] Dunning sweep crashed: {e}")
        return {"success": False, "error": str(e)}


def apply_scheduled_subscription_changes() -> dict[str, Any]:
    """Apply next-cycle plan changes that have become effective."""
    try:
        return {"success": True, **SubscriptionService.apply_scheduled_changes()}
    except Exception as e:
        logger.exception(f"🔥 [SubscriptionTask] Scheduled change sweep crashed: {e}")
        return {"success": False, "error": str(e)}


def finalize_subscription_cancellations() -> dict[str, Any]:
    """Close subscriptions whose cancel-at-period-end boundary has passed."""
    try:
        return {"success": True, **SubscriptionService.finalize_period_end_cancellations()}
    except Exception as e:
        logger.exception(f"🔥 [SubscriptionTask] Cancellation sweep crashed: {e}")
        return {"success": False, "error": str(e)}


def reconcile_stale_payment_orders() -> dict[str, Any]:
    """Re-query the gateway for orders stuck in `created`."""
    try:
        return {"success": True, **OrderPaymentService.reconcile_stale_orders()}
    except Exception as e:
        logger.exception(f"🔥 [ReconcileTask] Stale order sweep crashed: {e}")
        return {"success": False, "error": str(e)}


# ===============================================================================
# ASYNC WRAPPER FUNCTIONS
# ===============================================================================


def execute_payment_retry_async(retry_id: str) -> str:
    """Queue a single payment retry."""
    return async_task("apps.billing.tasks.execute_payment_retry", retry_id, timeout=TASK_SOFT_TIME_LIMIT)


# ===============================================================================
# SCHEDULED TASKS
# ===============================================================================

BILLING_SCHEDULES: dict[str, dict[str, Any]] = {
    "billing-process-due-retries": {
        "func": "apps.billing.tasks.process_due_payment_retries",
        "schedule_type": Schedule.HOURLY,
    },
    "billing-dunning-actions": {
        "func": "apps.billing.tasks.process_dunning_actions",
        "schedule_type": Schedule.CRON,
        "cron": "0 9 * * *",  # 9 AM daily
    },
    "billing-apply-scheduled-changes": {
        "func": "apps.billing.tasks.apply_scheduled_subscription_changes",
        "schedule_type": Schedule.DAILY,
    },
    "billing-finalize-cancellations": {
        "func": "apps.billing.tasks.finalize_subscription_cancellations",
        "schedule_type": Schedule.DAILY,
    },
    "billing-reconcile-stale-orders": {
        "func": "apps.billing.tasks.reconcile_stale_payment_orders",
        "schedule_type": Schedule.MINUTES,
        "minutes": 30,
    },
}


def setup_billing_scheduled_tasks() -> dict[str, str]:
    """Register the billing schedules that do not exist yet."""
    tasks_created = {}
    existing_tasks = set(Schedule.objects.filter(name__in=BILLING_SCHEDULES).values_list("name", flat=True))

    for name, options in BILLING_SCHEDULES.items():
        if name in existing_tasks:
            tasks_created[name] = "already_exists"
            continue
        options = dict(options)
        schedule(options.pop("func"), name=name, cluster=Q_CLUSTER_NAME, **options)
        tasks_created[name] = "created"

    logger.info(f"✅ [BillingTasks] Scheduled tasks setup: {tasks_created}")
    return tasks_created
