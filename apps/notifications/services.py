"""
Notification service for the woofpay platform.

`NotificationService.notify()` is the fire-and-forget collaborator the payment
engine calls. It writes an outbox row and queues delivery on commit; it never
raises into the caller.
"""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction
from django.utils.translation import gettext_lazy as _
from django_q.tasks import async_task

from .models import NotificationLog

logger = logging.getLogger(__name__)

TASK_TIMEOUT = 60

# ===============================================================================
# TEMPLATES
# ===============================================================================

NOTIFICATION_TEMPLATES: dict[str, tuple[Any, str]] = {
    "payment_completed": (_("Payment received"), "We received your payment of ₹{amount} ({receipt})."),
    "refund_processed": (_("Refund processed"), "A refund of ₹{amount} has been issued for {receipt}."),
    "subscription_trial_started": (
        _("Your free trial has started"),
        "Your {plan_name} trial runs until {trial_end}. First billing on {next_billing_date}.",
    ),
    "subscription_activated": (_("Subscription active"), "Your {plan_name} subscription is active until {end_date}."),
    "subscription_plan_changed": (
        _("Plan changed"),
        "Your plan changed from {old_plan} to {new_plan}. Adjustment: ₹{proration_amount}.",
    ),
    "subscription_change_scheduled": (
        _("Plan change scheduled"),
        "Your plan will change to {new_plan} on {effective_date}.",
    ),
    "subscription_cancelled": (_("Subscription cancelled"), "Your subscription ends on {end_date}. Refund: ₹{refund}."),
    "subscription_paused": (_("Subscription paused"), "Your subscription is paused until {resume_at}."),
    "subscription_resumed": (_("Subscription resumed"), "Welcome back! Your subscription is active again."),
    "payment_failed_retry_scheduled": (
        _("Payment failed"),
        "We could not process your payment. We will retry on {next_retry_date}. "
        "Your access continues until {grace_period_ends_at}.",
    ),
    "payment_method_required": (
        _("Action required: update your payment method"),
        "Your payment method was declined ({reason}). Please update it to keep your subscription.",
    ),
    "payment_retry_succeeded": (_("Payment successful"), "Your payment went through and your subscription is active."),
    "payment_manual_intervention": (
        _("We need your help with a payment"),
        "We could not collect your payment after several attempts. Our team will contact you.",
    ),
    "subscription_suspended": (
        _("Subscription suspended"),
        "Your subscription was suspended after repeated payment failures. Contact support to reactivate.",
    ),
    "dunning_reminder": (_("Payment reminder"), "Your payment is still outstanding. Next attempt: {next_retry_date}."),
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_notification(template_type: str, payload: dict[str, Any]) -> tuple[str, str] | None:
    template = NOTIFICATION_TEMPLATES.get(template_type)
    if template is None:
        return None
    subject, body = template
    return str(subject), body.format_map(_SafeDict(payload))


# ===============================================================================
# NOTIFICATION SERVICE
# ===============================================================================


class NotificationService:
    """
    Central notification service for user notices and admin alerts.
    """

    @staticmethod
    def notify(user: Any, template_type: str, payload: dict[str, Any] | None = None) -> NotificationLog | None:
        """
        Queue a user notification.

        Delivery is scheduled with transaction.on_commit so notices for work
        that rolls back are never sent.
        """
        try:
            log = NotificationLog.objects.create(
                user=user,
                template_type=template_type,
                payload={key: str(value) for key, value in (payload or {}).items()},
                recipient=getattr(user, "email", "") or "",
            )
            transaction.on_commit(
                lambda: async_task(
                    "apps.notifications.tasks.deliver_notification_task",
                    str(log.id),
                    timeout=TASK_TIMEOUT,
                )
            )
            logger.info(f"🔔 [Notification] Queued {template_type} for user {getattr(user, 'pk', None)}")
            return log
        except Exception as e:
            logger.error(f"🔥 [Notification] Failed to queue {template_type}: {e}")
            return None

    @staticmethod
    def send_admin_alert(
        subject: str,
        message: str,
        alert_type: str = "info",
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Send urgent notification to admin.

        Args:
            subject: Email subject
            message: Email body
            alert_type: Type of alert ('info', 'warning', 'critical')
            metadata: Additional context data

        Returns:
            True if notification was sent successfully
        """
        try:
            admin_emails = getattr(settings, "ADMIN_ALERT_EMAILS", None)
            if not admin_emails:
                admins = getattr(settings, "ADMINS", [])
                admin_emails = [email for name, email in admins] if admins else []

            if not admin_emails:
                logger.warning("⚠️ [Notification] No admin email configured for alerts")
                return False

            type_prefixes = {
                "info": "[INFO]",
                "warning": "[WARNING]",
                "critical": "[CRITICAL]",
            }
            full_subject = f"{type_prefixes.get(alert_type, '[ALERT]')} {subject}"

            body = f"{message}\n\n"
            if metadata:
                body += "Additional Details:\n"
                for key, value in metadata.items():
                    body += f"- {key}: {value}\n"

            sent = send_mail(full_subject, body, settings.DEFAULT_FROM_EMAIL, list(admin_emails), fail_silently=False)
            logger.info(f"🔔 [Notification] Admin alert sent to {sent} recipient(s): {subject}")
            return sent > 0

        except Exception as e:
            logger.error(f"🔥 [Notification] Failed to send admin alert: {e}")
            return False
