"""
Async notification delivery for the woofpay platform via Django-Q2.
"""

import logging
from typing import Any

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from apps.notifications.models import NotificationLog
from apps.notifications.services import render_notification

logger = logging.getLogger(__name__)


def deliver_notification_task(notification_id: str) -> dict[str, Any]:
    """Render and send one queued notification."""
    try:
        log = NotificationLog.objects.get(id=notification_id)
    except NotificationLog.DoesNotExist:
        logger.error(f"❌ [Notification] NotificationLog not found: {notification_id}")
        return {"success": False, "error": "NotificationLog not found"}

    if log.status != "queued":
        return {"success": True, "skipped": True, "status": log.status}

    rendered = render_notification(log.template_type, log.payload)
    if rendered is None or not log.recipient:
        log.status = "skipped"
        log.error = "Unknown template" if rendered is None else "No recipient address"
        log.save(update_fields=["status", "error"])
        logger.warning(f"⚠️ [Notification] Skipped {log.template_type} ({log.error})")
        return {"success": False, "error": log.error}

    subject, body = rendered
    try:
        send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [log.recipient], fail_silently=False)
    except Exception as e:
        log.status = "failed"
        log.error = str(e)[:500]
        log.save(update_fields=["status", "error"])
        logger.error(f"🔥 [Notification] Delivery of {log.template_type} failed: {e}")
        return {"success": False, "error": str(e)}

    log.status = "sent"
    log.sent_at = timezone.now()
    log.save(update_fields=["status", "sent_at"])
    logger.info(f"✅ [Notification] Sent {log.template_type} to {log.recipient}")
    return {"success": True, "notification_id": str(log.id)}
