"""
Tests for user notifications and admin alerts.
"""

from __future__ import annotations

from unittest import mock

import pytest
from django.core import mail
from django.test import TestCase, override_settings

from apps.notifications.models import NotificationLog
from apps.notifications.services import NotificationService, render_notification
from apps.notifications.tasks import deliver_notification_task
from tests.factories.billing_factories import create_user


class NotifyTests(TestCase):
    def setUp(self) -> None:
        self.user = create_user()

    def test_notify_writes_outbox_row(self) -> None:
        log = NotificationService.notify(self.user, "payment_completed", {"amount": 116.82, "receipt": "rcpt_1"})

        self.assertEqual(log.status, "queued")
        self.assertEqual(log.recipient, "owner@woofpay.test")
        self.assertEqual(log.payload, {"amount": "116.82", "receipt": "rcpt_1"})

    def test_delivery_queued_on_commit(self) -> None:
        with mock.patch("apps.notifications.services.async_task") as queued:
            with self.captureOnCommitCallbacks(execute=True):
                log = NotificationService.notify(self.user, "subscription_resumed")

        queued.assert_called_once_with(
            "apps.notifications.tasks.deliver_notification_task", str(log.id), timeout=60
        )

    def test_notify_never_raises(self) -> None:
        with mock.patch.object(NotificationLog.objects, "create", side_effect=RuntimeError("db down")):
            self.assertIsNone(NotificationService.notify(self.user, "payment_completed"))


class DeliverNotificationTests(TestCase):
    def setUp(self) -> None:
        self.user = create_user()

    def test_delivers_rendered_email(self) -> None:
        log = NotificationService.notify(self.user, "payment_completed", {"amount": "99.00", "receipt": "rcpt_9"})

        result = deliver_notification_task(str(log.id))

        self.assertTrue(result["success"])
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "Payment received")
        self.assertIn("₹99.00 (rcpt_9)", mail.outbox[0].body)
        log.refresh_from_db()
        self.assertEqual(log.status, "sent")
        self.assertIsNotNone(log.sent_at)

    def test_unknown_template_skipped(self) -> None:
        log = NotificationService.notify(self.user, "birthday_card")

        result = deliver_notification_task(str(log.id))

        self.assertFalse(result["success"])
        log.refresh_from_db()
        self.assertEqual(log.status, "skipped")
        self.assertEqual(mail.outbox, [])

    def test_already_sent_is_not_resent(self) -> None:
        log = NotificationService.notify(self.user, "subscription_resumed")
        deliver_notification_task(str(log.id))

        result = deliver_notification_task(str(log.id))

        self.assertTrue(result["skipped"])
        self.assertEqual(len(mail.outbox), 1)

    def test_missing_log(self) -> None:
        result = deliver_notification_task("6f1b3c1e-0000-4000-8000-000000000000")

        self.assertEqual(result, {"success": False, "error": "NotificationLog not found"})

    def test_send_failure_recorded(self) -> None:
        log = NotificationService.notify(self.user, "subscription_resumed")

        with mock.patch("apps.notifications.tasks.send_mail", side_effect=OSError("smtp down")):
            result = deliver_notification_task(str(log.id))

        self.assertFalse(result["success"])
        log.refresh_from_db()
        self.assertEqual(log.status, "failed")
        self.assertEqual(log.error, "smtp down")


class AdminAlertTests(TestCase):
    def test_alert_subject_prefix_and_details(self) -> None:
        sent = NotificationService.send_admin_alert(
            "Refund failed", "Gateway rejected refund", alert_type="critical", metadata={"order": "rcpt_1"}
        )

        self.assertTrue(sent)
        self.assertEqual(mail.outbox[0].subject, "[CRITICAL] Refund failed")
        self.assertEqual(mail.outbox[0].to, ["ops@woofpay.test"])
        self.assertIn("- order: rcpt_1", mail.outbox[0].body)

    @override_settings(ADMIN_ALERT_EMAILS=[], ADMINS=[("Ops", "admins@woofpay.test")])
    def test_falls_back_to_admins(self) -> None:
        self.assertTrue(NotificationService.send_admin_alert("Heads up", "body"))
        self.assertEqual(mail.outbox[0].to, ["admins@woofpay.test"])
        self.assertEqual(mail.outbox[0].subject, "[INFO] Heads up")

    @override_settings(ADMIN_ALERT_EMAILS=[], ADMINS=[])
    def test_no_recipients(self) -> None:
        self.assertFalse(NotificationService.send_admin_alert("Heads up", "body"))
        self.assertEqual(mail.outbox, [])


# ===============================================================================
# RENDERING
# ===============================================================================


def test_render_keeps_unknown_placeholders():
    subject, body = render_notification("payment_failed_retry_scheduled", {"next_retry_date": "2026-01-02"})

    assert subject == "Payment failed"
    assert "2026-01-02" in body
    assert "{grace_period_ends_at}" in body


def test_render_unknown_template():
    assert render_notification("nope", {}) is None


@pytest.mark.django_db
def test_notify_user_without_email(user):
    user.email = ""
    user.save()
    log = NotificationService.notify(user, "subscription_resumed")

    result = deliver_notification_task(str(log.id))

    assert result == {"success": False, "error": "No recipient address"}
