"""
Razorpay Payment Gateway for the woofpay platform
REST integration over requests with bounded timeouts and HMAC verification.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from apps.billing.config import GatewaySettings
from apps.billing.exceptions import GatewayError

from .base import (
    BasePaymentGateway,
    ChargeResult,
    OrderResult,
    OrderStatusResult,
    PaymentGatewayFactory,
    RefundResult,
    compute_hmac_signature,
    signatures_match,
)

logger = logging.getLogger(__name__)

# HTTP status codes at or above this carry a gateway error body
HTTP_ERROR_THRESHOLD = 400
HTTP_SERVER_ERROR_THRESHOLD = 500


# ===============================================================================
# RAZORPAY GATEWAY IMPLEMENTATION
# ===============================================================================


class RazorpayGateway(BasePaymentGateway):
    """
    💳 Razorpay payment gateway implementation

    Features:
    - Order creation in paise with receipt and notes
    - Checkout signature: HMAC-SHA256(key_secret, "order_id|payment_id")
    - Webhook signature: HMAC-SHA256(webhook_secret, raw body)
    - Full and partial refunds
    - Token based recurring charges for retries
    """

    def __init__(self, gateway_settings: GatewaySettings | None = None) -> None:
        super().__init__(gateway_settings)
        self.session = requests.Session()
        self.session.auth = (self.config.key_id, self.config.key_secret)
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": "woofpay-billing/1.0",
            }
        )

    @property
    def gateway_name(self) -> str:
        return "razorpay"

    def validate_configuration(self) -> bool:
        if not self.config.key_id or not self.config.key_secret:
            self.logger.error("❌ Razorpay key id/secret not configured")
            return False
        if not self.config.webhook_secret:
            self.logger.warning("⚠️ Razorpay webhook secret not configured - webhooks will be rejected")
        return True

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> requests.Response:
        url = f"{self.config.api_base.rstrip('/')}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.config.timeout_seconds)
        except requests.exceptions.Timeout as e:
            self.logger.warning(f"⏱️ [Razorpay] {method} {path} timed out after {self.config.timeout_seconds}s")
            raise GatewayError(f"Payment gateway timed out: {path}", code="TIMEOUT") from e
        except requests.exceptions.RequestException as e:
            self.logger.error(f"🔥 [Razorpay] {method} {path} failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}", code="NETWORK_ERROR") from e

        if response.status_code >= HTTP_SERVER_ERROR_THRESHOLD:
            self.logger.error(f"🔥 [Razorpay] {method} {path} returned HTTP {response.status_code}")
            raise GatewayError(f"Payment gateway error (HTTP {response.status_code})", code="SERVER_ERROR")
        return response

    @staticmethod
    def _error_from(response: requests.Response) -> tuple[str, str]:
        """Extract (code, description) from a Razorpay error body."""
        try:
            error = response.json().get("error", {}) or {}
        except ValueError:
            return "GATEWAY_ERROR", response.text[:200]
        code = error.get("reason") or error.get("code") or "GATEWAY_ERROR"
        return str(code).upper(), str(error.get("description", ""))

    def _json_or_raise(self, response: requests.Response, action: str) -> dict[str, Any]:
        if response.status_code >= HTTP_ERROR_THRESHOLD:
            code, description = self._error_from(response)
            self.logger.warning(f"⚠️ [Razorpay] {action} rejected: {code} {description}")
            raise GatewayError(f"{action} rejected by gateway: {description or code}", code=code, retryable=False)
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"{action}: gateway returned invalid JSON") from e

    # =========================================================================
    # ORDERS
    # =========================================================================

    def create_order(
        self,
        amount_cents: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> OrderResult:
        self.logger.info(f"💳 [Razorpay] Creating order {receipt} for {amount_cents} {currency}")
        payload = {
            "amount": amount_cents,
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in (notes or {}).items()},
        }
        data = self._json_or_raise(self._request("POST", "orders", payload), "Order creation")
        return OrderResult(
            gateway_order_id=data["id"],
            amount_cents=int(data.get("amount", amount_cents)),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            notes=data.get("notes") or {},
        )

    def fetch_order(self, gateway_order_id: str) -> OrderStatusResult:
        data = self._json_or_raise(self._request("GET", f"orders/{gateway_order_id}"), "Order lookup")
        status = data.get("status", "created")
        payment_id = None

        if status in ("attempted", "paid"):
            payments = self._json_or_raise(
                self._request("GET", f"orders/{gateway_order_id}/payments"), "Order payments lookup"
            )
            items = payments.get("items", [])
            captured = [item for item in items if item.get("status") == "captured"]
            if captured:
                payment_id = captured[0]["id"]
                status = "paid"
            elif items and all(item.get("status") == "failed" for item in items):
                status = "failed"

        return OrderStatusResult(gateway_order_id=gateway_order_id, status=status, gateway_payment_id=payment_id)

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = compute_hmac_signature(self.config.key_secret, f"{gateway_order_id}|{gateway_payment_id}")
        return signatures_match(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not self.config.webhook_secret:
            return False
        expected = compute_hmac_signature(self.config.webhook_secret, raw_body)
        return signatures_match(expected, signature)

    # =========================================================================
    # REFUNDS & RECURRING CHARGES
    # =========================================================================

    def refund(
        self,
        gateway_payment_id: str,
        amount_cents: int | None = None,
        notes: dict[str, Any] | None = None,
    ) -> RefundResult:
        payload: dict[str, Any] = {"notes": {key: str(value) for key, value in (notes or {}).items()}}
        if amount_cents is not None:
            payload["amount"] = amount_cents

        self.logger.info(f"🔄 [Razorpay] Refunding payment {gateway_payment_id}")
        data = self._json_or_raise(self._request("POST", f"payments/{gateway_payment_id}/refund", payload), "Refund")
        return RefundResult(
            refund_id=data["id"],
            amount_cents=int(data.get("amount", amount_cents or 0)),
            status=data.get("status", "processed"),
        )

    def charge_recurring(
        self,
        customer_id: str,
        payment_method_ref: str,
        amount_cents: int,
        currency: str,
        notes: dict[str, Any] | None = None,
    ) -> ChargeResult:
        notes = dict(notes or {})
        receipt = str(notes.pop("receipt", f"retry_{customer_id}"))[:40]
        order = self.create_order(amount_cents, currency, receipt, notes)

        payload = {
            "email": notes.get("email", ""),
            "contact": notes.get("contact", ""),
            "amount": amount_cents,
            "currency": currency,
            "order_id": order["gateway_order_id"],
            "customer_id": customer_id,
            "token": payment_method_ref,
            "recurring": "1",
            "notes": {key: str(value) for key, value in notes.items()},
        }
        response = self._request("POST", "payments/create/recurring", payload)

        if response.status_code >= HTTP_ERROR_THRESHOLD:
            code, description = self._error_from(response)
            self.logger.warning(f"⚠️ [Razorpay] Recurring charge declined for {customer_id}: {code}")
            return ChargeResult(success=False, gateway_payment_id=None, error_code=code, error=description)

        data = self._json_or_raise(response, "Recurring charge")
        return ChargeResult(
            success=True,
            gateway_payment_id=data.get("razorpay_payment_id") or data.get("id"),
            error_code=None,
            error=None,
        )


# Register gateway with factory
PaymentGatewayFactory.register_gateway("razorpay", RazorpayGateway)
