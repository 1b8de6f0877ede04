"""
Base Payment Gateway for the woofpay platform
Abstract interface for all payment gateway implementations.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, TypedDict

from django.conf import settings

from apps.billing.config import GatewaySettings, get_gateway_settings
from apps.common.types import Amount, CurrencyCode, GatewayOrderId, GatewayPaymentId, WebhookSignature

logger = logging.getLogger(__name__)


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class OrderResult(TypedDict):
    """Result from remote order creation"""
    gateway_order_id: GatewayOrderId
    amount_cents: Amount
    currency: CurrencyCode
    receipt: str
    notes: dict[str, Any]


class OrderStatusResult(TypedDict):
    """Remote view of an order, used by the reconciliation sweep"""
    gateway_order_id: GatewayOrderId
    status: str  # created, attempted, paid, failed
    gateway_payment_id: GatewayPaymentId | None


class RefundResult(TypedDict):
    """Result from refund creation"""
    refund_id: str
    amount_cents: Amount
    status: str


class ChargeResult(TypedDict):
    """Result from a recurring charge against a saved payment method"""
    success: bool
    gateway_payment_id: GatewayPaymentId | None
    error_code: str | None
    error: str | None


def compute_hmac_signature(secret: str, message: str | bytes) -> str:
    """Hex HMAC-SHA256 of message under secret."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of two hex signatures."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


# ===============================================================================
# ABSTRACT BASE GATEWAY
# ===============================================================================


class BasePaymentGateway(ABC):
    """
    🏛️ Abstract base class for all payment gateways

    Provides unified interface for:
    - Remote order creation for checkout
    - Payment and webhook signature verification
    - Refunds
    - Recurring charges used by the retry engine

    Network failures and timeouts raise GatewayError (retryable); signature
    checks never raise and return False on mismatch.
    """

    def __init__(self, gateway_settings: GatewaySettings | None = None) -> None:
        self.config = gateway_settings or get_gateway_settings()
        self.logger = logging.getLogger(f"apps.billing.gateways.{self.__class__.__name__.lower()}")

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        """Gateway identifier (e.g., 'razorpay')"""

    @abstractmethod
    def create_order(
        self,
        amount_cents: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> OrderResult:
        """
        Create a remote order for checkout

        Args:
            amount_cents: Amount in minor units (paise)
            currency: ISO currency code
            receipt: Local receipt number
            notes: Free-form key/value notes echoed back by the gateway

        Returns:
            OrderResult with the gateway order id
        """

    @abstractmethod
    def verify_payment_signature(
        self, gateway_order_id: GatewayOrderId, gateway_payment_id: GatewayPaymentId, signature: str
    ) -> bool:
        """Check the checkout callback signature for an order/payment pair"""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: WebhookSignature | None) -> bool:
        """Check a webhook signature against the raw, unparsed request body"""

    @abstractmethod
    def refund(
        self,
        gateway_payment_id: str,
        amount_cents: int | None = None,
        notes: dict[str, Any] | None = None,
    ) -> RefundResult:
        """
        Refund a captured payment

        Args:
            gateway_payment_id: Gateway payment id
            amount_cents: Partial amount, or None for a full refund
            notes: Free-form notes

        Returns:
            RefundResult with the refund id
        """

    @abstractmethod
    def charge_recurring(
        self,
        customer_id: str,
        payment_method_ref: str,
        amount_cents: int,
        currency: str,
        notes: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Charge a saved payment method; declines come back as success=False"""

    @abstractmethod
    def fetch_order(self, gateway_order_id: GatewayOrderId) -> OrderStatusResult:
        """Re-query a remote order"""

    def validate_configuration(self) -> bool:
        """
        Validate gateway configuration (API keys, etc.)
        Override in subclasses for specific validation.
        """
        return True


# ===============================================================================
# GATEWAY FACTORY
# ===============================================================================


class PaymentGatewayFactory:
    """
    🏭 Factory for creating payment gateway instances

    Supports dynamic gateway selection based on configuration.
    """

    _gateways: ClassVar[dict[str, type[BasePaymentGateway]]] = {}

    @classmethod
    def register_gateway(cls, gateway_name: str, gateway_class: type[BasePaymentGateway]) -> None:
        """Register a payment gateway class"""
        cls._gateways[gateway_name] = gateway_class

    @classmethod
    def create_gateway(cls, gateway_name: str) -> BasePaymentGateway:
        """
        Create payment gateway instance

        Raises:
            ValueError: If gateway not found or not configured
        """
        if gateway_name not in cls._gateways:
            raise ValueError(f"Payment gateway '{gateway_name}' not registered")

        gateway = cls._gateways[gateway_name]()

        if not gateway.validate_configuration():
            raise ValueError(f"Payment gateway '{gateway_name}' not properly configured")

        logger.debug(f"✅ Created {gateway_name} payment gateway")
        return gateway

    @classmethod
    def get_default_gateway(cls) -> BasePaymentGateway:
        """Get default payment gateway from settings"""
        default_gateway = getattr(settings, "PAYMENT_GATEWAY", "razorpay")
        return cls.create_gateway(default_gateway)

    @classmethod
    def list_available_gateways(cls) -> list[str]:
        """List all registered gateway names"""
        return list(cls._gateways.keys())
