"""
Payment Gateway Implementations for the woofpay platform
Supports multiple payment providers with unified interface.
"""

from .base import BasePaymentGateway, PaymentGatewayFactory
from .razorpay_gateway import RazorpayGateway

__all__ = ["BasePaymentGateway", "PaymentGatewayFactory", "RazorpayGateway"]
