# ===============================================================================
# BILLING API VIEWS - CHECKOUT, WEBHOOKS AND SUBSCRIPTIONS 💳
# ===============================================================================

import logging
from typing import Any

from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny, IsAdminUser, IsAuthenticated
from rest_framework.request import Request
from rest_framework.response import Response

from apps.billing.exceptions import PaymentEngineError
from apps.billing.payment_service import OrderPaymentService
from apps.billing.subscription_service import SubscriptionService
from apps.common.types import Result
from apps.promotions.services import CouponService

from .serializers import (
    CancelSubscriptionSerializer,
    ChangePlanSerializer,
    CouponValidateSerializer,
    CreateOrderSerializer,
    PauseSubscriptionSerializer,
    RefundSerializer,
    SubscribeSerializer,
    SubscriptionSerializer,
    VerifyPaymentSerializer,
)

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "HTTP_X_RAZORPAY_SIGNATURE"


# ===============================================================================
# RESPONSE HELPERS 📦
# ===============================================================================


def error_response(error: PaymentEngineError) -> Response:
    """Uniform error body with the error's HTTP status."""
    return Response({"success": False, "error": error.to_dict()}, status=error.http_status)


def invalid_request_response(errors: dict[str, Any]) -> Response:
    return Response(
        {
            "success": False,
            "error": {"code": "VALIDATION_ERROR", "message": "Invalid request", "retryable": False},
            "fields": errors,
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


def result_response(result: Result[Any, PaymentEngineError], success_status: int = status.HTTP_200_OK) -> Response:
    if result.is_err():
        return error_response(result.unwrap_err())
    return Response({"success": True, "data": result.unwrap()}, status=success_status)


# ===============================================================================
# CHECKOUT API 🛒
# ===============================================================================


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def create_order_api(request: Request) -> Response:
    """
    🛒 Create a checkout order

    POST /api/billing/orders/
    """
    serializer = CreateOrderSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    data = serializer.validated_data
    result = OrderPaymentService.create_order(
        request.user,
        data["amount"],
        data["payment_type"],
        currency=data["currency"],
        service_id=data["service_id"],
        plan_id=data["plan_id"],
        dog_id=str(data["dog_id"]) if data["dog_id"] else None,
        partner_id=str(data["partner_id"]) if data["partner_id"] else None,
        reference=data["reference"],
        billing_period=data["billing_period"],
        coupon_code=data["coupon_code"],
        tier=data["tier"],
    )
    return result_response(result, success_status=status.HTTP_201_CREATED)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def verify_payment_api(request: Request) -> Response:
    """
    ✅ Verify the checkout callback and complete the order

    POST /api/billing/orders/verify/
    """
    serializer = VerifyPaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    data = serializer.validated_data
    result = OrderPaymentService.verify_and_complete(
        data["razorpay_payment_id"],
        data["razorpay_order_id"],
        data["razorpay_signature"],
    )
    return result_response(result)


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def order_status_api(request: Request, order_id: str) -> Response:
    """GET /api/billing/orders/<id>/"""
    owner = None if request.user.is_staff else request.user
    return result_response(OrderPaymentService.get_payment_status(order_id, user=owner))


@api_view(["POST"])
@permission_classes([IsAdminUser])
def refund_order_api(request: Request, order_id: str) -> Response:
    """
    💸 Refund a completed order (staff only)

    POST /api/billing/orders/<id>/refund/
    """
    serializer = RefundSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    result = OrderPaymentService.refund(
        order_id,
        amount=serializer.validated_data.get("amount"),
        reason=serializer.validated_data["reason"],
    )
    if result.is_err():
        return error_response(result.unwrap_err())
    order = result.unwrap()
    return Response(
        {
            "success": True,
            "data": {
                "order_id": str(order.id),
                "status": order.status,
                "refund_id": order.refund_id,
                "refunded_amount_cents": order.refunded_amount_cents,
            },
        }
    )


# ===============================================================================
# WEBHOOK API 🔔
# ===============================================================================


@csrf_exempt
@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])  # Authenticated by the HMAC signature over the raw body
def razorpay_webhook_api(request: Request) -> Response:
    """
    🔔 Razorpay webhook receiver

    POST /api/billing/webhooks/razorpay/

    The signature header is checked against the raw body before the body
    is parsed. Mismatches return 400 and nothing is processed.
    """
    raw_body = request.body
    signature = request.META.get(WEBHOOK_SIGNATURE_HEADER)
    result = OrderPaymentService.handle_webhook(raw_body, signature)
    if result.is_err():
        error = result.unwrap_err()
        logger.warning(f"⚠️ [Webhook API] Rejected webhook: {error.code}")
        return error_response(error)
    return Response({"success": True, "data": result.unwrap()})


# ===============================================================================
# SUBSCRIPTION API 🔄
# ===============================================================================


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def subscription_status_api(request: Request) -> Response:
    """GET /api/billing/subscription/"""
    return Response({"success": True, "data": SubscriptionService.get_subscription_status(request.user)})


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def subscribe_api(request: Request) -> Response:
    serializer = SubscribeSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    data = serializer.validated_data
    result = SubscriptionService.subscribe(
        request.user,
        data["plan_id"],
        coupon_code=data["coupon_code"] or None,
        payment_method_ref=data["payment_method_ref"],
    )
    return result_response(result.map(lambda sub: SubscriptionSerializer(sub).data), status.HTTP_201_CREATED)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def change_plan_api(request: Request) -> Response:
    serializer = ChangePlanSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    result = SubscriptionService.change_plan(
        request.user, serializer.validated_data["plan_id"], mode=serializer.validated_data["mode"]
    )
    return result_response(
        result.map(
            lambda change: {
                "change_id": str(change.id),
                "change_type": change.change_type,
                "mode": change.mode,
                "status": change.status,
                "new_plan_id": change.new_plan_id,
                "proration_amount": str(change.proration_amount),
                "effective_date": change.effective_date,
            }
        )
    )


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def cancel_subscription_api(request: Request) -> Response:
    serializer = CancelSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    result = SubscriptionService.cancel(
        request.user,
        at_period_end=serializer.validated_data["at_period_end"],
        reason=serializer.validated_data["reason"],
    )
    return result_response(
        result.map(
            lambda outcome: {
                "subscription": SubscriptionSerializer(outcome["subscription"]).data,
                "at_period_end": outcome["at_period_end"],
                "refund_amount": str(outcome["refund_amount"]),
                "end_date": outcome["end_date"],
            }
        )
    )


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def pause_subscription_api(request: Request) -> Response:
    serializer = PauseSubscriptionSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    result = SubscriptionService.pause(request.user, serializer.validated_data["days"])
    return result_response(result.map(lambda sub: SubscriptionSerializer(sub).data))


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def resume_subscription_api(request: Request) -> Response:
    result = SubscriptionService.resume(request.user)
    return result_response(result.map(lambda sub: SubscriptionSerializer(sub).data))


# ===============================================================================
# COUPON API 🏷️
# ===============================================================================


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def validate_coupon_api(request: Request) -> Response:
    """POST /api/billing/coupons/validate/"""
    serializer = CouponValidateSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request_response(serializer.errors)

    validation = CouponService.validate(user=request.user, **serializer.to_service_kwargs())
    return Response(
        {
            "success": True,
            "data": {
                "valid": validation.is_valid,
                "discount_amount": str(validation.discount_amount),
                "final_amount": str(validation.final_amount),
                "extra_trial_days": validation.extra_trial_days,
                "reason": validation.error_message,
                "error_code": validation.error_code,
            },
        }
    )
