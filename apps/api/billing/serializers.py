# ===============================================================================
# BILLING API SERIALIZERS - CHECKOUT, SUBSCRIPTIONS AND COUPONS 💳
# ===============================================================================

from decimal import Decimal
from typing import Any, ClassVar

from rest_framework import serializers

from apps.billing.config import DEFAULT_CURRENCY_CODE, PAYMENT_TYPES
from apps.billing.models import Subscription
from apps.common.types import from_minor_units

# ===============================================================================
# CHECKOUT SERIALIZERS 🛒
# ===============================================================================


class CreateOrderSerializer(serializers.Serializer):
    """Checkout request. Cross-field rules are enforced by the payment service."""

    payment_type = serializers.ChoiceField(choices=PAYMENT_TYPES)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    currency = serializers.CharField(max_length=3, default=DEFAULT_CURRENCY_CODE)
    service_id = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    plan_id = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    dog_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    partner_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    reference = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    billing_period = serializers.ChoiceField(choices=("monthly", "yearly"), default="monthly")
    coupon_code = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    tier = serializers.CharField(max_length=30, required=False, allow_blank=True, default="")

    def validate_currency(self, value: str) -> str:
        return value.upper()


class VerifyPaymentSerializer(serializers.Serializer):
    razorpay_payment_id = serializers.CharField(max_length=100)
    razorpay_order_id = serializers.CharField(max_length=100)
    razorpay_signature = serializers.CharField(max_length=256)


class RefundSerializer(serializers.Serializer):
    amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0.01"), required=False, allow_null=True
    )
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


# ===============================================================================
# SUBSCRIPTION SERIALIZERS 🔄
# ===============================================================================


class SubscribeSerializer(serializers.Serializer):
    plan_id = serializers.CharField(max_length=50)
    coupon_code = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    payment_method_ref = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")


class ChangePlanSerializer(serializers.Serializer):
    plan_id = serializers.CharField(max_length=50)
    mode = serializers.ChoiceField(choices=("immediate", "next_cycle"), default="immediate")


class CancelSubscriptionSerializer(serializers.Serializer):
    at_period_end = serializers.BooleanField(default=True)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class PauseSubscriptionSerializer(serializers.Serializer):
    days = serializers.IntegerField()


class SubscriptionSerializer(serializers.ModelSerializer):
    price = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields: ClassVar = [
            "id",
            "plan_id",
            "status",
            "billing_cycle",
            "price",
            "currency",
            "auto_renew",
            "trial_end",
            "end_date",
            "next_billing_date",
            "resume_at",
        ]

    def get_price(self, obj: Subscription) -> str:
        return str(from_minor_units(obj.price_cents))


# ===============================================================================
# COUPON SERIALIZERS 🏷️
# ===============================================================================


class CouponValidateSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    plan_id = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")

    def to_service_kwargs(self) -> dict[str, Any]:
        data = self.validated_data
        return {"code": data["code"], "order_amount": data["amount"], "plan_id": data["plan_id"] or None}
