# ===============================================================================
# BILLING API URLS - CHECKOUT, WEBHOOK AND SUBSCRIPTION ENDPOINTS 💳
# ===============================================================================

from django.urls import path

from . import views

app_name = "api_billing"

urlpatterns = [
    # Checkout endpoints
    path("orders/", views.create_order_api, name="create_order"),
    path("orders/verify/", views.verify_payment_api, name="verify_payment"),
    path("orders/<str:order_id>/", views.order_status_api, name="order_status"),
    path("orders/<str:order_id>/refund/", views.refund_order_api, name="refund_order"),
    # Gateway webhooks
    path("webhooks/razorpay/", views.razorpay_webhook_api, name="razorpay_webhook"),
    # Subscription endpoints
    path("subscription/", views.subscription_status_api, name="subscription_status"),
    path("subscription/subscribe/", views.subscribe_api, name="subscribe"),
    path("subscription/change/", views.change_plan_api, name="change_plan"),
    path("subscription/cancel/", views.cancel_subscription_api, name="cancel_subscription"),
    path("subscription/pause/", views.pause_subscription_api, name="pause_subscription"),
    path("subscription/resume/", views.resume_subscription_api, name="resume_subscription"),
    # Coupon endpoints
    path("coupons/validate/", views.validate_coupon_api, name="validate_coupon"),
]
