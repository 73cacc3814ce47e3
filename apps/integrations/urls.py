from django.urls import path

from . import views

app_name = "integrations"

urlpatterns = [
    path("webhooks/stripe/", views.StripeWebhookView.as_view(), name="stripe_webhook"),
    path("webhooks/razorpay/", views.RazorpayWebhookView.as_view(), name="razorpay_webhook"),
]
