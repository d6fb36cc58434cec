"""
URL configuration for the settlement app.

Routes:
    - POST /webhooks/payments/ - Payment gateway webhook endpoint

Usage:
    # In config/urls.py
    urlpatterns = [
        path("", include("settlement.urls")),
    ]
"""

from django.urls import path

from settlement.webhooks.views import payment_webhook

app_name = "settlement"

urlpatterns = [
    path("webhooks/payments/", payment_webhook, name="payment_webhook"),
]
