from django.urls import path

from .views import PaymentIntentionView, ProcessedWebhookView, RedirectWebhookView

app_name = "payments"

urlpatterns = [
    path("webhooks/processed", ProcessedWebhookView.as_view(), name="webhook-processed"),
    path("webhooks/redirect", RedirectWebhookView.as_view(), name="webhook-redirect"),
    path("intentions/", PaymentIntentionView.as_view(), name="intentions"),
]
