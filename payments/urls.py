from django.urls import path

from payments.views.payments import (
    EarningsView,
    PaymentConfirmView,
    PaymentCreateView,
    PaymentDetailView,
    PaymentDisputeView,
    PaymentReviewView,
    PaymentVerifyView,
    PendingVerificationsView,
)
from payments.views.webhook import LightningWebhookView

urlpatterns = [
    path("", PaymentCreateView.as_view(), name="payments-create"),
    path("verify/", PaymentVerifyView.as_view(), name="payments-verify"),
    path("pending-verifications/", PendingVerificationsView.as_view(), name="payments-pending"),
    path("earnings/", EarningsView.as_view(), name="payments-earnings"),
    path("webhook/", LightningWebhookView.as_view(), name="payments-webhook"),
    path("<int:payment_id>/", PaymentDetailView.as_view(), name="payments-detail"),
    path("<int:payment_id>/confirm/", PaymentConfirmView.as_view(), name="payments-confirm"),
    path("<int:payment_id>/review/", PaymentReviewView.as_view(), name="payments-review"),
    path("<int:payment_id>/dispute/", PaymentDisputeView.as_view(), name="payments-dispute"),
]
