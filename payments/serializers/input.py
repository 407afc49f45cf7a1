from rest_framework import serializers

from ..models import PaymentRecord


class PaymentCreateInputSerializer(serializers.Serializer):
    job_id = serializers.IntegerField(min_value=1)
    amount_sats = serializers.IntegerField()
    payment_hash = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    payment_request = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class PaymentConfirmInputSerializer(serializers.Serializer):
    preimage = serializers.CharField(allow_blank=True, trim_whitespace=True)


class PaymentVerifyInputSerializer(serializers.Serializer):
    payment_hash = serializers.CharField()
    proof = serializers.CharField()
    method = serializers.ChoiceField(choices=[c for c, _ in PaymentRecord.METHOD_CHOICES])


class PaymentReviewInputSerializer(serializers.Serializer):
    approve = serializers.BooleanField()


class InvoiceInputSerializer(serializers.Serializer):
    amount_sats = serializers.IntegerField()


class LightningWebhookInputSerializer(serializers.Serializer):
    event = serializers.CharField(required=False, default="invoice.paid")
    payment_hash = serializers.CharField()
    preimage = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class PayoutRequestInputSerializer(serializers.Serializer):
    payment_request = serializers.CharField(trim_whitespace=True)
