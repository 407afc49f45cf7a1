from rest_framework import serializers

from ..models import PaymentRecord, RunnerPayout


class PaymentOutSerializer(serializers.ModelSerializer):
    job_id = serializers.IntegerField(read_only=True)
    verified_by_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = PaymentRecord
        fields = ("id", "job_id", "payment_hash", "payment_request", "preimage", "amount_sats",
                  "verification_level", "method", "verified_by_id", "verified_at", "paid_at",
                  "created_at", "updated_at")
        read_only_fields = fields


class PaymentAdminOutSerializer(PaymentOutSerializer):
    """Vue admin: inclut la preuve manuelle stockée."""
    class Meta(PaymentOutSerializer.Meta):
        fields = PaymentOutSerializer.Meta.fields + ("proof",)
        read_only_fields = fields


class VerificationResultOutSerializer(serializers.Serializer):
    verified = serializers.BooleanField()
    level = serializers.ChoiceField(choices=[c for c, _ in PaymentRecord.LEVEL_CHOICES])
    message = serializers.CharField()
    payment = PaymentOutSerializer(allow_null=True)


class InvoiceOutSerializer(serializers.Serializer):
    payment_id = serializers.IntegerField(source="payment.id")
    payment_request = serializers.CharField(source="invoice.payment_request")
    payment_hash = serializers.CharField(source="invoice.payment_hash")
    amount_sats = serializers.IntegerField(source="invoice.amount_sats")
    expires_at = serializers.DateTimeField(source="invoice.expires_at")


class PaymentStatsOutSerializer(serializers.Serializer):
    total_payments = serializers.IntegerField()
    total_volume_sats = serializers.IntegerField()
    average_amount_sats = serializers.IntegerField()
    by_level = serializers.DictField(child=serializers.IntegerField())


class PayoutOutSerializer(serializers.ModelSerializer):
    job_id = serializers.IntegerField(read_only=True)
    runner_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = RunnerPayout
        fields = ("id", "job_id", "runner_id", "amount_sats", "fee_sats", "net_sats", "payment_hash",
                  "payment_request", "status", "error_message", "processed_at", "completed_at",
                  "failed_at", "created_at")
        read_only_fields = fields


class EarningsOutSerializer(serializers.Serializer):
    total_earned_sats = serializers.IntegerField()
    pending_sats = serializers.IntegerField()
    fees_sats = serializers.IntegerField()
    completed = serializers.IntegerField()
    failed = serializers.IntegerField()
    payouts = PayoutOutSerializer(many=True)


class MonitoringOutSerializer(serializers.Serializer):
    stuck_payments = serializers.IntegerField()
    expired_invoices = serializers.IntegerField()
    stuck_payment_ids = serializers.ListField(child=serializers.IntegerField())
    expired_payment_ids = serializers.ListField(child=serializers.IntegerField())
    lightning_ok = serializers.BooleanField()
