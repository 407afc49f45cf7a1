from django.contrib import admin
from .models import PaymentRecord, RunnerPayout


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "job", "amount_sats", "verification_level", "method", "paid_at", "created_at")
    list_filter = ("verification_level", "method")
    search_fields = ("payment_hash",)
    # écritures uniquement via PaymentService
    readonly_fields = ("job", "payment_hash", "payment_request", "preimage", "amount_sats", "verification_level",
                       "method", "proof", "verified_by", "verified_at", "paid_at", "created_at", "updated_at")

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(RunnerPayout)
class RunnerPayoutAdmin(admin.ModelAdmin):
    list_display = ("id", "job", "runner", "net_sats", "fee_sats", "status", "created_at")
    list_filter = ("status",)
    search_fields = ("payment_hash",)
    readonly_fields = ("job", "runner", "amount_sats", "fee_sats", "net_sats", "payment_request", "payment_hash",
                       "preimage", "status", "error_message", "processed_at", "completed_at", "failed_at",
                       "created_at", "updated_at")

    def has_delete_permission(self, request, obj=None):
        return False
