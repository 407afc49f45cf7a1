from django.contrib import admin
from .models import Job


@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ("id", "title", "client", "runner", "status", "price_cents", "created_at", "updated_at")
    list_filter = ("status",)
    search_fields = ("title",)
    readonly_fields = ("status", "runner", "created_at", "updated_at", "accepted_at", "started_at",
                       "completed_at", "payment_confirmed_at", "disputed_at", "cancelled_at")
