from rest_framework import serializers

from jobs.models import Job
from jobs.services.lifecycle import JobLifecycle


class JobCreateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Job
        fields = ("title", "description", "price_cents")
        extra_kwargs = {"price_cents": {"min_value": 1}}


class JobOutSerializer(serializers.ModelSerializer):
    client_id = serializers.IntegerField(read_only=True)
    runner_id = serializers.IntegerField(read_only=True, allow_null=True)
    allowed_events = serializers.SerializerMethodField()

    class Meta:
        model = Job
        fields = ("id", "title", "description", "price_cents", "status", "client_id", "runner_id",
                  "allowed_events", "created_at", "accepted_at", "started_at", "completed_at",
                  "payment_confirmed_at", "disputed_at", "cancelled_at", "updated_at")
        read_only_fields = fields

    def get_allowed_events(self, obj) -> list:
        return JobLifecycle().allowed_events(obj)
