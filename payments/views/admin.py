from django.conf import settings
from rest_framework import mixins, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from ..models import PaymentRecord
from ..serializers.output import MonitoringOutSerializer, PaymentAdminOutSerializer, PaymentStatsOutSerializer
from ..services.ledger import PaymentLedger
from ..services.payment_service import PaymentService


class PaymentAdminViewSet(viewsets.GenericViewSet, mixins.ListModelMixin, mixins.RetrieveModelMixin):
    """
    Super-admin: consultation des paiements (filtres verification_level, method, job) et statistiques.
    """
    permission_classes = [IsAdminUser]
    serializer_class = PaymentAdminOutSerializer
    filterset_fields = ["verification_level", "method", "job"]
    ordering_fields = ["created_at", "amount_sats", "paid_at"]
    ordering = ["-created_at"]

    def get_queryset(self):
        return PaymentRecord.objects.select_related("job").all()

    @action(detail=False, methods=["get"], url_path="stats")
    def stats(self, request):
        data = PaymentLedger().stats()
        return Response(PaymentStatsOutSerializer(data).data)

    @action(detail=False, methods=["get"], url_path="monitoring")
    def monitoring(self, request):
        """Même rapport que la tâche monitor_payments, calculé à la demande."""
        data = PaymentService().monitoring_report(settings.STUCK_PAYMENT_AFTER_S)
        return Response(MonitoringOutSerializer(data).data)
