from django.db.models import Q
from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from core.permissions.job_participant import JobReadPermission
from payments.serializers.input import InvoiceInputSerializer, PayoutRequestInputSerializer
from payments.serializers.output import InvoiceOutSerializer, PayoutOutSerializer
from payments.services.payment_service import PaymentService
from payments.services.payouts import PayoutService
from payments.tasks import process_runner_payout
from .models import Job
from .serializers.jobs_serializers import JobCreateSerializer, JobOutSerializer
from .services.lifecycle import JobLifecycle

_CONFLICT = OpenApiResponse(description="INVALID_JOB_STATUS / JOB_NOT_AVAILABLE / NOT_ASSIGNED_RUNNER / ...")


@extend_schema(tags=["Jobs"])
class JobViewSet(viewsets.GenericViewSet, mixins.ListModelMixin, mixins.RetrieveModelMixin):
    """
    Jobs du marketplace. Les changements de statut passent exclusivement par JobLifecycle.
    list: jobs dont l'utilisateur est client ou runner (filtre ?status=).
    """
    serializer_class = JobOutSerializer
    permission_classes = [IsAuthenticated, JobReadPermission]
    filterset_fields = ["status"]
    ordering_fields = ["created_at", "price_cents"]
    ordering = ["-created_at"]
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        if self.action == "retrieve":
            return Job.objects.all()
        user = self.request.user
        return Job.objects.filter(Q(client=user) | Q(runner=user))

    @extend_schema(request=JobCreateSerializer, responses={201: JobOutSerializer})
    def create(self, request):
        ser = JobCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        job = ser.save(client=request.user)
        return Response(JobOutSerializer(job).data, status=status.HTTP_201_CREATED)

    def _transition(self, pk, method_name: str) -> Response:
        job = getattr(JobLifecycle(), method_name)(int(pk), self.request.user)
        return Response(JobOutSerializer(job).data)

    @extend_schema(request=None, responses={200: JobOutSerializer, 409: _CONFLICT})
    @action(detail=True, methods=["post"])
    def accept(self, request, pk=None):
        return self._transition(pk, "accept")

    @extend_schema(request=None, responses={200: JobOutSerializer, 409: _CONFLICT})
    @action(detail=True, methods=["post"])
    def start(self, request, pk=None):
        return self._transition(pk, "start")

    @extend_schema(request=None, responses={200: JobOutSerializer, 409: _CONFLICT})
    @action(detail=True, methods=["post"])
    def complete(self, request, pk=None):
        return self._transition(pk, "complete")

    @extend_schema(request=None, responses={200: JobOutSerializer, 409: _CONFLICT})
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        return self._transition(pk, "cancel")

    @extend_schema(request=None, responses={200: JobOutSerializer, 409: _CONFLICT})
    @action(detail=True, methods=["post"])
    def dispute(self, request, pk=None):
        """Avec un paiement enregistré, le litige passe par les règles de PaymentService."""
        job = PaymentService().dispute_job(int(pk), request.user)
        return Response(JobOutSerializer(job).data)

    @extend_schema(
        request=InvoiceInputSerializer,
        responses={
            201: InvoiceOutSerializer,
            400: OpenApiResponse(description="INVALID_AMOUNT"),
            409: OpenApiResponse(description="NOT_JOB_OWNER / JOB_NOT_COMPLETED / PAYMENT_EXISTS"),
            503: OpenApiResponse(description="LIGHTNING_UNAVAILABLE"),
        },
    )
    @action(detail=True, methods=["post"])
    def invoice(self, request, pk=None):
        ser = InvoiceInputSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        issued = PaymentService().create_invoice_for_job(int(pk), ser.validated_data["amount_sats"], request.user)
        return Response(InvoiceOutSerializer(issued).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        request=PayoutRequestInputSerializer,
        responses={
            202: PayoutOutSerializer,
            400: OpenApiResponse(description="INVALID_INVOICE / INVOICE_EXPIRED / INVOICE_AMOUNT_MISMATCH"),
            409: OpenApiResponse(description="NOT_ASSIGNED_RUNNER / JOB_NOT_PAID / PAYOUT_EXISTS / INVOICE_ALREADY_USED"),
        },
    )
    @action(detail=True, methods=["post"])
    def payout(self, request, pk=None):
        """Le runner soumet une facture du montant net; le règlement part en tâche de fond."""
        ser = PayoutRequestInputSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        payout = PayoutService().request_payout(int(pk), request.user, ser.validated_data["payment_request"])
        process_runner_payout.delay(payout.id)
        payout.refresh_from_db()
        return Response(PayoutOutSerializer(payout).data, status=status.HTTP_202_ACCEPTED)
