from drf_spectacular.utils import OpenApiExample, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.permissions.job_participant import JobParticipantPermission
from ..serializers.input import (
    PaymentConfirmInputSerializer,
    PaymentCreateInputSerializer,
    PaymentReviewInputSerializer,
    PaymentVerifyInputSerializer,
)
from ..serializers.output import EarningsOutSerializer, PaymentOutSerializer, VerificationResultOutSerializer
from ..services.payment_service import PaymentService
from ..services.payouts import PayoutService

_HASH = "b1d2a9c7e0f4a3b5c6d7e8f90123456789abcdef0123456789abcdef01234567"
_PREIMAGE = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"


@extend_schema(
    tags=["Payments"],
    request=PaymentCreateInputSerializer,
    responses={
        201: OpenApiResponse(response=PaymentOutSerializer, description="Paiement enregistré (job inchangé)"),
        400: OpenApiResponse(description="INVALID_AMOUNT / INVALID_PAYMENT_HASH / INVALID_INVOICE / INVOICE_EXPIRED / INVOICE_AMOUNT_MISMATCH"),
        404: OpenApiResponse(description="JOB_NOT_FOUND"),
        409: OpenApiResponse(description="JOB_NOT_COMPLETED / PAYMENT_EXISTS / INVOICE_ALREADY_USED"),
    },
    examples=[
        OpenApiExample(
            "Exemple requête",
            value={"job_id": 42, "amount_sats": 2500, "payment_hash": _HASH},
            request_only=True,
        ),
    ],
)
class PaymentCreateView(APIView):
    """
    POST /payments/
    Enregistre le paiement d'un job terminé (hash ou facture BOLT11).
    """
    serializer_class = PaymentCreateInputSerializer

    def post(self, request):
        ser = self.serializer_class(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        payment = PaymentService().create_payment(
            job_id=data["job_id"],
            amount_sats=data["amount_sats"],
            payment_hash=data.get("payment_hash") or None,
            payment_request=data.get("payment_request") or None,
            actor=request.user,
        )
        return Response(PaymentOutSerializer(payment).data, status=status.HTTP_201_CREATED)


@extend_schema(
    tags=["Payments"],
    responses={
        200: PaymentOutSerializer,
        403: OpenApiResponse(description="FORBIDDEN"),
        404: OpenApiResponse(description="PAYMENT_NOT_FOUND"),
    },
)
class PaymentDetailView(APIView):
    permission_classes = [IsAuthenticated, JobParticipantPermission]

    def get(self, request, payment_id: int):
        payment = PaymentService().get_payment(payment_id)
        self.check_object_permissions(request, payment)
        return Response(PaymentOutSerializer(payment).data)


@extend_schema(
    tags=["Payments"],
    request=PaymentConfirmInputSerializer,
    responses={
        200: OpenApiResponse(response=PaymentOutSerializer, description="Paiement confirmé, job payment_confirmed"),
        400: OpenApiResponse(description="INVALID_PREIMAGE / PREIMAGE_MISMATCH"),
        404: OpenApiResponse(description="PAYMENT_NOT_FOUND"),
        409: OpenApiResponse(description="PAYMENT_ALREADY_CONFIRMED / JOB_NOT_COMPLETED / PAYMENT_HASH_MISSING"),
    },
    examples=[
        OpenApiExample("Exemple requête", value={"preimage": _PREIMAGE}, request_only=True),
    ],
)
class PaymentConfirmView(APIView):
    """
    POST /payments/<id>/confirm/
    Vérifie SHA256(preimage) == payment_hash puis confirme paiement et job atomiquement.
    """
    serializer_class = PaymentConfirmInputSerializer

    def post(self, request, payment_id: int):
        ser = self.serializer_class(data=request.data)
        ser.is_valid(raise_exception=True)
        payment = PaymentService().confirm_payment(payment_id, ser.validated_data["preimage"], actor=request.user)
        return Response(PaymentOutSerializer(payment).data)


@extend_schema(
    tags=["Payments"],
    request=PaymentVerifyInputSerializer,
    responses={
        200: OpenApiResponse(response=VerificationResultOutSerializer,
                             description="cryptographic / pending_manual / disputed"),
        400: OpenApiResponse(description="INVALID_PAYMENT_HASH / INVALID_PREIMAGE / INVALID_PROOF"),
        404: OpenApiResponse(description="PAYMENT_NOT_FOUND"),
    },
    examples=[
        OpenApiExample(
            "Preuve WebLN",
            value={"payment_hash": _HASH, "proof": _PREIMAGE, "method": "webln"},
            request_only=True,
        ),
        OpenApiExample(
            "Exemple réponse",
            value={"verified": True, "level": "cryptographic",
                   "message": "Payment verified cryptographically", "payment": {"id": 7}},
            response_only=True,
        ),
    ],
)
class PaymentVerifyView(APIView):
    """
    POST /payments/verify/
    webln/manual: préimage vérifiée cryptographiquement.
    qr/upload: preuve stockée, revue manuelle par le runner.
    """
    serializer_class = PaymentVerifyInputSerializer

    def post(self, request):
        ser = self.serializer_class(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        result = PaymentService().verify_payment(
            payment_hash=data["payment_hash"],
            proof=data["proof"],
            method=data["method"],
            actor=request.user,
        )
        return Response(VerificationResultOutSerializer(result).data)


@extend_schema(
    tags=["Payments"],
    request=PaymentReviewInputSerializer,
    responses={
        200: PaymentOutSerializer,
        409: OpenApiResponse(description="NOT_ASSIGNED_RUNNER / PAYMENT_NOT_PENDING_REVIEW / JOB_NOT_COMPLETED"),
    },
)
class PaymentReviewView(APIView):
    """POST /payments/<id>/review/ (runner ou admin)"""
    serializer_class = PaymentReviewInputSerializer

    def post(self, request, payment_id: int):
        ser = self.serializer_class(data=request.data)
        ser.is_valid(raise_exception=True)
        payment = PaymentService().review_manual_proof(payment_id, request.user, ser.validated_data["approve"])
        return Response(PaymentOutSerializer(payment).data)


@extend_schema(
    tags=["Payments"],
    request=None,
    responses={
        200: PaymentOutSerializer,
        409: OpenApiResponse(description="PAYMENT_CRYPTOGRAPHICALLY_SETTLED / PAYMENT_ALREADY_DISPUTED / INVALID_JOB_STATUS"),
    },
)
class PaymentDisputeView(APIView):
    def post(self, request, payment_id: int):
        payment = PaymentService().dispute_payment(payment_id, request.user)
        return Response(PaymentOutSerializer(payment).data)


@extend_schema(
    tags=["Payments"],
    responses={200: PaymentOutSerializer(many=True)},
)
class PendingVerificationsView(APIView):
    """GET /payments/pending-verifications/ : preuves manuelles en attente pour le runner courant."""

    def get(self, request):
        qs = PaymentService().pending_verifications(request.user)
        return Response(PaymentOutSerializer(qs, many=True).data)


@extend_schema(
    tags=["Payments"],
    responses={200: EarningsOutSerializer},
)
class EarningsView(APIView):
    """GET /payments/earnings/ : versements du runner courant (totaux et historique)."""

    def get(self, request):
        svc = PayoutService()
        data = dict(svc.earnings(request.user), payouts=svc.history(request.user))
        return Response(EarningsOutSerializer(data).data)
