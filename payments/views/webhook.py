import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from ..auth.webhook_hmac import LightningWebhookAuthentication
from ..serializers.input import LightningWebhookInputSerializer
from ..serializers.output import PaymentOutSerializer
from ..services.payment_service import PaymentService
from ..services.preimage import hash_prefix

logger = logging.getLogger("errandbit.webhooks")


@extend_schema(
    tags=["Webhooks"],
    request=LightningWebhookInputSerializer,
    responses={
        200: PaymentOutSerializer,
        401: OpenApiResponse(description="UNAUTHORIZED (signature, horodatage, rejeu)"),
        404: OpenApiResponse(description="PAYMENT_NOT_FOUND"),
    },
)
class LightningWebhookView(APIView):
    """
    POST /payments/webhook/
    Auth: HMAC-SHA256(secret, timestamp + body), en-têtes X-Webhook-Signature / X-Webhook-Timestamp.
    La préimage reçue est vérifiée comme toute autre preuve; sans préimage le backend est interrogé.
    """
    authentication_classes = [LightningWebhookAuthentication]
    permission_classes = [IsAuthenticated]
    serializer_class = LightningWebhookInputSerializer

    def post(self, request):
        ser = self.serializer_class(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        logger.info("Lightning webhook %s (hash=%s)", data["event"], hash_prefix(data["payment_hash"]))
        payment = PaymentService().handle_settlement_notification(
            payment_hash=data["payment_hash"],
            preimage=data.get("preimage") or None,
        )
        return Response(PaymentOutSerializer(payment).data)
