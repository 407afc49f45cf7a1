import logging

from django.db import DatabaseError as DjangoDatabaseError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .errors import AppError

logger = logging.getLogger("errandbit.errors")

# statut HTTP -> code machine pour les exceptions DRF natives
DRF_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "TOO_MANY_REQUESTS",
}


def _error_body(code: str, message: str, details=None) -> dict:
    body = {"code": code, "message": message}
    if details:
        body["details"] = details
    return {"error": body}


def exception_handler(exc, context):
    """
    Rend toutes les erreurs sous la forme {"error": {"code", "message", "details"?}}.
    Les erreurs de persistance sont journalisées et masquées (500 générique).
    """
    if isinstance(exc, AppError):
        if exc.status_code >= 500:
            logger.error("Operational error %s: %s", exc.code, exc.message)
        return Response(_error_body(exc.code, exc.message, exc.details), status=exc.status_code)

    if isinstance(exc, DjangoDatabaseError):
        view = context.get("view")
        logger.exception("Database failure in %s", type(view).__name__ if view else "unknown view")
        return Response(_error_body("DATABASE_ERROR", "Internal server error"),
                        status=status.HTTP_500_INTERNAL_SERVER_ERROR)

    response = drf_exception_handler(exc, context)
    if response is None:
        return None

    code = DRF_STATUS_CODES.get(response.status_code, "ERROR")
    data = response.data
    if isinstance(data, dict) and set(data) == {"detail"}:
        response.data = _error_body(code, str(data["detail"]))
    else:
        response.data = _error_body(code, "Invalid request", data)
    return response
