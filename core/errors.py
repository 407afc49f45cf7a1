"""
Taxonomie d'erreurs opérationnelles du core.
Chaque erreur porte un code machine stable (ex: "PAYMENT_EXISTS") rendu par
core.exceptions.exception_handler sous la forme {"error": {"code", "message"}}.
"""
from typing import Any, Optional

from rest_framework import status
from rest_framework.exceptions import APIException


class AppError(APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None,
                 details: Optional[Any] = None) -> None:
        self.message = message or self.default_detail
        self.code = code or self.default_code
        self.details = details
        super().__init__(detail=self.message, code=self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(AppError):
    """Entrée mal formée (préimage, hash, facture), corrigeable par le client."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Validation failed"
    default_code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    """Garde du cycle de vie ou du ledger violée (état incompatible, doublon)."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource conflict"
    default_code = "CONFLICT"


class DatabaseError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Database operation failed"
    default_code = "DATABASE_ERROR"


class ServiceUnavailableError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Service temporarily unavailable"
    default_code = "SERVICE_UNAVAILABLE"
