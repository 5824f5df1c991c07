import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base for errors that map onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "Internal server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Authentication required"


class ForbiddenError(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not authorized"


class SignatureError(AppError):
    """Webhook payload could not be authenticated. Nothing was processed."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid webhook signature"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class GatewayError(AppError):
    """A payment gateway API call failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Payment provider unavailable"


class ReconciliationError(AppError):
    """
    An authenticated event cannot be tied to a user.

    Workers log and drop it; it is never reported back to the gateway since a
    redelivery carries the same missing mapping.
    """

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Could not resolve user for payment event"


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} na rota {request.url}: {exc.detail}")
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Erro não tratado na rota {request.url}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Erro interno do servidor"},
        )
