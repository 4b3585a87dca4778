"""Global error handling middleware."""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from karma_notify.middleware.logging import redact_pii
from karma_notify.services.token_store import TokenStoreError

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn anything a route let escape into a generic JSON error."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except TokenStoreError as exc:
            logger.error("Token store %s error on %s: %s", exc.kind.value, redact_pii(request.url.path), redact_pii(str(exc)))
            return JSONResponse(
                status_code=503 if exc.retryable else 500,
                content={"detail": "Device token storage is unavailable.", "error_type": exc.kind.value},
            )
        except Exception as exc:
            logger.error(
                "Unhandled exception on %s: %s\n%s",
                redact_pii(request.url.path),
                redact_pii(str(exc)),
                redact_pii(traceback.format_exc()),
            )
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "An internal error occurred. Please try again later.",
                    "error_type": type(exc).__name__,
                },
            )
