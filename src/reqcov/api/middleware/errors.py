"""Error handling middleware for consistent JSON error responses.

Every error leaves the API in the same envelope:

    {"error": <code>, "message": <text>, "detail": {...}, "request_id": <id>}

Rejected external files map to 422 with the validation details; backend
failures map to 502 since the fault is upstream of this service.
"""

import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from reqcov.api.middleware.request_id import get_request_id
from reqcov.services.backend_client import BackendError
from reqcov.services.external_tables import ExternalFileValidationError

logger = logging.getLogger(__name__)

BAD_GATEWAY = 502


def error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """Render the error envelope, tagged with the current request ID."""
    body: dict[str, Any] = {"error": error, "message": message}
    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


def backend_error_detail(exc: BackendError) -> dict[str, Any] | None:
    """Upstream status and body excerpt of a failed backend fetch, if known."""
    detail: dict[str, Any] = {}
    if exc.status_code is not None:
        detail["upstream_status"] = exc.status_code
    if exc.detail:
        detail["upstream_detail"] = exc.detail
    return detail or None


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn exceptions escaping the routers into JSON error envelopes.

    - ExternalFileValidationError: 422 with the file validation details
    - BackendError: 502 with the upstream status
    - HTTPException: its own status
    - anything else: logged, 500
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except ExternalFileValidationError as exc:
            logger.info("Rejected external file %s: %s", exc.details.source_name, exc.message)
            return error_response(exc.code, exc.message, exc.status_code, exc.details.to_dict())
        except BackendError as exc:
            logger.error(
                "Backend failure on %s %s: %s", request.method, request.url.path, exc
            )
            return error_response("backend_error", str(exc), BAD_GATEWAY, backend_error_detail(exc))
        except HTTPException as exc:
            return error_response("http_error", str(exc.detail), exc.status_code)
        except Exception:
            logger.exception(
                "Unexpected error processing request: %s %s",
                request.method,
                request.url.path,
            )
            return error_response("internal_error", "An internal error occurred", 500)
