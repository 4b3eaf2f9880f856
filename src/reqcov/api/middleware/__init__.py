"""API middleware: request ID tracking and consistent error responses."""

from reqcov.api.middleware.errors import ErrorHandlerMiddleware
from reqcov.api.middleware.request_id import RequestIDMiddleware

__all__ = [
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
]
