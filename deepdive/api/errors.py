from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deepdive.research.errors import InvalidInput, ResearchError, SubstrateFailure


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None

    @classmethod
    def invalid_argument(cls, message: str, **details: Any) -> "APIError":
        return cls(status_code=400, code="invalid_argument", message=message, details=details or None)

    @classmethod
    def not_found(cls, what: str, **details: Any) -> "APIError":
        return cls(status_code=404, code="not_found", message=f"{what} not found.", details=details or None)


# Research failures that escape a route handler; task failures themselves live on the task row.
_RESEARCH_STATUS: dict[type[ResearchError], tuple[int, str]] = {
    InvalidInput: (400, "invalid_argument"),
    SubstrateFailure: (503, "dependency_unavailable"),
}


def _envelope(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=int(status_code), content={"error": body})


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return _envelope(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def research_error_handler(_req: Request, exc: ResearchError) -> JSONResponse:
    status_code, code = _RESEARCH_STATUS.get(type(exc), (500, "internal"))
    return _envelope(status_code=status_code, code=code, message=str(exc), details={"kind": exc.kind})


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Pydantic validation errors use the same envelope as APIError.
    return _envelope(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", req.method, req.url.path)
    return _envelope(status_code=500, code="internal", message="Internal server error.", details={"type": type(exc).__name__})
