from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from cookhound.errors import CookhoundError, InfrastructureError, ProgrammerError
from cookhound.utils.log import get_logger

log = get_logger("http-errors")


def create_json_error_response(status_code: int, message: str, error_type: str | None = None) -> JSONResponse:
    """JSON error body with an optional `type` for machine parsing."""
    content = {"message": message}
    if error_type:
        content["type"] = error_type
    return JSONResponse(status_code=status_code, content=content)


async def cookhound_error_handler(_: Request, exc: Exception) -> Response:
    """Map the error taxonomy to responses; backend and programmer details stay in the logs."""
    if not isinstance(exc, CookhoundError):
        return await general_exception_handler(_, exc)

    if isinstance(exc, InfrastructureError):
        log.error("infrastructure_error", code=exc.code.value, error=str(exc.cause or exc))
        return create_json_error_response(
            status_code=exc.status_code,
            message="A backend service is temporarily unavailable.",
            error_type=exc.error_type,
        )
    if isinstance(exc, ProgrammerError):
        log.error("programmer_error", error=str(exc))
        return create_json_error_response(
            status_code=exc.status_code, message="An unexpected error occurred.", error_type=exc.error_type
        )
    return create_json_error_response(status_code=exc.status_code, message=str(exc), error_type=exc.error_type)


async def general_exception_handler(_: Request, exc: Exception) -> Response:
    """Unexpected errors (500)."""
    log.error("unexpected_error", error=str(exc), exc_info=exc)
    return create_json_error_response(
        status_code=500, message="An unexpected error occurred.", error_type="internal_server_error"
    )
