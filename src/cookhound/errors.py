"""
Error taxonomy shared by the session and queue subsystems.

- ValidationError: bad caller input (maps to 400)
- InfrastructureError: a backend could not be reached or answered with an error (maps to 503)
- ProgrammerError: registration/deployment mismatch that must surface loudly (maps to 500)

Absence (unknown session, missing schedule, ...) is never an error: callers get None or a no-op.
"""

from __future__ import annotations

from enum import Enum


class InfrastructureErrorCode(str, Enum):
    REDIS_CONNECTION_FAILED = "redis_connection_failed"
    REDIS_COMMAND_FAILED = "redis_command_failed"
    QUEUE_COMMAND_FAILED = "queue_command_failed"
    CRON_SCHEDULER_FAILED = "cron_scheduler_failed"


class CookhoundError(Exception):
    status_code: int = 500
    error_type: str = "internal_server_error"


class ValidationError(CookhoundError):
    status_code = 400
    error_type = "validation_error"

    def __init__(self, message: str = "Invalid input") -> None:
        super().__init__(message)


class InfrastructureError(CookhoundError):
    """
    Wraps a backend failure. The original exception is kept on `cause` (and chained via
    `raise ... from`) so logs keep the full picture while callers only see one type.
    """

    status_code = 503
    error_type = "service_unavailable"

    def __init__(self, code: InfrastructureErrorCode, cause: BaseException | None = None) -> None:
        self.code = code
        self.cause = cause
        detail = f"{code.value}: {cause}" if cause is not None else code.value
        super().__init__(detail)


class ProgrammerError(CookhoundError):
    status_code = 500
    error_type = "internal_server_error"


class JobNotRegisteredError(ProgrammerError):
    def __init__(self, job_name: str) -> None:
        self.job_name = job_name
        super().__init__(f"job is not registered: {job_name}")


class QueueConnectionMissingError(ProgrammerError):
    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"queue backend is not connected (queue: {queue_name})")


class JobProcessingError(CookhoundError):
    """
    Raised from a consumer when a job handler fails. The queue's retry/backoff policy
    decides what happens next.
    """

    def __init__(self, job_name: str, job_id: str | None = None) -> None:
        self.job_name = job_name
        self.job_id = job_id
        super().__init__(f"job processing failed: {job_name}")
