"""Error taxonomy shared by the dispatcher, poll engine and HTTP layer.

Every error raised by the core derives from :class:`GatewayError`, which
knows its HTTP status and how to render the OpenAI-style error envelope.
The HTTP layer installs a single handler for the base class, so a new
subclass is mapped automatically instead of escaping as a bare 500.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def tag(self) -> str:
        return self.__class__.__name__

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            }
        }


class AuthError(GatewayError):
    status_code = 401
    error_type = "authentication_error"


class DispatchError(GatewayError):
    """Resolution or scheduling failure, carrying the HTTP status to report."""

    error_type = "invalid_request_error"

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message, status_code=status_code)
        if status_code == 401:
            self.error_type = "authentication_error"
        elif status_code == 504:
            self.error_type = "timeout"
        elif status_code >= 500:
            self.error_type = "upstream_error"


class PollError(GatewayError):
    status_code = 502
    error_type = "poll_error"

    def __init__(
        self,
        message: str,
        *,
        job_id: str,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, status_code=504 if timed_out else 502)
        self.job_id = job_id
        self.timed_out = timed_out
        if timed_out:
            self.error_type = "timeout"


class JobNotFoundError(GatewayError):
    status_code = 404
    error_type = "not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobPendingError(GatewayError):
    """Internal signal for the poll loop; never rendered to a caller."""

    status_code = 202
    error_type = "pending"

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} is {status}")
        self.job_id = job_id
        self.status = status


class RegistrationError(GatewayError):
    """Submitted keys cannot be registered."""

    status_code = 400
    error_type = "invalid_request_error"


class ModelError(GatewayError):
    status_code = 502
    error_type = "model_error"


class StoreError(GatewayError):
    status_code = 500
    error_type = "store_error"


def describe_error(exc: GatewayError) -> str:
    return f"[{exc.tag}] {exc.message}"
