"""
Error codes and exception types shared by the services and routers.
"""

from typing import List, Optional

from fastapi import HTTPException


class ErrorCode:
    """Stable error codes surfaced to API clients and stored on jobs."""
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_URL = "INVALID_URL"
    UNSUPPORTED_HOST = "UNSUPPORTED_HOST"
    TOO_LARGE = "TOO_LARGE"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_BLOCKED = "UPSTREAM_BLOCKED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    NON_JSON = "NON_JSON"
    SCHEMA = "SCHEMA"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"


HTTP_STATUS = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_URL: 400,
    ErrorCode.UNSUPPORTED_HOST: 400,
    ErrorCode.TOO_LARGE: 413,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.UPSTREAM_TIMEOUT: 504,
    ErrorCode.UPSTREAM_BLOCKED: 502,
    ErrorCode.DOWNLOAD_FAILED: 502,
    ErrorCode.UPLOAD_FAILED: 502,
    ErrorCode.NON_JSON: 502,
    ErrorCode.SCHEMA: 502,
    ErrorCode.ALREADY_RUNNING: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNKNOWN: 500,
}


class PipelineError(HTTPException):
    """
    An HTTPException that also carries a stable error code.

    Services raise it directly; the app's exception handler turns it into
    a ``{"success": false, "errorCode": ...}`` body with the mapped status.
    """

    def __init__(self, code: str, message: str = "", status_code: Optional[int] = None):
        self.code = code
        self.message = message or code
        super().__init__(
            status_code=status_code or HTTP_STATUS.get(code, 500),
            detail=self.message,
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SchemaError(PipelineError):
    """Model output could not be parsed or did not match the output schema."""

    def __init__(self, violations: List[str], fallback=None, code: str = ErrorCode.SCHEMA):
        self.violations = violations
        self.fallback = fallback
        summary = "; ".join(violations[:5]) if violations else "schema validation failed"
        super().__init__(code, summary)


class ProcessTimeout(TimeoutError):
    """An external process ran past its deadline and was killed."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:.0f}s")


class ProcessFailed(RuntimeError):
    """An external process exited with a non-zero code."""

    def __init__(self, label: str, returncode: int, stderr: str = ""):
        self.label = label
        self.returncode = returncode
        self.stderr = stderr
        last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
        super().__init__(f"{label} exited {returncode}: {last_line}")
