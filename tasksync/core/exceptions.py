from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """(http_status, biz_code, default message)"""

    UNAUTHORIZED = (403, "AUTH_403", "You do not have permission to perform this action.")
    UNAUTHENTICATED = (401, "AUTH_401", "Login is required.")
    VALIDATION_ERROR = (422, "REQ_422", "The request is invalid.")
    NOT_FOUND = (404, "RES_404", "The requested resource was not found.")
    REMOTE_WRITE_FAILED = (502, "STORE_502", "The change could not be saved. Please try again.")
    CASCADE_INCONSISTENCY = (500, "STORE_501", "A dependent update could not be saved.")
    NOTIFICATION_FAILED = (500, "NOTI_500", "Notification dispatch failed.")
    CACHE_INVALIDATION_FAILED = (500, "CACHE_500", "Cache invalidation failed.")
    INTERNAL_SERVER_ERROR = (500, "SYS_500", "Internal server error.")

    def __init__(self, http_status: int, biz_code: str, default_message: str):
        self.http_status = http_status
        self.biz_code = biz_code
        self.default_message = default_message


class BusinessException(Exception):
    error_code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    reason: str = "internal-error"

    def __init__(self, error_code: Optional[ErrorCode] = None, message: Optional[str] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message or self.error_code.default_message
        super().__init__(self.message)


# Fail-loud: surfaced to the caller before or instead of the primary write.

class Unauthorized(BusinessException):
    error_code = ErrorCode.UNAUTHORIZED
    reason = "unauthorized"


class ValidationFailed(BusinessException):
    error_code = ErrorCode.VALIDATION_ERROR
    reason = "validation-error"


class NotFound(BusinessException):
    error_code = ErrorCode.NOT_FOUND
    reason = "not-found"


class RemoteWriteFailure(BusinessException):
    error_code = ErrorCode.REMOTE_WRITE_FAILED
    reason = "remote-error"


# Fail-soft: logged and reported as warnings, never unwind a primary write.

class CascadeInconsistency(BusinessException):
    error_code = ErrorCode.CASCADE_INCONSISTENCY
    reason = "cascade-inconsistency"

    def __init__(self, project_id: str, cause: Exception):
        self.project_id = project_id
        self.cause = cause
        super().__init__(message=f"Project {project_id} completion could not be persisted: {cause}")


class NotificationDispatchFailure(BusinessException):
    error_code = ErrorCode.NOTIFICATION_FAILED
    reason = "notification-failed"


class CacheInvalidationFailure(BusinessException):
    error_code = ErrorCode.CACHE_INVALIDATION_FAILED
    reason = "cache-invalidation-failed"


FAILURE_EXCEPTIONS = {
    exc.reason: exc for exc in (Unauthorized, ValidationFailed, NotFound, RemoteWriteFailure)
}
