"""
Exceptions for the IQAC portal.

Raise these from handlers and workflow code instead of building HTTP
responses by hand; `register_exception_handlers` turns them into JSON
bodies of the form ``{"error": ..., "code": ..., "details": {...}}``.

Usage:
    from iqac.errors import TaskNotFoundError

    task = db["task"].find_one({"_id": oid(task_id)})
    if not task:
        raise TaskNotFoundError(task_id)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .settings import settings

logger = logging.getLogger("iqac.errors")


class PortalError(Exception):
    """Base exception for all portal errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


# ============================================
# Authentication & Authorization Errors
# ============================================

class AuthenticationError(PortalError):
    """User authentication failed"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", code: str = "AUTH_FAILED"):
        super().__init__(message, code=code)


class InvalidTokenError(AuthenticationError):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, code="INVALID_TOKEN")


class AuthorizationError(PortalError):
    """User not authorized for this action"""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="NOT_AUTHORIZED")


# ============================================
# Resource Errors (404-type)
# ============================================

class ResourceNotFoundError(PortalError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} not found",
            code=f"{resource_type.upper().replace(' ', '_')}_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class UserNotFoundError(ResourceNotFoundError):
    def __init__(self, user_id: Any):
        super().__init__("User", user_id)


class TaskNotFoundError(ResourceNotFoundError):
    def __init__(self, task_id: Any):
        super().__init__("Assignment", task_id)


class FileRecordNotFoundError(ResourceNotFoundError):
    def __init__(self, file_id: Any):
        super().__init__("File", file_id)


class CourseNotFoundError(ResourceNotFoundError):
    def __init__(self, course_id: Any):
        super().__init__("Course", course_id)


class CourseDocumentNotFoundError(ResourceNotFoundError):
    def __init__(self, document_id: Any):
        super().__init__("Document", document_id)


class NotificationNotFoundError(ResourceNotFoundError):
    def __init__(self, notification_id: Any):
        super().__init__("Notification", notification_id)


class FileDataMissingError(PortalError):
    """Metadata exists but the GridFS object is gone"""

    status_code = 404

    def __init__(self, gridfs_id: Any):
        super().__init__(
            "File data not found in GridFS",
            code="FILE_DATA_MISSING",
            details={"gridfs_id": str(gridfs_id)},
        )


# ============================================
# Validation & State Errors
# ============================================

class ValidationError(PortalError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class InvalidTransitionError(PortalError):
    """Task status move that the workflow does not allow"""

    status_code = 400

    def __init__(self, current: str, requested: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move assignment from '{current}' to '{requested}'",
            code="INVALID_TRANSITION",
            details={"current_status": current, "requested_status": requested},
        )


class ConflictError(PortalError):
    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFLICT", details=details)


class FileTooLargeError(PortalError):
    status_code = 413

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"File exceeds the {limit // (1024 * 1024)}MB limit",
            code="FILE_TOO_LARGE",
            details={"size": size, "limit": limit},
        )


class DatabaseUnavailableError(PortalError):
    status_code = 503

    def __init__(self, message: str = "Database not configured"):
        super().__init__(message, code="DATABASE_UNAVAILABLE")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        content: Dict[str, Any] = {"error": "Internal server error"}
        if settings.DEBUG:
            content["message"] = str(exc)
        return JSONResponse(status_code=500, content=content)
