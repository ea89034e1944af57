"""Application-wide exception hierarchy."""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base application error carrying an HTTP status and a machine code."""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses."""
        result = {
            "status": "error",
            "statusCode": self.status_code,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(AppError):
    """Raised when input is missing or malformed."""

    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: str = "VALIDATION_ERROR",
    ):
        super().__init__(message, code=code, details=details)
        self.field = field
        if field and "field" not in self.details:
            self.details["field"] = field


class InvalidInputError(ValidationError):
    """Raised by the image store when there is nothing to upload."""

    def __init__(self, message: str = "No image data provided"):
        super().__init__(message, code="INVALID_INPUT")


class ConflictError(AppError):
    """Raised when a unique field is already taken."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFLICT", details=details)


class AuthenticationError(AppError):
    """Raised when credentials or tokens are rejected."""

    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="AUTH_ERROR")


class AuthorizationError(AppError):
    """Raised when the caller lacks permission for an operation."""

    status_code = 403

    def __init__(
        self,
        message: str = "Insufficient permissions",
        required_role: Optional[str] = None,
    ):
        super().__init__(message, code="FORBIDDEN")
        self.required_role = required_role
        if required_role:
            self.details["required_role"] = required_role


class NotFoundError(AppError):
    """Raised when a requested resource does not exist."""

    status_code = 404

    def __init__(
        self,
        resource: str,
        identifier: Any = None,
        message: Optional[str] = None,
    ):
        if message is None:
            message = f"{resource} not found"
        super().__init__(message, code="NOT_FOUND")
        self.resource = resource
        self.identifier = identifier


class StorageUnavailableError(AppError):
    """Raised when the remote image store cannot be reached or refuses an upload."""

    def __init__(self, message: str = "Image storage unavailable"):
        super().__init__(message, code="STORAGE_UNAVAILABLE")


class DatabaseError(AppError):
    """Raised when a persistence operation fails."""

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, code="DB_ERROR")


class ConfigurationError(AppError):
    """Raised at startup when required settings are missing."""

    def __init__(self, message: str):
        super().__init__(message, code="CONFIG_ERROR")
