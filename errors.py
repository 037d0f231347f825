"""
Error taxonomy shared by repositories, services and routes.

Every error carries an HTTP status and a machine-readable code so the
exception handlers registered in main.py can render it without per-route
try/except blocks.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

from config import settings

logger = logging.getLogger(__name__)

# Error types
AUTHENTICATION = "AUTHENTICATION"
AUTHORIZATION = "AUTHORIZATION"
VALIDATION = "VALIDATION"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
DATABASE = "DATABASE"
UNKNOWN = "UNKNOWN"


class BaseError(Exception):
    status_code = 500

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", type_: str = UNKNOWN,
                 status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.type = type_
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "type": self.type,
                "message": self.message,
                "details": _safe_details(self.details),
                "timestamp": self.timestamp,
            }
        }


class ApiError(BaseError):

    @classmethod
    def bad_request(cls, message="Bad request", code="VALIDATION_INVALID_INPUT", details=None):
        return cls(message, code, VALIDATION, 400, details)

    @classmethod
    def unauthorized(cls, message="Unauthorized", code="AUTH_INVALID_CREDENTIALS", details=None):
        return cls(message, code, AUTHENTICATION, 401, details)

    @classmethod
    def forbidden(cls, message="Forbidden", code="AUTH_INSUFFICIENT_PERMISSIONS", details=None):
        return cls(message, code, AUTHORIZATION, 403, details)

    @classmethod
    def not_found(cls, message="Resource not found", code="NOT_FOUND_RESOURCE", details=None):
        return cls(message, code, NOT_FOUND, 404, details)

    @classmethod
    def conflict(cls, message="Resource conflict", code="CONFLICT_RESOURCE_EXISTS", details=None):
        return cls(message, code, CONFLICT, 409, details)

    @classmethod
    def validation(cls, message="Validation error", details=None):
        return cls(message, "VALIDATION_INVALID_INPUT", VALIDATION, 422, details)

    @classmethod
    def internal(cls, message="Internal server error", code="UNKNOWN_ERROR", details=None):
        return cls(message, code, UNKNOWN, 500, details)


class DatabaseError(ApiError):

    def __init__(self, message="Database operation failed", code="DATABASE_QUERY_ERROR",
                 details=None, status_code=500, type_=DATABASE):
        super().__init__(message, code, type_, status_code, details)

    @classmethod
    def connection_error(cls, message="Database connection error", details=None):
        return cls(message, "DATABASE_CONNECTION_ERROR", details)

    @classmethod
    def query_error(cls, message="Database query failed", details=None):
        return cls(message, "DATABASE_QUERY_ERROR", details)

    @classmethod
    def transaction_error(cls, message="Database transaction failed", details=None):
        return cls(message, "DATABASE_TRANSACTION_ERROR", details)

    @classmethod
    def not_found(cls, entity: str, id_: Any = None, details=None):
        return NotFoundError(entity, id_, details)


class NotFoundError(DatabaseError):

    def __init__(self, entity: str, id_: Any = None, details=None):
        self.entity = entity
        super().__init__(
            f"{entity} with id {id_} not found",
            f"NOT_FOUND_{entity.upper()}",
            details,
            status_code=404,
            type_=NOT_FOUND,
        )


class AuthError(ApiError):

    def __init__(self, message, code="AUTH_INVALID_CREDENTIALS", details=None, status_code=401):
        super().__init__(message, code, AUTHENTICATION, status_code, details)

    @classmethod
    def invalid_credentials(cls, message="Invalid credentials", details=None):
        return cls(message, "AUTH_INVALID_CREDENTIALS", details)

    @classmethod
    def account_locked(cls, message="Account locked due to multiple failed attempts", details=None):
        return cls(message, "AUTH_ACCOUNT_LOCKED", details)

    @classmethod
    def token_expired(cls, message="Authentication token has expired", details=None):
        return cls(message, "AUTH_TOKEN_EXPIRED", details)

    @classmethod
    def token_invalid(cls, message="Invalid authentication token", details=None):
        return cls(message, "AUTH_TOKEN_INVALID", details)

    @classmethod
    def not_verified(cls, message="User account is not verified", details=None):
        return cls(message, "AUTH_USER_NOT_VERIFIED", details)

    @classmethod
    def not_approved(cls, message="User account is pending approval", details=None):
        return cls(message, "AUTH_USER_NOT_APPROVED", details)

    @classmethod
    def insufficient_permissions(cls, message="Insufficient permissions", details=None):
        error = cls(message, "AUTH_INSUFFICIENT_PERMISSIONS", details, status_code=403)
        error.type = AUTHORIZATION
        return error


class ValidationError(ApiError):

    def __init__(self, message="Validation error", code="VALIDATION_INVALID_INPUT", details=None):
        super().__init__(message, code, VALIDATION, 422, details)

    @classmethod
    def invalid_input(cls, message="Invalid input data", details=None):
        return cls(message, "VALIDATION_INVALID_INPUT", details)

    @classmethod
    def required_field(cls, field: str, message: Optional[str] = None, details=None):
        return cls(message or f"{field} is required", "VALIDATION_REQUIRED_FIELD", {**(details or {}), "field": field})

    @classmethod
    def invalid_format(cls, field: str, message: Optional[str] = None, details=None):
        return cls(message or f"{field} format is invalid", "VALIDATION_INVALID_FORMAT", {**(details or {}), "field": field})


def validate_object_id(value: Any, name: str = "id") -> ObjectId:
    """Return value as an ObjectId or raise a 422 naming the offending field."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise ValidationError.invalid_format(name, f"Invalid {name} format")
    return ObjectId(str(value))


def _safe_details(details: Dict[str, Any]) -> Dict[str, Any]:
    # details may hold driver exceptions or ObjectIds
    out = {}
    for key, value in details.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        elif isinstance(value, (list, dict)):
            out[key] = value if key == "fields" else str(value)
        else:
            out[key] = str(value)
    return out


# -----------------------------
# Exception handlers
# -----------------------------

def _log_error(request: Request, error: BaseError):
    user = getattr(request.state, "user", None)
    logger.error(
        "API Error %s %s -> %s %s: %s (user=%s)",
        request.method,
        request.url.path,
        error.status_code,
        error.code,
        error.message,
        user.get("id") if user else None,
    )


def register_error_handlers(app: FastAPI):

    @app.exception_handler(BaseError)
    def handle_base_error(request: Request, exc: BaseError):
        _log_error(request, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {"field": ".".join(str(p) for p in err.get("loc", [])[1:]), "message": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        error = ApiError.validation("Validation failed", {"fields": fields})
        _log_error(request, error)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(DuplicateKeyError)
    def handle_duplicate_key(request: Request, exc: DuplicateKeyError):
        key_value = (exc.details or {}).get("keyValue") or {}
        field_name = next(iter(key_value), "resource")
        error = ApiError.conflict(
            f"{field_name} with value '{key_value.get(field_name)}' already exists",
            details={"field": field_name},
        )
        _log_error(request, error)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = ApiError.internal("An unexpected error occurred" if settings.is_production else str(exc))
        return JSONResponse(status_code=error.status_code, content=error.to_dict())
