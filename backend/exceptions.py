from typing import Optional, Dict, Any
from fastapi import HTTPException

class EpicIntegrationError(Exception):
    """Base exception for the Epic integration"""
    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

class FHIRConnectionError(EpicIntegrationError):
    """Raised when the Epic FHIR server cannot be reached or times out"""
    pass

class FHIRDataError(EpicIntegrationError):
    """Raised when Epic answers with an error status or unusable content"""
    pass

class TokenExpiredError(EpicIntegrationError):
    """Raised when the stored access token is missing, expired or rejected"""
    pass

class ConnectionNotFoundError(EpicIntegrationError):
    """Raised when a facility has no Epic connection"""
    pass

class MappingNotFoundError(EpicIntegrationError):
    """Raised when an entity mapping id does not exist"""
    pass

class DatabaseError(EpicIntegrationError):
    """Raised when there's a database operation error"""
    pass

class ValidationError(EpicIntegrationError):
    """Raised when request data validation fails"""
    pass

class InvalidTransitionError(EpicIntegrationError):
    """Raised when a connection status change is not allowed"""
    pass

def handle_epic_exception(exc: EpicIntegrationError) -> HTTPException:
    """Convert integration exceptions to HTTP exceptions"""
    status_code = 500
    error_code = exc.error_code or "INTERNAL_ERROR"

    if isinstance(exc, ValidationError):
        status_code = 400
        error_code = "VALIDATION_ERROR"
    elif isinstance(exc, ConnectionNotFoundError):
        status_code = 404
        error_code = "CONNECTION_NOT_FOUND"
    elif isinstance(exc, MappingNotFoundError):
        status_code = 404
        error_code = "MAPPING_NOT_FOUND"
    elif isinstance(exc, TokenExpiredError):
        status_code = 401
        error_code = "TOKEN_EXPIRED"
    elif isinstance(exc, InvalidTransitionError):
        status_code = 409
        error_code = "INVALID_TRANSITION"
    elif isinstance(exc, FHIRConnectionError):
        status_code = 503  # Service Unavailable
        error_code = "FHIR_CONNECTION_ERROR"
    elif isinstance(exc, FHIRDataError):
        status_code = 502  # Bad Gateway
        error_code = "FHIR_DATA_ERROR"
    elif isinstance(exc, DatabaseError):
        status_code = 500
        error_code = "DATABASE_ERROR"

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.message,
            "error_code": error_code,
            "details": exc.details
        }
    )
