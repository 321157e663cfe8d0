"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Re-authentication is required; `code` keeps the precise reason"""
    def __init__(self, code: str, message: str = "Re-authentication required"):
        super().__init__(message, status_code=401, code=code)


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str = "Invalid request", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, code="VALIDATION_ERROR", details=details)


# Token codec errors
class TokenDecodeError(Exception):
    """Raised by a token codec when a credential cannot be trusted"""


# Store errors
class StoreUnavailableError(BaseAPIException):
    """Token store could not be reached or failed mid-operation"""
    def __init__(self, message: str = "Token store temporarily unavailable"):
        super().__init__(message, status_code=503, code="STORE_UNAVAILABLE")


class TokenIdConflictError(BaseAPIException):
    """A token id was inserted twice"""
    def __init__(self, token_id: str):
        self.token_id = token_id
        super().__init__("Token identifier collision", status_code=500, code="TOKEN_ID_CONFLICT")


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message, status_code=429, code="RATE_LIMITED")
