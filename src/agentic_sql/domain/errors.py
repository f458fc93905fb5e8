"""
Custom exception hierarchy for the agentic SQL assistant.

This module defines the exception hierarchy with:
- Consistent error codes for API responses
- HTTP status code mappings for FastAPI
- Detailed error messages for debugging

Exception Categories:
- 4xx Client Errors: BadRequestError, NotFoundError, ConflictError
- 5xx Server Errors: DatabaseError, LLMError, StorageError, etc.

Generation failures inside a chat turn are NOT raised to callers: the
generation client classifies them and the coordinator turns them into a
PipelineResult. These exceptions cover infrastructure boundaries and the
HTTP surface.

Usage:
    raise DatabaseQueryError("no such table: orders")
    raise NotFoundError("Database not found", details={"database_id": "sales"})
"""

from typing import Any, Dict, Optional


class AgenticSQLException(Exception):
    """
    Base exception for all agentic SQL errors.

    All custom exceptions inherit from this class, providing:
    - error_code: Machine-readable error identifier
    - http_status: Suggested HTTP status code for API responses
    - details: Optional structured data for debugging

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (e.g., "DATABASE_QUERY_ERROR")
        http_status: HTTP status code to return (default: 500)
        details: Optional dictionary with additional error context
    """

    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        if http_status:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Client Errors (4xx)
# =============================================================================


class BadRequestError(AgenticSQLException):
    """
    Raised when the request is malformed or invalid.

    HTTP Status: 400 Bad Request

    Examples:
        - Empty SQL script
    """

    error_code = "BAD_REQUEST"
    http_status = 400


class NotFoundError(AgenticSQLException):
    """
    Raised when a requested resource is not found.

    HTTP Status: 404 Not Found

    Examples:
        - Database id not open and no stored snapshot
        - Snapshot missing from the store
    """

    error_code = "NOT_FOUND"
    http_status = 404


class ConflictError(AgenticSQLException):
    """
    Raised when a resource already exists.

    HTTP Status: 409 Conflict

    Examples:
        - Creating a database whose id is already open
    """

    error_code = "CONFLICT"
    http_status = 409


# =============================================================================
# Configuration Errors (5xx)
# =============================================================================


class ConfigurationError(AgenticSQLException):
    """
    Raised when configuration is invalid or missing.

    HTTP Status: 500 Internal Server Error

    Examples:
        - Supabase snapshot backend selected without URL/key
    """

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# =============================================================================
# Embedded Engine Errors
# =============================================================================


class DatabaseError(AgenticSQLException):
    """
    Base class for embedded engine errors.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "DATABASE_ERROR"
    http_status = 503


class DatabaseQueryError(DatabaseError):
    """
    Raised when the engine rejects a statement.

    The message is the engine's own error text, unaltered, so it can be
    shown to the user verbatim.

    HTTP Status: 400 Bad Request

    Examples:
        - SQL syntax error
        - Table/column not found
        - Constraint violation
    """

    error_code = "DATABASE_QUERY_ERROR"
    http_status = 400


class SnapshotError(DatabaseError):
    """
    Raised when a database image cannot be exported or reconstructed.

    HTTP Status: 500 Internal Server Error
    """

    error_code = "SNAPSHOT_ERROR"
    http_status = 500


# =============================================================================
# LLM Errors (5xx)
# =============================================================================


class LLMError(AgenticSQLException):
    """
    Raised when LLM operations fail.

    HTTP Status: 503 Service Unavailable

    The upstream HTTP status (when known) is kept in details["status_code"]
    so the generation client can classify the failure.

    Examples:
        - LLM API unreachable or overloaded
        - Rate limit / quota exhausted
        - Invalid or missing API key
    """

    error_code = "LLM_ERROR"
    http_status = 503

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")


# =============================================================================
# Storage Errors (5xx)
# =============================================================================


class StorageError(AgenticSQLException):
    """
    Raised when snapshot storage operations fail.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "STORAGE_ERROR"
    http_status = 503


class StorageConnectionError(StorageError):
    """
    Raised when storage connection fails.

    HTTP Status: 503 Service Unavailable

    Examples:
        - Supabase storage unreachable
        - Authentication failure
    """

    error_code = "STORAGE_CONNECTION_ERROR"
    http_status = 503


class StorageFileError(StorageError):
    """
    Raised when file operations fail (download, upload, delete).

    HTTP Status: 500 Internal Server Error

    Examples:
        - Snapshot not found
        - Upload failure
        - Permission denied
    """

    error_code = "STORAGE_FILE_ERROR"
    http_status = 500


# =============================================================================
# Service Unavailable (5xx)
# =============================================================================


class ServiceUnavailableError(AgenticSQLException):
    """
    Raised when a required service is not available.

    HTTP Status: 503 Service Unavailable

    Examples:
        - Coordinator requested before application startup finished
    """

    error_code = "SERVICE_UNAVAILABLE"
    http_status = 503
