"""
Proxmox State Sync - Custom Exceptions

This module defines custom exception classes for repository, hypervisor API
and synchronization errors, providing structured error handling with detailed
context information.
"""

from datetime import UTC, datetime
from typing import Any


class InfrastructureException(Exception):
    """Base exception class for infrastructure-related errors"""

    def __init__(
        self,
        message: str,
        error_code: str = "INFRASTRUCTURE_ERROR",
        details: dict[str, Any] | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.operation = operation
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON serialization"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "operation": self.operation,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(InfrastructureException):
    """Raised when input is malformed or out of range"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        validation_type: str = "schema",
    ):
        details: dict[str, Any] = {"validation_type": validation_type}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details=details,
            operation="data_validation",
        )
        self.field = field


class NotFoundError(InfrastructureException):
    """Raised when a referenced entity is absent from the store"""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            message=f"{resource_type} not found: {resource_id}",
            error_code="RESOURCE_NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
            operation="resource_lookup",
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConstraintError(InfrastructureException):
    """Raised on uniqueness, referential-integrity or append-only violations"""

    def __init__(
        self,
        message: str,
        constraint: str = "integrity",
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        details["constraint"] = constraint

        super().__init__(
            message=message,
            error_code="CONSTRAINT_VIOLATION",
            details=details,
            operation="constraint_check",
        )
        self.constraint = constraint


class DatabaseOperationError(InfrastructureException):
    """Raised when database operation fails"""

    def __init__(self, message: str, operation: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="DATABASE_OPERATION_ERROR",
            details=details,
            operation=operation,
        )


class ConfigurationError(InfrastructureException):
    """Raised when configuration is invalid"""

    def __init__(self, message: str, config_key: str | None = None):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details,
            operation="configuration",
        )


class HypervisorAPIError(InfrastructureException):
    """Base class for failures talking to the hypervisor management API"""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        path: str | None = None,
        error_code: str = "HYPERVISOR_API_ERROR",
    ):
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if path:
            details["path"] = path

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            operation="hypervisor_api",
        )
        self.status_code = status_code
        self.path = path


class TransientAPIError(HypervisorAPIError):
    """Network failure, timeout or server-side error; safe to retry"""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message, status_code=status_code, path=path, error_code="TRANSIENT_API_ERROR")


class FatalAPIError(HypervisorAPIError):
    """Authentication or authorization failure; never retried"""

    def __init__(self, message: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message, status_code=status_code, path=path, error_code="FATAL_API_ERROR")


class APIRequestError(HypervisorAPIError):
    """Request rejected by the API for this resource only"""

    def __init__(self, message: str, status_code: int | None = None, path: str | None = None):
        super().__init__(message, status_code=status_code, path=path, error_code="API_REQUEST_ERROR")


class SyncInProgressError(InfrastructureException):
    """Raised when a full sync is already running on the same orchestrator"""

    def __init__(self, target: str):
        super().__init__(
            message=f"A full sync is already in progress for {target}",
            error_code="SYNC_IN_PROGRESS",
            details={"target": target},
            operation="sync",
        )
