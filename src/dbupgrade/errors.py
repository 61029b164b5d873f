"""
Error types for the database upgrade orchestrator.

This module defines the UpgradeError base class and the subclasses that make
up the workflow's failure taxonomy. Steps raise these errors; the
orchestrator is the single place that catches them, restores dependent
state where possible, and converts them into a WorkflowResult and a process
exit code.
"""

from __future__ import annotations

from typing import Any


class UpgradeError(Exception):
    """
    Base exception class for upgrade workflow errors.

    Attributes:
        error_code: Internal error code string (e.g., "failed_precondition",
            "external_state_conflict", "acquisition_failed").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, workload names).
        exit_code: Process exit code reported by the CLI for this error.

    Example:
        >>> raise UpgradeError(
        ...     error_code="failed_precondition",
        ...     message="Installation path does not exist",
        ...     details={"path": "/usr/lib/postgresql/15"},
        ... )
    """

    exit_code: int = 1

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpgradeError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, details and exit_code.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "exit_code": self.exit_code,
        }


class PreconditionFailure(UpgradeError):
    """
    A gate before any mutation failed.

    Raised when the caller is not an administrator, the installation path or
    version binary is missing, or the installed version cannot be read.
    """

    exit_code = 10

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PreconditionFailure."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class ExternalStateConflict(UpgradeError):
    """
    The dependent application is in a state the workflow must not override.

    Raised when a workload is actively running, a workload could not be
    disabled, or services are still running after the kill escalation.
    Manual intervention is required.
    """

    exit_code = 20

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an ExternalStateConflict."""
        super().__init__(
            error_code="external_state_conflict", message=message, details=details
        )


class AcquisitionFailure(UpgradeError):
    """Both download transports failed, or the artifact digest did not match."""

    exit_code = 30

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an AcquisitionFailure."""
        super().__init__(
            error_code="acquisition_failed", message=message, details=details
        )


class InstallFailure(UpgradeError):
    """
    The installer exited with a non-zero code.

    This failure is recorded rather than raised mid-workflow: restoration of
    dependent workloads still runs after a failed install.
    """

    exit_code = 40

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InstallFailure."""
        super().__init__(error_code="install_failed", message=message, details=details)


class RestorationFailure(UpgradeError):
    """One or more snapshotted workloads could not be re-enabled."""

    exit_code = 50

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RestorationFailure."""
        super().__init__(
            error_code="restoration_failed", message=message, details=details
        )


class InvalidArgumentError(UpgradeError):
    """
    Error raised when an input value is malformed.

    Used for version strings, digests and similar values supplied through
    configuration.
    """

    exit_code = 2

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(UpgradeError):
    """
    Error raised when an external collaborator cannot be reached.

    Covers the backup application API, systemctl and external commands.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class InternalError(UpgradeError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
