"""Domain Ports - Abstract Contracts for Bulk Export and Notification.

This module defines the Port interfaces (abstract contracts) that Adapters must implement,
together with the Result type and the exception hierarchy shared by every layer.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Ports never expose bearer tokens or signed assertions in error messages
    - Streaming interface prevents memory exhaustion with large exports
    - Per-file Result objects keep a single broken download from failing a run

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (httpx, SMTP, JWKS files) implement these ports
    - Domain Core is isolated from transport specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, TypeVar, Union

from labsieve.domain.models import AccessToken, ExportManifest, NotificationMessage

# Type variable for Result generic
T = TypeVar('T')

# Per-record callback used by the streaming ingester
RecordHandler = Callable[[dict], Any]


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The streaming ingester returns one Result per output file so that callers
    can see partial failures without the batch raising.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (ReadError, HTTPStatusError, etc.)
        error_details: Additional error context (url, records_before_failure, etc.)

    Example:
        ```python
        result = Result.success_result(120)
        if result.is_success():
            total += result.value

        result = Result.failure_result(
            httpx.ReadError("connection reset"),
            error_details={"url": url, "records_before_failure": 17}
        )
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T, details: Optional[dict] = None) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value
            details: Optional context kept alongside the value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=details
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context (url, records_before_failure, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


@dataclass
class StreamBatchReport:
    """Outcome of one resource-type pass over an export manifest.

    Each entry in ``results`` is a per-file Result whose success value is the
    number of records handed to the handler. Failed files keep the partial
    count under ``error_details["records_before_failure"]``.
    """

    resource_type: str
    results: List[Result[int]] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.results)

    @property
    def succeeded_files(self) -> int:
        return sum(1 for r in self.results if r.is_success())

    @property
    def failed_files(self) -> int:
        return sum(1 for r in self.results if r.is_failure())

    @property
    def record_count(self) -> int:
        """Records delivered across all files, including partial ones."""
        total = 0
        for r in self.results:
            if r.is_success():
                total += r.value or 0
            else:
                total += (r.error_details or {}).get("records_before_failure", 0)
        return total

    def failures(self) -> List[Result[int]]:
        return [r for r in self.results if r.is_failure()]

    def is_complete(self) -> bool:
        """True when every selected file streamed to the end."""
        return self.failed_files == 0


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class LabSieveError(Exception):
    """Base exception for every fatal error in a run.

    Attributes:
        stage: Human-readable name of the stage that failed
    """

    stage = "run"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ConfigurationError(LabSieveError):
    """Raised when required configuration is missing or invalid.

    Configuration errors are never retried.
    """

    stage = "configuration"


class SigningKeyError(ConfigurationError):
    """Raised when no usable signing key can be loaded from the key store.

    Attributes:
        key_store: Location of the key store that was read
    """

    stage = "assertion signing"

    def __init__(self, message: str, key_store: Optional[str] = None):
        super().__init__(message)
        self.key_store = key_store


class AuthenticationError(LabSieveError):
    """Raised when the token endpoint rejects the assertion or cannot be reached.

    Attributes:
        status_code: HTTP status returned by the token endpoint, if any
    """

    stage = "token exchange"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class KickoffError(LabSieveError):
    """Raised when the export request does not yield a status location.

    Attributes:
        status_code: HTTP status returned by the kickoff endpoint, if any
    """

    stage = "export kickoff"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PollingAbortedError(LabSieveError):
    """Raised when the polling loop gives up on a job.

    A configured PollingGuard stopping the loop raises this, as does a
    completed status response whose body is not a readable manifest.

    Attributes:
        attempts: Number of status requests issued before stopping
        status_url: The job-status location that was being polled
    """

    stage = "export polling"

    def __init__(self, message: str, attempts: int, status_url: str):
        super().__init__(message)
        self.attempts = attempts
        self.status_url = status_url


class IndexFrozenError(LabSieveError):
    """Raised when a patient is added to an index after the Patient pass settled."""

    stage = "ingestion"


# ============================================================================
# Ports
# ============================================================================

class StreamingPort(ABC):
    """Abstract contract for fanning out over a completed export manifest.

    Implementations open one retrieval per output file of the requested type,
    run them concurrently and feed each parsed record to ``handler``.

    Key Principles:
        - Streaming: records are handed over as they arrive
        - Settling: the call returns once every file finished or failed
        - Non-throwing: per-file errors are reported as failure Results
    """

    @abstractmethod
    async def stream_resources(
        self,
        manifest: ExportManifest,
        token: AccessToken,
        resource_type: str,
        handler: RecordHandler,
    ) -> StreamBatchReport:
        """Stream every output file of ``resource_type`` into ``handler``.

        Parameters:
            manifest: Completed export manifest
            token: Bearer token used for every file request
            resource_type: Resource type tag to select (e.g. "Patient")
            handler: Callback invoked once per parsed record

        Returns:
            StreamBatchReport: One Result per selected output file
        """
        pass


class NotificationPort(ABC):
    """Abstract contract for delivering the final report."""

    @abstractmethod
    def send(self, message: NotificationMessage) -> Result[str]:
        """Deliver a message.

        Parameters:
            message: Structured message (sender, recipients, subject, body)

        Returns:
            Result[str]: Delivery acknowledgement or error
        """
        pass

