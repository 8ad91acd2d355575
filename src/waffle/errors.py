"""
Custom exception classes for Waffle.

This module defines the exception hierarchy used throughout Waffle. Every
exception carries a human-readable message, a retryable flag and a context
dictionary for structured logging, so callers can log failures uniformly
with ``log_with_context(logger, "error", ..., **exc.context)``.

Exception Hierarchy:
    WaffleError (base)
    ├── DirectoryAccessError (working directory missing/unreadable/empty)
    ├── FileAccessError (single file read/write failures)
    ├── TerraformSyntaxError (HCL diagnostics contained an error)
    ├── IaCParsingError (JSON or semantic parsing failures)
    ├── ValidationError (input constraint violations)
    ├── BedrockAPIError (foundation-model transport failures)
    ├── WAFRAPIError (Well-Architected Tool transport failures)
    ├── StateStoreError (session persistence failures)
    ├── ConfigurationError (invalid configuration)
    ├── OperationCancelledError (caller cancelled the workflow)
    └── sentinel kinds (PillarRequiredError, SessionNotFoundError, ...)

Wrapping:
    Lower layers wrap errors with ``raise Outer(...) from inner``. The
    ``is_error_kind`` helper walks the ``__cause__`` chain so a sentinel
    check (e.g. ``MaxRetriesExceededError``) still succeeds after a
    structured error (e.g. ``BedrockAPIError``) has been raised on top.

Retry Semantics:
    - Throttling, service-unavailable and model timeouts are retryable
    - Syntax, validation and parsing errors are permanent
"""

from collections.abc import Iterator


class WaffleError(Exception):
    """
    Base exception for all Waffle errors.

    Attributes:
        message: Human-readable error description
        retryable: Whether this error should be retried
        context: Additional context dictionary for structured logging
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        context: dict[str, object] | None = None,
    ) -> None:
        """
        Initialize Waffle error.

        Args:
            message: Human-readable error description
            retryable: Whether this error should be retried
            context: Additional context for structured logging
        """
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation of error."""
        return self.message


# =============================================================================
# Sentinel kinds
# =============================================================================


class PillarRequiredError(WaffleError):
    """Pillar scope was selected but no pillar was given."""

    def __init__(self, message: str = "pillar is required when scope level is pillar") -> None:
        super().__init__(message)


class QuestionIDRequiredError(WaffleError):
    """Question scope was selected but no question id was given."""

    def __init__(
        self, message: str = "question ID is required when scope level is question"
    ) -> None:
        super().__init__(message)


class InvalidWorkloadIDError(WaffleError):
    """The workload identifier is empty or malformed."""

    def __init__(self, message: str = "invalid workload ID") -> None:
        super().__init__(message)


class InvalidDirectoryLocationError(WaffleError):
    """The directory location is invalid."""

    def __init__(self, message: str = "invalid directory location") -> None:
        super().__init__(message)


class SessionNotFoundError(WaffleError):
    """No persisted session exists for the requested id."""

    def __init__(self, message: str = "session not found", session_id: str | None = None) -> None:
        super().__init__(message, context={"session_id": session_id})
        self.session_id = session_id


class WorkloadNotFoundError(WaffleError):
    """The workload (or a question within it) does not exist."""

    def __init__(self, message: str = "workload not found", workload_id: str | None = None) -> None:
        super().__init__(message, context={"workload_id": workload_id})
        self.workload_id = workload_id


class EvaluatorNotInitializedError(WaffleError):
    """An evaluation was requested without a usable evaluator."""

    def __init__(self, message: str = "evaluator not initialized") -> None:
        super().__init__(message)


class NoFilesProvidedError(WaffleError):
    """Parsing or validation was requested with an empty file list."""

    def __init__(self, message: str = "no files provided for parsing") -> None:
        super().__init__(message)


class MaxFilesExceededError(WaffleError):
    """The working directory holds more IaC files than allowed."""

    def __init__(self, message: str = "exceeded maximum file limit") -> None:
        super().__init__(message)


class InvalidPlanFileError(WaffleError):
    """The Terraform plan file is unusable."""

    def __init__(self, message: str = "invalid plan file") -> None:
        super().__init__(message)


class BedrockInvocationFailedError(WaffleError):
    """The Bedrock model invocation failed."""

    def __init__(self, message: str = "bedrock model invocation failed") -> None:
        super().__init__(message)


class MaxRetriesExceededError(WaffleError):
    """Retries were exhausted for a retryable operation."""

    def __init__(self, message: str = "maximum retries exceeded") -> None:
        super().__init__(message)


class SessionAlreadyCompletedError(WaffleError):
    """A completed session cannot be resumed."""

    def __init__(self, message: str = "session already completed") -> None:
        super().__init__(message)


class InvalidSessionStatusError(WaffleError):
    """The session status does not permit the requested operation."""

    def __init__(self, message: str = "invalid session status for operation") -> None:
        super().__init__(message)


# =============================================================================
# Structured kinds
# =============================================================================


class DirectoryAccessError(WaffleError):
    """
    Error accessing the IaC working directory.

    Raised when the directory is missing, is not a directory, cannot be
    read, or contains no IaC files. These are permanent errors.

    Attributes:
        path: Directory path that failed
    """

    def __init__(self, path: str, reason: str) -> None:
        """
        Initialize directory access error.

        Args:
            path: Directory path that could not be accessed
            reason: Description of the underlying failure
        """
        super().__init__(
            f"cannot access directory at {path}: {reason}",
            retryable=False,
            context={"path": path, "reason": reason},
        )
        self.path = path
        self.reason = reason


class FileAccessError(WaffleError):
    """
    Error reading or writing a single file.

    Attributes:
        path: File path
        operation: Operation that failed (e.g. "read", "access", "write")
    """

    def __init__(self, path: str, operation: str, reason: str) -> None:
        """
        Initialize file access error.

        Args:
            path: File that could not be accessed
            operation: Operation being performed
            reason: Description of the underlying failure
        """
        super().__init__(
            f"failed to {operation} file {path}: {reason}",
            retryable=False,
            context={"path": path, "operation": operation, "reason": reason},
        )
        self.path = path
        self.operation = operation
        self.reason = reason


class TerraformSyntaxError(WaffleError):
    """
    Terraform HCL contained a syntax error.

    Attributes:
        file: File with the first error
        line: Line number of the first error (0 when unknown)
        detail: Diagnostic summary and detail
    """

    def __init__(self, file: str, line: int, detail: str) -> None:
        """
        Initialize Terraform syntax error.

        Args:
            file: File path relative to the working directory
            line: 1-based line number, or 0 when unknown
            detail: Diagnostic message ("summary: detail")
        """
        super().__init__(
            f"terraform syntax error in {file} at line {line}: {detail}",
            retryable=False,
            context={"file": file, "line": line, "detail": detail},
        )
        self.file = file
        self.line = line
        self.detail = detail


class IaCParsingError(WaffleError):
    """
    Error parsing IaC content (plan JSON, model replies, merges).

    Attributes:
        file: File or logical source being parsed
        parse_context: Short description of what was being parsed
    """

    def __init__(self, file: str, reason: str, parse_context: str | None = None) -> None:
        """
        Initialize IaC parsing error.

        Args:
            file: File or source identifier
            reason: Description of the underlying failure
            parse_context: Optional parsing context (e.g. "invalid JSON format")
        """
        if parse_context:
            message = f"failed to parse IaC file {file} ({parse_context}): {reason}"
        else:
            message = f"failed to parse IaC file {file}: {reason}"
        super().__init__(
            message,
            retryable=False,
            context={"file": file, "parse_context": parse_context, "reason": reason},
        )
        self.file = file
        self.parse_context = parse_context
        self.reason = reason


class ValidationError(WaffleError):
    """
    Input constraint violation.

    Attributes:
        field: Name of the offending field
        value: Offending value (may be None)
    """

    def __init__(self, field: str, message: str, value: object = None) -> None:
        """
        Initialize validation error.

        Args:
            field: Field that failed validation
            message: Why validation failed
            value: Offending value, if useful for debugging
        """
        if value is not None:
            text = f"validation failed for {field} (value: {value}): {message}"
        else:
            text = f"validation failed for {field}: {message}"
        super().__init__(
            text,
            retryable=False,
            context={"field": field, "value": None if value is None else str(value)},
        )
        self.field = field
        self.value = value
        self.reason = message


class _ServiceAPIError(WaffleError):
    """Shared shape of AWS service transport errors."""

    service_label: str = "service"

    def __init__(
        self,
        operation: str,
        message: str,
        error_code: str | None = None,
        retryable: bool = False,
    ) -> None:
        if error_code:
            text = f"{self.service_label} {operation} failed [{error_code}]: {message}"
        else:
            text = f"{self.service_label} {operation} failed: {message}"
        super().__init__(
            text,
            retryable=retryable,
            context={"operation": operation, "error_code": error_code},
        )
        self.operation = operation
        self.error_code = error_code
        self.reason = message


class BedrockAPIError(_ServiceAPIError):
    """
    Error calling Amazon Bedrock.

    Attributes:
        operation: Logical operation (e.g. "InvokeModel")
        error_code: AWS error code when available
    """

    service_label = "bedrock"


class WAFRAPIError(_ServiceAPIError):
    """
    Error calling the AWS Well-Architected Tool.

    Attributes:
        operation: API operation (e.g. "ListAnswers")
        error_code: AWS error code when available
    """

    service_label = "WAFR"


class StateStoreError(WaffleError):
    """
    Error persisting or loading review sessions.

    Attributes:
        operation: Store operation that failed (e.g. "save", "load")
        session_id: Session involved, if any
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=False,
            context={"operation": operation, "session_id": session_id},
        )
        self.operation = operation
        self.session_id = session_id


class ConfigurationError(WaffleError):
    """
    Error in Waffle configuration.

    Attributes:
        config_key: Configuration key that is invalid
        reason: Specific validation failure reason
    """

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=False,
            context={"config_key": config_key, "reason": reason},
        )
        self.config_key = config_key
        self.reason = reason


class OperationCancelledError(WaffleError):
    """The caller cancelled the running operation."""

    def __init__(self, operation: str = "operation") -> None:
        super().__init__(f"{operation} cancelled", context={"operation": operation})
        self.operation = operation


# =============================================================================
# Chain helpers
# =============================================================================


def iter_error_chain(exc: BaseException) -> Iterator[BaseException]:
    """
    Iterate over an exception and its causes, outermost first.

    Follows ``__cause__`` (explicit ``raise ... from``) and falls back to
    ``__context__`` when no explicit cause was set.

    Args:
        exc: Outermost exception

    Yields:
        Each exception in the chain
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def is_error_kind(exc: BaseException, kind: type[BaseException]) -> bool:
    """
    Check whether any exception in the chain is an instance of ``kind``.

    Args:
        exc: Exception to inspect
        kind: Exception class to look for

    Returns:
        True if ``exc`` or any of its causes is a ``kind``

    Example:
        >>> try:
        ...     client.invoke_model(prompt)
        ... except BedrockAPIError as e:
        ...     if is_error_kind(e, MaxRetriesExceededError):
        ...         print("gave up after retries")
    """
    return any(isinstance(item, kind) for item in iter_error_chain(exc))


def find_error(exc: BaseException, kind: type[BaseException]) -> BaseException | None:
    """
    Return the first exception of ``kind`` in the chain, if any.

    Args:
        exc: Exception to inspect
        kind: Exception class to look for

    Returns:
        Matching exception or None
    """
    for item in iter_error_chain(exc):
        if isinstance(item, kind):
            return item
    return None
