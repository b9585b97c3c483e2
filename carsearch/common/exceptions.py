"""Exception types for automation and extraction errors.

This module defines the exception hierarchy used across the automation
client, the snapshot protocol and the extraction tasks.

Two families exist:

- CarSearchException subclasses describe violated assumptions about a
  source (a missing control, an unreachable page) or invalid input. They
  are either soft (a filter is skipped) or fatal to one task.
- TransientException subclasses describe failures of the external
  automation command that may resolve on retry. Only the snapshot
  primitive retries them.
"""

from __future__ import annotations

from typing import Any


class CarSearchException(Exception):
    """Base class for extraction and input errors.

    Subclasses carry a human-readable message plus an optional dict of
    context (selector, source, counts) that is appended to the string form
    of the exception.
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the error.
            context: Optional dict of additional context.
        """
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with context.

        Returns:
            Formatted error message string.
        """
        parts = [self.message]

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


class InvalidSearchCriteriaException(CarSearchException):
    """Raised when search criteria fail validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(
            f"Invalid search criteria: {'; '.join(errors)}",
            {"error_count": len(errors)},
        )


class ConfigurationException(CarSearchException):
    """Raised when configuration cannot be loaded or validated."""

    pass


class ElementNotFoundException(CarSearchException):
    """Raised when a selector resolves to no element in a snapshot.

    Inside a filter step this is a soft error: the task logs a warning and
    continues without that filter.

    Attributes:
        selector: Printable form of the selector that failed.
        description: Human-readable description of the control.
    """

    def __init__(self, selector: str, description: str) -> None:
        """Initialize the exception.

        Args:
            selector: Printable form of the selector that failed.
            description: Human-readable description of the control.
        """
        self.selector = selector
        self.description = description
        super().__init__(
            f"Could not find {description}",
            {"selector": selector},
        )


class NavigationException(CarSearchException):
    """Raised when a task cannot open its source's listing page."""

    def __init__(self, url: str, cause: Exception) -> None:
        self.url = url
        self.cause = cause
        super().__init__(
            f"Navigation to {url} failed: {cause}",
            {"url": url},
        )


class SnapshotUnavailableException(CarSearchException):
    """Raised when a snapshot could not be taken after all retries.

    Attributes:
        attempts: Number of attempts made.
        last_error: The error raised by the final attempt, if any.
    """

    def __init__(
        self, attempts: int, last_error: Exception | None = None
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        context: dict[str, Any] = {"attempts": attempts}
        if last_error is not None:
            context["last_error"] = str(last_error).splitlines()[0]
        super().__init__(
            f"Failed to take snapshot after {attempts} attempt(s)", context
        )


class TaskCancelledException(CarSearchException):
    """Raised at a suspension point once the cancellation signal is set."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(
            "Cancelled", {"operation": operation}
        )


# =============================================================================
# Transient Exceptions
# =============================================================================


class TransientException(Exception):
    """Base class for automation command errors that might resolve on retry.

    Transient exceptions represent temporary failures like a crashed or
    slow browser, or an empty snapshot. Unlike CarSearchException subclasses
    they say nothing about the page itself.

    The snapshot primitive is the only caller that retries them; everywhere
    else they are fatal to the owning task.
    """

    pass


class CommandFailedException(TransientException):
    """Raised when the automation command exits with a non-zero code.

    Attributes:
        command: Shell-quoted command line that was executed.
        exit_code: The process exit code.
        stderr: Captured standard error text.
        message: Human-readable error message.
    """

    def __init__(self, command: str, exit_code: int, stderr: str) -> None:
        """Initialize the exception.

        Args:
            command: Shell-quoted command line that was executed.
            exit_code: The process exit code.
            stderr: Captured standard error text.
        """
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.message = (
            f"Automation command failed (exit code {exit_code}): {stderr}"
        )
        super().__init__(self.message)


class CommandTimeoutException(TransientException):
    """Raised when the automation command exceeds its deadline.

    The process tree has already been killed when this is raised.

    Attributes:
        command: Shell-quoted command line that was executed.
        timeout_seconds: The deadline in seconds.
        message: Human-readable error message.
    """

    def __init__(self, command: str, timeout_seconds: float) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.message = (
            f"Automation command timed out after {timeout_seconds}s: {command}"
        )
        super().__init__(self.message)


class SnapshotPayloadException(TransientException):
    """Raised when the snapshot payload is empty or cannot be read."""

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        self.message = message
        super().__init__(message)
