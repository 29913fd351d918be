"""Exceptions for files app.

Every failure that leaves the derivation pipeline is one of the
``PipelineError`` subclasses below. Lower level storage, image and
ORM exceptions are chained as ``__cause__`` and never raised directly.
"""

from collections.abc import Mapping, Sequence


class PipelineError(Exception):
    """Base class for ingestion failures.

    Attributes:
        stage: Pipeline state in which the failure happened, if known.
        handler: Name of the failing handler, if a handler failed.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        handler: str | None = None,
    ) -> None:
        """Initialize PipelineError.

        Args:
            message: Human-readable description.
            stage: Pipeline state in which the failure happened.
            handler: Name of the failing handler.
        """
        self.stage = stage
        self.handler = handler
        super().__init__(message)


class GenerationError(PipelineError):
    """Raised when a unique storage name cannot be established."""

    def __init__(
        self,
        pattern: str,
        reason: str,
        *,
        attempts: int = 0,
    ) -> None:
        """Initialize GenerationError.

        Args:
            pattern: Name pattern that was being rendered.
            reason: Why generation failed.
            attempts: Number of candidate names that were tried.
        """
        self.pattern = pattern
        self.attempts = attempts
        super().__init__(
            f'Cannot generate name from {pattern!r}: {reason}',
        )


class StorageError(PipelineError):
    """Raised when a storage disk cannot read or delete bytes."""

    def __init__(self, disk: str, path: str, reason: str) -> None:
        """Initialize StorageError.

        Args:
            disk: Storage alias.
            path: Path on the disk.
            reason: What went wrong.
        """
        self.disk = disk
        self.path = path
        super().__init__(f'{disk}:{path}: {reason}')


class StorageWriteError(StorageError):
    """Raised when bytes cannot be persisted to a disk."""


class HandlerError(PipelineError):
    """Raised when a processing handler fails.

    Only mandatory handler failures cross the pipeline boundary;
    optional ones are reported as warnings.
    """

    def __init__(
        self,
        handler: str,
        reason: str,
        *,
        stage: str | None = None,
        mandatory: bool = True,
    ) -> None:
        """Initialize HandlerError.

        Args:
            handler: Name of the failing handler.
            reason: What went wrong.
            stage: Pipeline state in which the handler ran.
            mandatory: Whether the handler failure is fatal.
        """
        self.mandatory = mandatory
        super().__init__(
            f'Handler {handler!r} failed: {reason}',
            stage=stage,
            handler=handler,
        )


class ValidationError(PipelineError):
    """Raised when caller-supplied metadata is malformed.

    Raised before any storage action, so nothing needs undoing.
    """

    def __init__(self, errors: Mapping[str, Sequence[str]]) -> None:
        """Initialize ValidationError.

        Args:
            errors: Messages keyed by the offending field.
        """
        self.errors = {field: list(messages) for field, messages in errors.items()}
        summary = '; '.join(
            f'{field}: {" ".join(messages)}'
            for field, messages in self.errors.items()
        )
        super().__init__(f'Invalid file metadata: {summary}')


class RepositoryError(PipelineError):
    """Raised when a File record violates a persistence constraint."""
