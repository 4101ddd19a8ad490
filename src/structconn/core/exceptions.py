"""
Base exception hierarchy for structural connectivity processing.

All custom exceptions inherit from StructConnError to enable precise error
handling while maintaining compatibility with standard Python exceptions.
"""

from __future__ import annotations


class StructConnError(Exception):
    """Base exception for all structconn errors.

    Errors raised inside a pipeline run are tagged with the session they
    belong to, so the message names the subject and timepoint.
    """

    subject: str | None = None
    timepoint: str | None = None

    def add_session_context(self, subject: str, timepoint: str) -> None:
        """Attach session identifiers to this error."""
        self.subject = subject
        self.timepoint = timepoint

    def __str__(self) -> str:
        message = super().__str__()
        if self.subject is not None:
            return f"[{self.subject} {self.timepoint}] {message}"
        return message


class ConfigurationError(StructConnError, ValueError):
    """Raised when configuration values or label definitions are invalid."""

    pass


class MissingInputError(StructConnError, FileNotFoundError):
    """Raised when a required volume, transform or label file does not exist."""

    def __init__(self, path, description: str = "input"):
        self.path = path
        self.description = description
        message = f"Missing {description}: '{path}'"
        super().__init__(message)


class GeometryMismatchError(StructConnError, ValueError):
    """Raised when volumes or transforms disagree on grid geometry."""

    pass


class DegenerateMaskError(StructConnError, RuntimeError):
    """Raised when a derived mask ends up empty."""

    def __init__(self, mask_name: str, detail: str | None = None):
        self.mask_name = mask_name
        message = f"Derived mask '{mask_name}' is empty"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TransformNotAvailableError(StructConnError):
    """Raised when a transform, or the inverse of one, is not available."""

    def __init__(self, source_space: str, target_space: str, reason: str | None = None):
        self.source_space = source_space
        self.target_space = target_space
        message = f"No transform available from '{source_space}' to '{target_space}'"
        if reason:
            message = f"{message}. {reason}"
        super().__init__(message)


class WorkspaceExistsError(StructConnError, FileExistsError):
    """Raised when a scratch workspace from a previous run already exists."""

    def __init__(self, path):
        self.path = path
        message = (
            f"Scratch workspace '{path}' already exists. "
            f"Another run may be in progress or a previous run did not clean up; "
            f"remove it before running again."
        )
        super().__init__(message)


class TractographyError(StructConnError, RuntimeError):
    """Raised when the tractography engine fails or produces unusable output."""

    pass


class ProvenanceError(StructConnError, RuntimeError):
    """Raised when provenance tracking encounters issues."""

    pass
