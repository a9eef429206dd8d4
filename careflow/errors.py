"""
Typed errors raised by the execution engine and its repositories.

Callers distinguish "the operation itself failed" (one of these exceptions)
from "the step completed but a side effect failed" (an ``ActionResult`` with
``success=False`` embedded in the returned completion).
"""

from __future__ import annotations


class CareflowError(Exception):
    """Base class for all engine errors."""


class NotFoundError(CareflowError):
    """Raised when a definition, execution, step, decision point or outcome
    id is unknown."""


class ValidationError(CareflowError):
    """Raised when input is rejected: missing required actions without a
    deviation acknowledgment, an empty abandon reason, a malformed
    definition or criteria profile."""

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class InvalidStateError(CareflowError):
    """Raised when an operation is not legal in the current status."""


class ConflictError(CareflowError):
    """Raised by a repository when an update is based on a stale revision."""
