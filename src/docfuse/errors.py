"""Exception hierarchy and stage outcome container for docfuse.

    DocfuseError               (base)
    +-- ValidationError        malformed input, unsupported type, bad chunking config
    +-- ExternalServiceError   enrichment / embedding / fetch collaborator failure
    +-- PersistenceError       store write or read failure
    +-- IllegalTransitionError source status change outside the lifecycle table

Pipeline stages do not raise across stage boundaries. Each stage returns an
``Outcome`` and the orchestrator decides what to do with a failed one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class DocfuseError(Exception):
    """Base class for all docfuse errors."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DocfuseError):
    """Input or configuration that can never succeed. Never retried."""

    kind = "validation"


class ExternalServiceError(DocfuseError):
    """A remote collaborator failed after its retry budget was spent."""

    kind = "external_service"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class PersistenceError(DocfuseError):
    """The store rejected a read or write."""

    kind = "persistence"


class IllegalTransitionError(DocfuseError):
    """A source status change that the lifecycle does not allow."""

    kind = "illegal_transition"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Either a stage value or the error that stopped the stage."""

    value: T | None = None
    error: DocfuseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: DocfuseError) -> Outcome[T]:
        return cls(error=error)
