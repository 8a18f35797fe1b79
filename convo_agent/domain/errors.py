"""Error taxonomy for the orchestration engine.

Only ``NotFoundError`` and ``RequestValidationError`` cross the public
service boundary. ``TransientDependencyError`` is raised by collaborators
(durable store, agent engine, remote tool servers) and absorbed by the
orchestration layer. ``BestEffortFailure`` marks derived-state work that is
always swallowed and logged.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class ConvoAgentError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code
        details: Additional context
        cause: The original exception, if any
        timestamp: When the error occurred
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.utcnow()

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class NotFoundError(ConvoAgentError):
    """Unknown conversation, session or approval id."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(
            f"{kind} not found: {identifier}",
            code="NOT_FOUND",
            details={"kind": kind, "id": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class RequestValidationError(ConvoAgentError):
    """Malformed input to a public operation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details, cause=cause)


class TransientDependencyError(ConvoAgentError):
    """Durable store, agent engine or remote tool server failure."""

    def __init__(self, dependency: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(
            message,
            code="DEPENDENCY_FAILURE",
            details={"dependency": dependency},
            cause=cause,
        )
        self.dependency = dependency


class BestEffortFailure(ConvoAgentError):
    """Failure inside compression, summarization or extraction."""

    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, code="BEST_EFFORT_FAILURE", details={"step": step}, cause=cause)
        self.step = step
