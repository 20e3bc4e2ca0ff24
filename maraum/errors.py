from typing import Any, Dict, Optional


class MaraumError(Exception):
    """Base error carrying a machine-readable kind, a message and details.

    Serialized by the HTTP layer as::

        {"error": "<kind>", "message": "...", "details": {...}}
    """

    kind: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class NotFoundError(MaraumError):
    kind = "not_found"
    status_code = 404


class ValidationFailure(MaraumError):
    """Malformed input. `details` maps field name to a list of problems."""

    kind = "validation_error"
    status_code = 400


class ConflictError(MaraumError):
    kind = "conflict"
    status_code = 409


class SessionCompletedError(ConflictError):
    kind = "session_completed"


class DuplicateSubmissionError(ConflictError):
    """A (session, client token) pair or a reply link already exists."""

    kind = "duplicate_submission"


class InvariantViolation(MaraumError):
    """A write broke a storage rule that no caller is allowed to break."""

    kind = "invariant_violation"


class ImmutableMessageError(InvariantViolation):
    kind = "message_immutable"


class PersistenceFailure(MaraumError):
    kind = "persistence_failure"


class GenerationFailure(MaraumError):
    kind = "generation_failure"
    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, report: Any = None):
        super().__init__(message, details)
        self.report = report


class GenerationTimeout(GenerationFailure):
    kind = "generation_timeout"
    status_code = 504
