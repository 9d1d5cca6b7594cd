"""
Errors raised by the compliance engine.

Every error carries its kind plus the offending field and/or entity id so
the calling layer can render a meaningful message.
"""
from typing import Optional


class ComplianceError(Exception):
    """Base class. Raised to the immediate caller of the facade, never retried."""
    kind = "ComplianceError"

    def __init__(self, message: str, field: Optional[str] = None, entity_id: Optional[str] = None):
        self.message = message
        self.field = field
        self.entity_id = entity_id
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "field": self.field,
            "entity_id": self.entity_id,
        }


class ValidationFailed(ComplianceError):
    """Bad input shape or range."""
    kind = "ValidationFailed"


class NotFound(ComplianceError):
    """An unknown id was referenced."""
    kind = "NotFound"


class InvalidTransition(ComplianceError):
    """A status change that the lifecycle does not allow."""
    kind = "InvalidTransition"


InvalidState = InvalidTransition


class PersistenceFailure(ComplianceError):
    """The storage adapter failed. The whole operation was rolled back."""
    kind = "PersistenceFailure"


class AuditWriteFailure(ComplianceError):
    """The audit entry could not be written, so the change it describes was rolled back."""
    kind = "AuditWriteFailure"
