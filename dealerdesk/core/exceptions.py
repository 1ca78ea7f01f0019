"""
Typed Exception Hierarchy for the Sales Pipeline

All domain errors inherit from DealerDeskError, which is a ValueError so
that service callers written against plain ValueError keep working. Each
exception carries an HTTP status code and a machine-readable code; the API
layer renders them through a single exception handler.

    DealerDeskError (base)
    |
    +-- NotFoundError            404  NOT_FOUND
    +-- InvalidTransitionError   400  INVALID_TRANSITION
    +-- ConflictError            409  CONFLICT
    |   +-- InsufficientStockError    INSUFFICIENT_STOCK
    +-- ImmutableRecordError     409  IMMUTABLE_RECORD
    +-- InternalError            500  INTERNAL_ERROR
"""
from typing import List, Optional


class DealerDeskError(ValueError):
    """Base exception for all sales pipeline errors."""

    code: str = "DEALERDESK_ERROR"
    status_code: int = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "statusCode": self.status_code,
            "code": self.code,
        }


class NotFoundError(DealerDeskError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, identifier=None):
        self.entity = entity
        self.identifier = identifier
        if identifier is None:
            message = f"{entity} not found"
        else:
            message = f"{entity} '{identifier}' not found"
        super().__init__(message)


class InvalidTransitionError(DealerDeskError):
    """Requested status change is not an allowed edge."""

    code = "INVALID_TRANSITION"
    status_code = 400

    def __init__(self, current_status: str, requested_status: str, reason: Optional[str] = None):
        self.current_status = current_status
        self.requested_status = requested_status
        message = f"Cannot move quotation from '{current_status}' to '{requested_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ConflictError(DealerDeskError):
    """State changed underneath the caller, or a uniqueness rule was hit."""

    code = "CONFLICT"
    status_code = 409


class InsufficientStockError(ConflictError):
    """Requested units are not available for reservation."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, failed: Optional[List[dict]] = None):
        self.failed = failed or []
        super().__init__(message)


class ImmutableRecordError(DealerDeskError):
    """Attempt to modify or delete an append-only record."""

    code = "IMMUTABLE_RECORD"
    status_code = 409

    def __init__(self, entity_type: str, entity_id, operation: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(f"{entity_type} {entity_id} is append-only ({operation} rejected)")


class InternalError(DealerDeskError):
    """Unexpected failure inside a service."""

    code = "INTERNAL_ERROR"
    status_code = 500
