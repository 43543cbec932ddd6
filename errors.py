"""Error types raised by the queue engine.

Every error carries a machine readable ``code`` and the HTTP status the
API answers with.  ``is_operational`` separates expected failures the
caller can act on (retry, pick another slot, fix the input) from store
integrity faults that need a human.
"""

from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    code = "QUEUE_ERROR"
    status_code = 500
    is_operational = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFoundError(QueueError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Optional[str] = None) -> None:
        if identifier:
            message = f"{resource} with ID '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class ValidationError(QueueError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class ConflictError(QueueError):
    """Double booking or a lost race on a queue position.

    The caller should refresh availability and retry with another slot.
    """

    code = "CONFLICT"
    status_code = 409


class BusinessRuleViolation(QueueError):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422

    def __init__(self, message: str, rule: str) -> None:
        super().__init__(message)
        self.rule = rule

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["rule"] = self.rule
        return data


class ExternalServiceError(QueueError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service} service error: {message}")
        self.service = service


class StoreIntegrityError(QueueError):
    code = "STORE_INTEGRITY_ERROR"
    status_code = 500
    is_operational = False


class QueueEmptyError(NotFoundError):
    def __init__(self, staff_id: str, day) -> None:
        super().__init__(f"Waiting patient for staff '{staff_id}' on {day}")
        self.staff_id = staff_id
        self.day = day
