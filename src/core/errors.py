"""
Domain errors

Raised by the opportunity core and translated to HTTP responses by the API
error handlers. None of them are retried.
"""

from typing import Any, Dict, List, Optional, Sequence


class DomainError(Exception):
    """Base class for errors raised by the opportunity core."""

    kind = "domain_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> List[Dict[str, Any]]:
        return []


class NotFoundError(DomainError):
    """Referenced opportunity, stage, product, line item or contact role is missing."""

    kind = "not_found"

    def __init__(self, resource: str, resource_id: Optional[str] = None, message: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource} '{resource_id}' not found" if resource_id else f"{resource} not found"
        super().__init__(message)


class InvalidStateError(DomainError):
    """The operation is not permitted from the entity's current lifecycle state."""

    kind = "invalid_state"


class ValidationError(DomainError):
    """Input failed a domain rule."""

    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def details(self) -> List[Dict[str, Any]]:
        if not self.field:
            return []
        return [{"field": self.field, "message": self.message, "code": "invalid"}]


class RequiredFieldsError(ValidationError):
    """One or more stage requirements are unmet; `missing` lists every one of them."""

    def __init__(self, stage_name: str, missing: Sequence[Any]):
        self.stage_name = stage_name
        self.missing = list(missing)
        labels = ", ".join(item.label for item in self.missing)
        super().__init__(f"Required fields missing for stage '{stage_name}': {labels}")

    @property
    def missing_fields(self) -> List[str]:
        return [item.label for item in self.missing]

    def details(self) -> List[Dict[str, Any]]:
        return [
            {
                "field": item.label,
                "message": item.describe(),
                "code": item.code,
            }
            for item in self.missing
        ]


class ConflictError(DomainError):
    """Concurrent modification or uniqueness violation."""

    kind = "conflict"


class StageConfigurationError(DomainError):
    """A stage row in the directory is flagged both won and lost."""

    kind = "invalid_state"


__all__ = [
    "DomainError",
    "NotFoundError",
    "InvalidStateError",
    "ValidationError",
    "RequiredFieldsError",
    "ConflictError",
    "StageConfigurationError",
]
