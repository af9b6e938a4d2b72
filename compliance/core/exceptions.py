"""
Engine-wide exception hierarchy.

Services raise these types; the engine facade turns them into
``OperationResult`` values and the blueprint maps them onto HTTP status
codes once, so every caller gets the same error envelope.

Usage:
    from compliance.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Checklist", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Checklist", "Reminder").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidRuleError(ValidationError):
    """Raised when a recurrence rule cannot produce a schedule."""


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class TransitionError(Exception):
    """Raised when a reminder status transition is not allowed."""

    def __init__(self, reminder_id, current: str, target: str, reason: str | None = None):
        self.reminder_id = reminder_id
        self.current_status = current
        self.target_status = target
        msg = f"Cannot move reminder {reminder_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ScheduleComputationError(Exception):
    """Raised when a valid-looking rule yields an unrepresentable date."""


class DirectoryError(Exception):
    """Raised by a directory service that cannot resolve a recipient."""


class ForbiddenError(Exception):
    """Raised when a user acts on a record that belongs to someone else."""


class AssignmentStateError(Exception):
    """Raised when a checklist assignment cannot take the requested action."""

    def __init__(self, assignment_id, current: str, reason: str):
        self.assignment_id = assignment_id
        self.current_status = current
        super().__init__(f"Assignment {assignment_id} is '{current}': {reason}")
