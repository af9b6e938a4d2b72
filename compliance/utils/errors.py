"""Error codes and the JSON error envelope of the compliance API.

Services raise the types in ``compliance.core.exceptions``; ``classify``
turns one into ``(code, details)`` for an ``OperationResult`` and
``api_error`` renders the envelope:

    {"error": "Reminder id=4 not found", "code": "ERR_NOT_FOUND",
     "details": {"resource": "Reminder", "id": 4}}
"""

from __future__ import annotations

from flask import jsonify

from compliance.core import exceptions as exc_types


class E:
    """Codes the engine emits. ``ERR_`` prefix throughout."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"    # missing query/body parameter
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"      # payload or rule rejected
    FORBIDDEN = "ERR_FORBIDDEN"                        # acting on someone else's assignment
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"      # checklist code taken
    CONFLICT_STATE = "ERR_CONFLICT_STATE"              # illegal reminder/assignment state change
    SCHEDULE = "ERR_SCHEDULE"                          # rule produced no representable date
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.SCHEDULE: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def status_for(code: str) -> int:
    return HTTP_STATUS.get(code, 400)


def classify(exc: Exception) -> tuple[str, dict] | None:
    """Error code and details for a domain exception; None when unexpected."""
    if isinstance(exc, exc_types.NotFoundError):
        return E.NOT_FOUND, {"resource": exc.resource, "id": exc.resource_id}
    if isinstance(exc, exc_types.ValidationError):
        return E.VALIDATION_INVALID, exc.details
    if isinstance(exc, exc_types.ForbiddenError):
        return E.FORBIDDEN, {}
    if isinstance(exc, exc_types.ConflictError):
        return E.CONFLICT_DUPLICATE, {exc.field: "duplicate"}
    if isinstance(exc, exc_types.TransitionError):
        return E.CONFLICT_STATE, {"current_status": exc.current_status,
                                  "target_status": exc.target_status}
    if isinstance(exc, exc_types.AssignmentStateError):
        return E.CONFLICT_STATE, {"current_status": exc.current_status}
    if isinstance(exc, exc_types.ScheduleComputationError):
        return E.SCHEDULE, {}
    return None


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` carrying the error envelope; status defaults from the code."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)
