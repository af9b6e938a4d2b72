"""
Compliance Engine
Blueprint registry and shared response helpers.
"""

from flask import jsonify

from compliance.utils.errors import api_error


def result_response(result, *, status=200, serialize=None):
    """Turn an ``OperationResult`` into a Flask response.

    Failures use the standard error envelope; ``serialize`` maps the value
    of a successful result to JSON-able data (defaults to ``to_dict()``).
    """
    if not result.ok:
        return api_error(result.error_code, result.error, details=result.details or None)
    value = result.value
    if serialize is not None:
        value = serialize(value)
    elif hasattr(value, "to_dict"):
        value = value.to_dict()
    return jsonify(value), status
