"""Shared input helpers for services and blueprints.

parse_bool: JSON payloads and query strings send flags as bools, ints or
            strings ("false", "0", "off"); all of them map onto a real bool.
"""

TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})


def parse_bool(value, default=False):
    """Interpret a request flag. ``None`` falls back to ``default``."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)
