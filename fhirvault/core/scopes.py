"""
Permission string (scope) matching.

Scopes look like ``user/Patient.read`` or ``system/*``: ``/`` separates
levels, ``.`` separates segments within a level, and ``*`` matches any single
segment. A held scope matches a required one only when both have the same
shape (same number of levels, same number of segments per level).
"""

from collections.abc import Iterable

WILDCARD = "*"


def _split(scope: str) -> list[list[str]]:
    return [level.split(".") for level in scope.split("/")]


def matches(held: str, required: str) -> bool:
    """True if a held scope satisfies a required scope."""
    if not held or not required:
        return False

    held_levels = _split(held)
    required_levels = _split(required)
    if len(held_levels) != len(required_levels):
        return False

    for held_level, required_level in zip(held_levels, required_levels):
        if len(held_level) != len(required_level):
            return False
        for held_part, required_part in zip(held_level, required_level):
            if WILDCARD in (held_part, required_part):
                continue
            if held_part != required_part:
                return False
    return True


def has_scope(held_scopes: Iterable[str], required: str) -> bool:
    """True if any held scope matches the required scope exactly or by wildcard."""
    held = set(held_scopes)
    if not required:
        return False
    if required in held:
        return True
    return any(matches(scope, required) for scope in held)


def has_any_scope(held_scopes: Iterable[str], *required: str) -> bool:
    """True if any of the required scopes is held."""
    held = set(held_scopes)
    return any(has_scope(held, scope) for scope in required)
