"""Dotted field-path helpers shared by the document store, intake and classifier.

A field path is one or more identifier segments joined by dots:

    companyName
    objectives.primary
    revenueModel.pricingStrategy

Matching is hierarchical: a path matches an inherited field when it is the
same path, a structural descendant or a structural ancestor of it.
``objectives.primary`` matches ``objectives``; ``objectivesList`` does not.
"""

import re

_SEGMENT = r"[A-Za-z_][A-Za-z0-9_]*"
FIELD_PATH_RE = re.compile(rf"^{_SEGMENT}(\.{_SEGMENT})*$")

MAX_FIELD_PATH_LENGTH = 255


def is_valid_field_path(path) -> bool:
    """Return True for a well-formed dotted identifier path."""
    if not isinstance(path, str) or len(path) > MAX_FIELD_PATH_LENGTH:
        return False
    return FIELD_PATH_RE.match(path) is not None


def split_path(path: str) -> tuple[str, ...]:
    return tuple(path.split("."))


def field_matches(change_path: str, inherited_field: str) -> bool:
    """Return True if change_path equals inherited_field or lies beneath it.

    A change to an ancestor also matches: replacing ``objectives`` replaces
    ``objectives.primary`` along with it.
    """
    if change_path == inherited_field:
        return True
    return (
        change_path.startswith(inherited_field + ".")
        or inherited_field.startswith(change_path + ".")
    )


def overlapping_fields(fields: dict, path: str) -> dict:
    """Return the entries of ``fields`` whose key is a strict ancestor or descendant of ``path``."""
    return {
        key: value for key, value in fields.items()
        if key != path and field_matches(key, path)
    }


def invalid_paths(paths) -> list:
    """Return the entries of ``paths`` that are not well-formed field paths."""
    return [p for p in paths if not is_valid_field_path(p)]
