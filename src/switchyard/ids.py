"""Opaque element identifiers.

Every persisted element is addressed by an ``el-`` prefixed identifier with
a short lowercase base36 suffix. The value objects below are ``str``
subclasses so they bind directly as SQL parameters, but they can only be
constructed from a well-formed value. Distinct subclasses name what kind of
element an identifier points at, so a task id is never passed where an
agent id is expected without a visible conversion.

Example:
    >>> task_id = TaskId(generate_id())
    >>> EntityId("not-an-id")
    Traceback (most recent call last):
    ...
    switchyard.errors.ValidationError: Invalid element id: 'not-an-id'
"""

from __future__ import annotations

import re
import secrets

from switchyard.errors import ValidationError

ID_PREFIX = "el-"
ID_PATTERN = re.compile(r"^el-[0-9a-z]{3,8}$")

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_SUFFIX_LENGTH = 6


class ElementId(str):
    """Validated identifier of any element."""

    __slots__ = ()

    def __new__(cls, value: str) -> ElementId:
        if not isinstance(value, str) or not ID_PATTERN.match(value):
            raise ValidationError(
                f"Invalid element id: {value!r}",
                details={"value": value, "kind": cls.__name__},
            )
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str.__repr__(self)})"


class EntityId(ElementId):
    """Identifier of an entity (agents and other actors)."""

    __slots__ = ()


class TaskId(ElementId):
    """Identifier of a task."""

    __slots__ = ()


def is_element_id(value: object) -> bool:
    """Return True if value is a well-formed element identifier."""
    return isinstance(value, str) and ID_PATTERN.match(value) is not None


def generate_id() -> str:
    """Generate a new random element identifier."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{ID_PREFIX}{suffix}"
