"""
Recursive traversal over semi-structured cell values.

A cell is classified once into a ``ValueKind`` and the visitor dispatches over
every kind explicitly. Only STRING leaves are ever rewritten; ARRAY and OBJECT
values are rebuilt with the same keys, nesting and order; everything else
(including dates, times and binary payloads) is returned as the very same
object.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Pattern


class ValueKind(Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"
    OPAQUE = "opaque"  # datetime, date, bytes, memoryview, uuid, ...

    @classmethod
    def classify(cls, value: Any) -> 'ValueKind':
        if value is None:
            return cls.NULL
        # bool before number: bool is an int subclass
        if isinstance(value, bool):
            return cls.BOOL
        if isinstance(value, (int, float, Decimal)):
            return cls.NUMBER
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        if isinstance(value, Mapping):
            return cls.OBJECT
        return cls.OPAQUE


def visit(value: Any, rewrite_string: Callable[[str], str]) -> Any:
    """Return ``value`` with ``rewrite_string`` applied to every string leaf."""
    kind = ValueKind.classify(value)

    if kind is ValueKind.STRING:
        return rewrite_string(value)
    if kind is ValueKind.ARRAY:
        items: List[Any] = [visit(item, rewrite_string) for item in value]
        return tuple(items) if isinstance(value, tuple) else items
    if kind is ValueKind.OBJECT:
        result: Dict[Any, Any] = {}
        for key, item in value.items():
            result[key] = visit(item, rewrite_string)
        return result
    if kind in (ValueKind.NULL, ValueKind.BOOL, ValueKind.NUMBER, ValueKind.OPAQUE):
        return value

    raise ValueError(f"Unhandled value kind: {kind}")


def rewrite_urls(text: str, pattern: Pattern, resolve: Callable[[str], str]) -> str:
    """Replace every match of ``pattern`` in ``text`` with ``resolve(match)``.

    Each distinct match is resolved exactly once, in order of first
    appearance, before any substitution takes place.
    """
    matches = pattern.findall(text)
    if not matches:
        return text

    resolved: Dict[str, str] = {}
    for url in matches:
        if url not in resolved:
            resolved[url] = resolve(url)

    return pattern.sub(lambda m: resolved[m.group(0)], text)
