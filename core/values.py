"""
Tagged value model for preference trees.

A materialized preference tree only ever holds values of a closed set of
kinds: booleans, integers, reals, strings, and the two composites (dict and
array). Plist-only types are folded into that set when a tree is built.
"""
from datetime import date, datetime
import hashlib
from enum import Enum
from typing import Any
import plistlib


class ValueKind(str, Enum):
    BOOL = "bool"
    INTEGER = "integer"
    REAL = "real"
    STRING = "string"
    DICT = "dict"
    ARRAY = "array"

    @property
    def is_composite(self) -> bool:
        return self in (ValueKind.DICT, ValueKind.ARRAY)


# Flag used by `defaults write` for each scalar kind
DEFAULTS_TYPE_FLAGS = {
    ValueKind.BOOL: "-bool",
    ValueKind.INTEGER: "-int",
    ValueKind.REAL: "-float",
    ValueKind.STRING: "-string",
}

# Names printed by `defaults read-type` ("Type is boolean")
READ_TYPE_NAMES = {
    "boolean": ValueKind.BOOL,
    "integer": ValueKind.INTEGER,
    "float": ValueKind.REAL,
    "string": ValueKind.STRING,
    "dictionary": ValueKind.DICT,
    "array": ValueKind.ARRAY,
}


def kind_of(value: Any) -> ValueKind:
    """
    Return the kind of a tree value.

    bool is tested before int since bool is an int subclass.
    """
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.REAL
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, dict):
        return ValueKind.DICT
    if isinstance(value, list):
        return ValueKind.ARRAY
    raise TypeError(f"Unsupported preference value type: {type(value).__name__}")


def same_value(old: Any, new: Any) -> bool:
    """Structural equality that also compares kinds (True != 1, 1 != 1.0)."""
    old_kind = kind_of(old)
    if old_kind != kind_of(new):
        return False
    if old_kind == ValueKind.DICT:
        if old.keys() != new.keys():
            return False
        return all(same_value(old[k], new[k]) for k in old)
    if old_kind == ValueKind.ARRAY:
        if len(old) != len(new):
            return False
        return all(same_value(a, b) for a, b in zip(old, new))
    return old == new


def normalize_tree(obj: Any) -> Any:
    """
    Fold a decoded plist object into the closed value set.

    - bytes become a "<data:N:hash>" placeholder string, hash being the
      first 8 hex digits of their SHA-1
    - dates become ISO-8601 strings
    - plistlib.UID becomes its integer
    - tuples become lists, dict keys become strings
    """
    if isinstance(obj, dict):
        return {str(k): normalize_tree(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [normalize_tree(v) for v in obj]
    if isinstance(obj, (bytes, bytearray)):
        return f"<data:{len(obj)}:{hashlib.sha1(bytes(obj)).hexdigest()[:8]}>"
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, plistlib.UID):
        return obj.data
    if obj is None:
        return ""
    return obj


def scalar_text(value: Any) -> str:
    """
    Render a scalar the way the flattened snapshot text shows it.

    Strings are quoted, booleans are lowercase literals, numbers are bare.
    """
    kind = kind_of(value)
    if kind == ValueKind.BOOL:
        return "true" if value else "false"
    if kind == ValueKind.STRING:
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if kind == ValueKind.REAL:
        return repr(value)
    return str(value)
