"""
Preference Tree Comparison Engine

This module handles deep comparison of materialized preference trees:
key-wise recursion through dicts, fingerprint-based matching for arrays,
and kind-aware comparison of scalar leaves.

Array handling:
- Resized arrays are matched element-by-element through fingerprints, so an
  insert in the middle is one addition, not a cascade of positional edits.
- Same-length arrays are compared per index; an element that merely moved
  is recorded as a move and never reported as a change.
"""
from typing import Any, Iterable, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
import json
import hashlib

from core.fingerprint import DEFAULT_VOLATILE_KEYS, fingerprint, match_resized_list
from core.values import ValueKind, kind_of, same_value


Segment = Union[str, int]
Path = tuple[Segment, ...]


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    MOVED = "moved"


@dataclass
class ConfigChange:
    """Represents a single change between two preference trees."""
    path: Path
    change_type: ChangeType
    old_value: Any = None
    new_value: Any = None

    # Kind of the new value (old value for removals)
    value_kind: Optional[ValueKind] = None

    # Set on additions of a whole new top-level dict or array
    is_new_tree: bool = False

    # For moves: previous position of the element now at path[-1]
    old_index: Optional[int] = None

    def __post_init__(self):
        if self.value_kind is None:
            if self.change_type == ChangeType.REMOVED:
                self.value_kind = kind_of(self.old_value)
            elif self.change_type != ChangeType.MOVED:
                self.value_kind = kind_of(self.new_value)

    @property
    def key(self) -> Segment:
        """Last path segment: dict key or array index."""
        return self.path[-1]

    @property
    def is_root_level(self) -> bool:
        """True for changes to a top-level key of the domain."""
        return len(self.path) == 1

    @property
    def is_kind_change(self) -> bool:
        """Modification where the value changed kind (e.g. dict -> array)."""
        if self.change_type != ChangeType.MODIFIED:
            return False
        return kind_of(self.old_value) != kind_of(self.new_value)

    @property
    def display_path(self) -> str:
        return format_path(self.path)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = {
            "path": self.display_path,
            "change_type": self.change_type.value,
        }
        if self.value_kind is not None:
            result["value_kind"] = self.value_kind.value
        if self.change_type == ChangeType.MOVED:
            result["old_index"] = self.old_index
            result["new_index"] = self.key
            return result
        if self.change_type != ChangeType.ADDED:
            result["old_value"] = self.old_value
        if self.change_type != ChangeType.REMOVED:
            result["new_value"] = self.new_value
        if self.is_new_tree:
            result["is_new_tree"] = True
        return result


@dataclass
class ChangeSet:
    """Result of comparing a previous tree with a current tree."""
    changes: list[ConfigChange] = field(default_factory=list)
    moves: list[ConfigChange] = field(default_factory=list)
    old_hash: str = ""
    new_hash: str = ""

    @property
    def is_identical(self) -> bool:
        return not self.changes

    @property
    def change_count(self) -> int:
        return len(self.changes)

    @property
    def additions(self) -> list[ConfigChange]:
        return [c for c in self.changes if c.change_type == ChangeType.ADDED]

    @property
    def deletions(self) -> list[ConfigChange]:
        return [c for c in self.changes if c.change_type == ChangeType.REMOVED]

    def to_dict(self) -> dict:
        return {
            "is_identical": self.is_identical,
            "change_count": self.change_count,
            "old_hash": self.old_hash,
            "new_hash": self.new_hash,
            "changes": [c.to_dict() for c in self.changes],
            "moves": [m.to_dict() for m in self.moves],
        }


def format_path(path: Path) -> str:
    """
    Human-readable form of a path: ("apps", 1, "id") -> "apps[1].id".
    """
    out = ""
    for segment in path:
        if isinstance(segment, int):
            out += f"[{segment}]"
        elif out:
            out += f".{segment}"
        else:
            out = str(segment)
    return out or "root"


def _compare_same_length_arrays(
    old_arr: list,
    new_arr: list,
    path: Path,
    volatile_keys: Iterable[str],
) -> list[ConfigChange]:
    """
    Compare equal-length arrays index by index.

    An element whose fingerprint changed but still exists elsewhere in the
    previous array has only moved. Anything else is recursed normally.
    """
    changes = []
    old_fps = [fingerprint(item, volatile_keys) for item in old_arr]
    first_index = {}
    for index, fp in enumerate(old_fps):
        first_index.setdefault(fp, index)

    for index, item in enumerate(new_arr):
        fp = fingerprint(item, volatile_keys)
        if fp == old_fps[index]:
            continue
        if fp in first_index:
            changes.append(ConfigChange(
                path=path + (index,),
                change_type=ChangeType.MOVED,
                old_index=first_index[fp],
            ))
            continue
        changes.extend(deep_compare(old_arr[index], item, path + (index,), volatile_keys))

    return changes


def _compare_resized_arrays(
    old_arr: list,
    new_arr: list,
    path: Path,
    volatile_keys: Iterable[str],
) -> list[ConfigChange]:
    """Compare arrays whose length changed, through the fingerprint matcher."""
    match = match_resized_list(old_arr, new_arr, volatile_keys)
    changes = []

    for index, item in match.deletions:
        changes.append(ConfigChange(
            path=path + (index,),
            change_type=ChangeType.REMOVED,
            old_value=item,
        ))

    for index, item in match.additions:
        changes.append(ConfigChange(
            path=path + (index,),
            change_type=ChangeType.ADDED,
            new_value=item,
        ))

    for old_index, new_index in match.moves:
        changes.append(ConfigChange(
            path=path + (new_index,),
            change_type=ChangeType.MOVED,
            old_index=old_index,
        ))

    return changes


def deep_compare(
    old_obj: Any,
    new_obj: Any,
    path: Path = (),
    volatile_keys: Optional[Iterable[str]] = None,
) -> list[ConfigChange]:
    """
    Recursively compare two preference trees and return all differences.

    This handles:
    - Nested dicts (added/removed keys carry their whole subtree)
    - Arrays (fingerprint matching, moves recorded as MOVED)
    - Scalars (value or kind mismatch)
    """
    if volatile_keys is None:
        volatile_keys = DEFAULT_VOLATILE_KEYS

    old_kind = kind_of(old_obj)
    new_kind = kind_of(new_obj)

    # Kind mismatch, including dict <-> array
    if old_kind != new_kind:
        return [ConfigChange(
            path=path,
            change_type=ChangeType.MODIFIED,
            old_value=old_obj,
            new_value=new_obj,
        )]

    if new_kind == ValueKind.DICT:
        changes = []
        for key in sorted(set(old_obj) | set(new_obj)):
            new_path = path + (key,)

            if key not in old_obj:
                value = new_obj[key]
                changes.append(ConfigChange(
                    path=new_path,
                    change_type=ChangeType.ADDED,
                    new_value=value,
                    is_new_tree=not path and isinstance(value, (dict, list)),
                ))
            elif key not in new_obj:
                changes.append(ConfigChange(
                    path=new_path,
                    change_type=ChangeType.REMOVED,
                    old_value=old_obj[key],
                ))
            else:
                changes.extend(deep_compare(old_obj[key], new_obj[key], new_path, volatile_keys))
        return changes

    if new_kind == ValueKind.ARRAY:
        if len(old_obj) != len(new_obj):
            return _compare_resized_arrays(old_obj, new_obj, path, volatile_keys)
        return _compare_same_length_arrays(old_obj, new_obj, path, volatile_keys)

    if not same_value(old_obj, new_obj):
        return [ConfigChange(
            path=path,
            change_type=ChangeType.MODIFIED,
            old_value=old_obj,
            new_value=new_obj,
        )]

    return []


def compute_config_hash(config: Any) -> str:
    """
    Compute a SHA-256 hash of a tree for quick comparison.
    Trees with the same hash are identical.
    """
    json_str = json.dumps(config, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_str.encode()).hexdigest()


def compare_trees(
    old_tree: dict,
    new_tree: dict,
    volatile_keys: Optional[Iterable[str]] = None,
) -> ChangeSet:
    """
    Main entry point for comparing two preference trees.

    Args:
        old_tree: The previous (already reported) tree
        new_tree: The freshly captured tree
        volatile_keys: Keys ignored when fingerprinting array elements

    Returns:
        ChangeSet with changes and suppressed moves
    """
    old_hash = compute_config_hash(old_tree)
    new_hash = compute_config_hash(new_tree)

    # Quick check - if hashes match, trees are identical
    if old_hash == new_hash:
        return ChangeSet(old_hash=old_hash, new_hash=new_hash)

    entries = deep_compare(old_tree, new_tree, volatile_keys=volatile_keys)

    return ChangeSet(
        changes=[c for c in entries if c.change_type != ChangeType.MOVED],
        moves=[c for c in entries if c.change_type == ChangeType.MOVED],
        old_hash=old_hash,
        new_hash=new_hash,
    )
