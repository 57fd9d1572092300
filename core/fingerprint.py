"""
Stable fingerprints for array elements.

Preference writers rewrite bookkeeping fields (modification dates, internal
GUIDs, tile types) every time a plist is saved. Those keys are stripped before
an element is serialized, so two elements differing only in bookkeeping
fingerprint as equal and never show up as a phantom add/delete pair.
"""
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
import json


DEFAULT_VOLATILE_KEYS = frozenset({
    "parent-mod-date",
    "file-mod-date",
    "file-type",
    "dock-extra",
    "is-beta",
    "tile-type",
    "GUID",
    "book",
})


def strip_volatile(obj: Any, volatile_keys: Iterable[str] = DEFAULT_VOLATILE_KEYS) -> Any:
    """Remove volatile keys from every dict in obj, at any depth."""
    if isinstance(obj, dict):
        return {
            k: strip_volatile(v, volatile_keys)
            for k, v in obj.items()
            if k not in volatile_keys
        }
    if isinstance(obj, list):
        return [strip_volatile(item, volatile_keys) for item in obj]
    return obj


def fingerprint(obj: Any, volatile_keys: Iterable[str] = DEFAULT_VOLATILE_KEYS) -> str:
    """
    Canonical serialization of obj with volatile keys removed.

    JSON keeps kinds apart (true vs 1, 1 vs 1.0), and sort_keys makes dict
    ordering irrelevant.
    """
    return json.dumps(
        strip_volatile(obj, volatile_keys),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


@dataclass
class ListMatch:
    """Outcome of matching a resized array against its previous version."""
    additions: list[tuple[int, Any]] = field(default_factory=list)  # (current index, item)
    deletions: list[tuple[int, Any]] = field(default_factory=list)  # (previous index, item)
    moves: list[tuple[int, int]] = field(default_factory=list)      # (previous index, current index)

    @property
    def is_empty(self) -> bool:
        return not self.additions and not self.deletions


def match_resized_list(
    prev: list,
    curr: list,
    volatile_keys: Optional[Iterable[str]] = None,
) -> ListMatch:
    """
    Separate genuine inserts and removals from reordering in a resized array.

    Greedy multiset consumption: every previous fingerprint is queued with its
    index; current elements are walked in order and each one consumes the
    earliest unconsumed previous element with the same fingerprint. Current
    elements with no match are additions, previous elements left over are
    deletions.

    With several structurally identical elements this may attribute a change
    to the wrong duplicate; it still reports that an add or delete happened.
    """
    if volatile_keys is None:
        volatile_keys = DEFAULT_VOLATILE_KEYS

    available: dict[str, deque] = {}
    for index, item in enumerate(prev):
        available.setdefault(fingerprint(item, volatile_keys), deque()).append(index)

    result = ListMatch()
    for index, item in enumerate(curr):
        queue = available.get(fingerprint(item, volatile_keys))
        if queue:
            prev_index = queue.popleft()
            if prev_index != index:
                result.moves.append((prev_index, index))
        else:
            result.additions.append((index, item))

    leftover = sorted(i for queue in available.values() for i in queue)
    result.deletions = [(i, prev[i]) for i in leftover]
    return result
