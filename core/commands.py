"""
Reconstruction command synthesis.

Turns a ChangeSet into shell lines that replay the change on another Mac:

- Root-level scalar additions and modifications become flat writes:
      defaults [-currentHost] write <domain> "<key>" -<type> <value>
- Everything else (root deletions, nested changes, composite values) is
  addressed by path through PlistBuddy:
      /usr/libexec/PlistBuddy -c '<Verb> :<a>:<b>' "<plist>"

Within one ChangeSet, deletions are emitted before additions, and additions
before sets.
"""
import re
import logging
import plistlib
import subprocess
from enum import Enum
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from core.comparison import ChangeSet, ChangeType, ConfigChange, Path as TreePath, format_path
from core.values import (
    DEFAULTS_TYPE_FLAGS,
    READ_TYPE_NAMES,
    ValueKind,
    kind_of,
    scalar_text,
)

logger = logging.getLogger(__name__)


PLISTBUDDY = "/usr/libexec/PlistBuddy"
MDM_HOME = "/Users/$loggedInUser"

ARRAY_DELETE_WARNING = (
    "# WARNING: Array deletion - indexes change after each deletion",
    "# For multiple deletions: execute from HIGHEST index to LOWEST",
)
NEW_TREE_NOTE = (
    "# NOTE: First change creates the full structure - "
    "subsequent changes only modify individual entries"
)
LOW_CONFIDENCE_NOTE = "# LOW CONFIDENCE: value type could not be determined, written as -string"

# PlistBuddy type names
PLISTBUDDY_TYPES = {
    ValueKind.BOOL: "bool",
    ValueKind.INTEGER: "integer",
    ValueKind.REAL: "real",
    ValueKind.STRING: "string",
    ValueKind.DICT: "dict",
    ValueKind.ARRAY: "array",
}

INTEGER_RE = re.compile(r'^-?[0-9]+$')
REAL_RE = re.compile(r'^-?(?:[0-9]*\.[0-9]+(?:[eE][+-]?[0-9]+)?|[0-9]+(?:\.[0-9]*)?[eE][+-]?[0-9]+)$')
QUOTED_RE = re.compile(r'^".*"$', re.DOTALL)


class CommandKind(str, Enum):
    FLAT_WRITE = "flat_write"
    PATH_ADD = "path_add"
    PATH_DELETE = "path_delete"
    PATH_SET = "path_set"


class Confidence(str, Enum):
    HIGH = "high"
    LOW = "low"


class Verdict(str, Enum):
    UNCLASSIFIED = "unclassified"
    INTERESTING = "interesting"
    NOISE = "noise"


@dataclass(frozen=True)
class Command:
    """One reconstruction instruction, ready to print."""
    kind: CommandKind
    path: TreePath
    text: str
    target: str
    annotation: tuple[str, ...] = ()
    confidence: Confidence = Confidence.HIGH
    verdict: Verdict = Verdict.UNCLASSIFIED

    @property
    def lines(self) -> list[str]:
        """Annotation lines followed by the command itself."""
        return [*self.annotation, self.text]

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "path": format_path(self.path),
            "text": self.text,
            "target": self.target,
            "annotation": list(self.annotation),
            "confidence": self.confidence.value,
            "verdict": self.verdict.value,
        }


# ============================================
# Live type sources
# ============================================

class TypeQuery(Protocol):
    def read_type(self, target, key: str) -> Optional[ValueKind]:
        ...


class DefaultsReadType:
    """Ask `defaults read-type` for the stored type of a root key."""

    def __init__(self, executable: str = "/usr/bin/defaults", timeout: float = 5.0):
        self.executable = executable
        self.timeout = timeout

    def read_type(self, target, key: str) -> Optional[ValueKind]:
        args = [self.executable]
        if target.by_host:
            args.append("-currentHost")
        args += ["read-type", target.identity, key]
        try:
            proc = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"defaults read-type unavailable for {target.identity} {key}: {e}")
            return None
        if proc.returncode != 0 or not proc.stdout.strip():
            return None
        # "Type is boolean"
        return READ_TYPE_NAMES.get(proc.stdout.split()[-1])


class PlistTypeQuery:
    """Read the type of a root key straight from the backing plist."""

    def read_type(self, target, key: str) -> Optional[ValueKind]:
        try:
            tree = plistlib.loads(Path(target.path).read_bytes())
        except Exception as e:
            logger.debug(f"Cannot read type of {key} from {target.path}: {e}")
            return None
        if not isinstance(tree, dict) or key not in tree:
            return None
        try:
            return kind_of(tree[key])
        except TypeError:
            return None


# ============================================
# Rendering helpers
# ============================================

def infer_value_type(text: str) -> Optional[ValueKind]:
    """
    Guess the kind of a scalar from its flat text rendering.

    Order: integer, real, boolean literal, quoted string. None when nothing
    matches.
    """
    text = text.strip()
    if INTEGER_RE.match(text):
        return ValueKind.INTEGER
    if REAL_RE.match(text):
        return ValueKind.REAL
    if text.lower() in ("true", "false"):
        return ValueKind.BOOL
    if QUOTED_RE.match(text):
        return ValueKind.STRING
    return None


def escape_segment(segment) -> str:
    """PlistBuddy path segment with embedded spaces escaped."""
    return str(segment).replace(" ", "\\ ")


def render_path(path: TreePath) -> str:
    return ":" + ":".join(escape_segment(s) for s in path)


def _quote_double(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(text: str) -> str:
    if QUOTED_RE.match(text):
        text = text[1:-1]
    return text.replace('\\"', '"').replace("\\\\", "\\")


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "false", "no", "0"):
        return value.strip().lower() in ("true", "yes", "1")
    return None


def _defaults_value(kind: ValueKind, value: Any) -> Optional[str]:
    """Render value as a `defaults write` argument of the given kind."""
    if kind == ValueKind.BOOL:
        flag = _as_bool(value)
        return None if flag is None else ("TRUE" if flag else "FALSE")
    if kind == ValueKind.INTEGER:
        if isinstance(value, bool):
            return str(int(value))
        if isinstance(value, int) or (isinstance(value, float) and value.is_integer()):
            return str(int(value))
        if isinstance(value, str) and INTEGER_RE.match(value.strip()):
            return value.strip()
        return None
    if kind == ValueKind.REAL:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return repr(float(value))
        if isinstance(value, str) and (REAL_RE.match(value.strip()) or INTEGER_RE.match(value.strip())):
            return value.strip()
        return None
    if kind == ValueKind.STRING:
        return _quote_double(value if isinstance(value, str) else scalar_text(value))
    return None


def _plistbuddy_value(value: Any) -> str:
    kind = kind_of(value)
    if kind == ValueKind.STRING:
        return _quote_double(value)
    return scalar_text(value)


def mdm_plist_path(path, home) -> str:
    """Replace the user's home prefix with the $loggedInUser placeholder."""
    path = str(path)
    home = str(home).rstrip("/")
    if home and (path == home or path.startswith(home + "/")):
        return MDM_HOME + path[len(home):]
    return path


# ============================================
# Synthesizer
# ============================================

class CommandSynthesizer:
    """
    Converts ChangeSet entries into Command records for one target.

    Args:
        type_query: Live type source for flat writes; None means heuristics only
        mdm_output: Render user plist paths with $loggedInUser
        home: Home directory substituted in MDM mode
    """

    def __init__(self, type_query: Optional[TypeQuery] = None, mdm_output: bool = False, home=None):
        self.type_query = type_query
        self.mdm_output = mdm_output
        self.home = Path(home) if home is not None else Path.home()

    # --- rendering -------------------------------------------------------

    def _plist_arg(self, target) -> str:
        path = str(target.path)
        if self.mdm_output:
            path = mdm_plist_path(path, self.home)
        return path

    def _plistbuddy(self, target, inner: str) -> str:
        inner = inner.replace("'", "'\\''")
        return f"{PLISTBUDDY} -c '{inner}' \"{self._plist_arg(target)}\""

    def _flat_write(self, target, change: ConfigChange) -> Command:
        key = str(change.key)
        value = change.new_value
        kind = None
        rendered = None
        confidence = Confidence.HIGH
        annotation: tuple[str, ...] = ()

        if self.type_query is not None:
            kind = self.type_query.read_type(target, key)
            if kind is not None and not kind.is_composite:
                rendered = _defaults_value(kind, value)
            if rendered is None and kind is not None:
                logger.debug(f"Live type {kind.value} unusable for {target.identity} {key}, using heuristics")
                kind = None

        if rendered is None:
            text = scalar_text(value)
            kind = infer_value_type(text)
            if kind == ValueKind.STRING:
                rendered = _quote_double(_unquote(text))
            elif kind is not None:
                rendered = _defaults_value(kind, text)
            if rendered is None:
                kind = ValueKind.STRING
                rendered = _quote_double(text)
                confidence = Confidence.LOW
                annotation = (LOW_CONFIDENCE_NOTE,)

        host = "-currentHost " if target.by_host else ""
        escaped_key = key.replace("\\", "\\\\").replace('"', '\\"')
        text = (
            f"defaults {host}write {target.identity} \"{escaped_key}\" "
            f"{DEFAULTS_TYPE_FLAGS[kind]} {rendered}"
        )
        return Command(
            kind=CommandKind.FLAT_WRITE,
            path=change.path,
            text=text,
            target=target.identity,
            annotation=annotation,
            confidence=confidence,
        )

    def _delete(self, target, path: TreePath) -> Command:
        is_array_element = isinstance(path[-1], int)
        return Command(
            kind=CommandKind.PATH_DELETE,
            path=path,
            text=self._plistbuddy(target, f"Delete {render_path(path)}"),
            target=target.identity,
            annotation=ARRAY_DELETE_WARNING if is_array_element else (),
        )

    def _add_tree(self, target, path: TreePath, value: Any, annotation: tuple[str, ...] = ()) -> list[Command]:
        """Add value at path; composites create the parent before any child."""
        kind = kind_of(value)
        if kind.is_composite:
            inner = f"Add {render_path(path)} {PLISTBUDDY_TYPES[kind]}"
        else:
            inner = f"Add {render_path(path)} {PLISTBUDDY_TYPES[kind]} {_plistbuddy_value(value)}"

        commands = [Command(
            kind=CommandKind.PATH_ADD,
            path=path,
            text=self._plistbuddy(target, inner),
            target=target.identity,
            annotation=annotation,
        )]

        if kind == ValueKind.DICT:
            for key in sorted(value):
                commands.extend(self._add_tree(target, path + (key,), value[key]))
        elif kind == ValueKind.ARRAY:
            for index, item in enumerate(value):
                commands.extend(self._add_tree(target, path + (index,), item))
        return commands

    def _set(self, target, change: ConfigChange) -> Command:
        inner = f"Set {render_path(change.path)} {_plistbuddy_value(change.new_value)}"
        return Command(
            kind=CommandKind.PATH_SET,
            path=change.path,
            text=self._plistbuddy(target, inner),
            target=target.identity,
        )

    # --- ordering --------------------------------------------------------

    @staticmethod
    def _order_deletions(paths: list[TreePath]) -> list[TreePath]:
        """
        Group deletions by parent (first-seen order); array elements of one
        parent are ordered highest index first.
        """
        groups: dict[TreePath, list[TreePath]] = {}
        for path in paths:
            groups.setdefault(path[:-1], []).append(path)

        ordered = []
        for siblings in groups.values():
            indexed = [p for p in siblings if isinstance(p[-1], int)]
            keyed = [p for p in siblings if not isinstance(p[-1], int)]
            ordered.extend(keyed)
            ordered.extend(sorted(indexed, key=lambda p: p[-1], reverse=True))
        return ordered

    # --- entry point -----------------------------------------------------

    def synthesize(self, target, changeset: ChangeSet) -> list[Command]:
        """
        Build the ordered command list for one ChangeSet.

        Args:
            target: Object with identity, path and by_host attributes
            changeset: Output of compare_trees for this target

        Returns:
            Commands ordered deletions, additions, sets
        """
        deletion_paths: list[TreePath] = []
        additions: list[Command] = []
        sets: list[Command] = []

        for change in changeset.changes:
            if change.change_type == ChangeType.REMOVED:
                deletion_paths.append(change.path)

            elif change.change_type == ChangeType.ADDED:
                additions.extend(self._addition(target, change))

            elif change.change_type == ChangeType.MODIFIED:
                if change.is_root_level and not change.value_kind.is_composite and not _is_composite(change.old_value):
                    sets.append(self._flat_write(target, change))
                elif change.is_kind_change:
                    # PlistBuddy cannot retype in place
                    deletion_paths.append(change.path)
                    additions.extend(self._addition(target, change))
                else:
                    sets.append(self._set(target, change))

        deletions = [self._delete(target, p) for p in self._order_deletions(deletion_paths)]
        commands = deletions + additions + sets
        logger.debug(
            f"{target.identity}: {len(deletions)} deletions, {len(additions)} additions, "
            f"{len(sets)} sets"
        )
        return commands

    def _addition(self, target, change: ConfigChange) -> list[Command]:
        value = change.new_value
        if change.is_root_level and not _is_composite(value):
            return [self._flat_write(target, change)]

        annotation = ()
        if change.is_new_tree:
            annotation = (NEW_TREE_NOTE,)
        label = item_label(target.identity, change)
        if label:
            annotation = annotation + (label,)
        return self._add_tree(target, change.path, value, annotation)


def _is_composite(value: Any) -> bool:
    return isinstance(value, (dict, list))


def item_label(identity: str, change: ConfigChange) -> Optional[str]:
    """Readable comment for Dock tiles added to persistent-apps/-others."""
    if identity != "com.apple.dock" or len(change.path) != 2:
        return None
    if change.path[0] not in ("persistent-apps", "persistent-others"):
        return None
    item = change.new_value
    tile = item.get("tile-data") if isinstance(item, dict) else None
    if not isinstance(tile, dict) or not tile.get("file-label"):
        return None
    label = f"# Dock: {tile['file-label']}"
    if tile.get("bundle-identifier"):
        label += f" ({tile['bundle-identifier']})"
    return label
