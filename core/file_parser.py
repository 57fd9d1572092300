"""
Snapshot decoding for preference plists.

Backing bytes are decoded with plistlib (XML and binary formats), then JSON.
If neither works the snapshot is degraded: an empty tree plus a best-effort
text rendering of the raw bytes. Decoding never raises.

Domains are identified by the plist file name, with the hardware UUID suffix
of ByHost files removed.
"""
import re
import json
import logging
import plistlib
from xml.parsers.expat import ExpatError
from pathlib import Path
from typing import Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

from core.values import normalize_tree, scalar_text

logger = logging.getLogger(__name__)


# ByHost plists carry the hardware UUID: com.apple.dock.0A1B2C3D-....plist
BYHOST_SUFFIX = re.compile(r'\.[0-9A-Fa-f-]{8,}$')

GLOBAL_DOMAIN = "NSGlobalDomain"
GLOBAL_PLIST = ".GlobalPreferences.plist"


@dataclass
class Snapshot:
    """Materialized state of one target at one instant."""
    tree: dict
    text: str
    decoder: str  # "plist", "json" or "text"
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_degraded(self) -> bool:
        return self.decoder == "text"

    def to_dict(self) -> dict:
        return {
            "tree": self.tree,
            "text": self.text,
            "decoder": self.decoder,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        return cls(
            tree=data["tree"],
            text=data["text"],
            decoder=data["decoder"],
            captured_at=datetime.fromisoformat(data["captured_at"]),
        )


def _render_lines(value: Any, indent: int, lines: list[str], prefix: str) -> None:
    pad = "  " * indent
    if isinstance(value, dict):
        lines.append(f"{pad}{prefix}{{")
        for key in sorted(value):
            _render_lines(value[key], indent + 1, lines, f"{scalar_text(str(key))} => ")
        lines.append(f"{pad}}}")
    elif isinstance(value, list):
        lines.append(f"{pad}{prefix}[")
        for index, item in enumerate(value):
            _render_lines(item, indent + 1, lines, f"{index} => ")
        lines.append(f"{pad}]")
    else:
        lines.append(f"{pad}{prefix}{scalar_text(value)}")


def render_flat_text(tree: Any) -> str:
    """
    Render a tree as stable text, in the spirit of `plutil -p`.

    Keys are sorted, so two trees render identically exactly when they are
    structurally equal. Used for the cheap equality check before diffing.
    """
    lines: list[str] = []
    _render_lines(tree, 0, lines, "")
    return "\n".join(lines)


def decode_snapshot(raw: bytes) -> Snapshot:
    """
    Decode backing bytes into a Snapshot.

    Args:
        raw: Contents of the backing plist

    Returns:
        Snapshot; degraded (decoder "text") when the bytes are not a valid
        plist or JSON document with a dict at the root
    """
    try:
        tree = normalize_tree(plistlib.loads(raw))
        if isinstance(tree, dict):
            return Snapshot(tree=tree, text=render_flat_text(tree), decoder="plist")
        logger.debug(f"Plist root is {type(tree).__name__}, not a dict")
    except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError, OverflowError) as e:
        logger.debug(f"plistlib could not decode snapshot: {e}")

    try:
        tree = json.loads(raw)
        if isinstance(tree, dict):
            tree = normalize_tree(tree)
            return Snapshot(tree=tree, text=render_flat_text(tree), decoder="json")
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        logger.debug(f"JSON could not decode snapshot: {e}")

    return Snapshot(tree={}, text=raw.decode("utf-8", errors="replace"), decoder="text")


def is_byhost_path(path) -> bool:
    return "ByHost" in Path(path).parts


def domain_from_plist_path(path) -> str:
    """
    Derive the defaults domain from a plist path.

    Examples:
        ~/Library/Preferences/com.apple.dock.plist -> com.apple.dock
        .../ByHost/com.apple.Spotlight.0A1B2C3D-1111-2222.plist -> com.apple.Spotlight
        ~/Library/Preferences/.GlobalPreferences.plist -> .GlobalPreferences
    """
    name = Path(path).name
    if name.endswith(".plist"):
        name = name[:-len(".plist")]
    return BYHOST_SUFFIX.sub("", name) or name


def resolve_domain_plist(domain: str, home) -> Optional[Path]:
    """
    Find the plist backing a domain for the user whose home is given.

    Lookup order: NSGlobalDomain, sandbox container, Preferences, ByHost,
    Group Containers. Returns None when no file exists.
    """
    home = Path(home)
    prefs = home / "Library" / "Preferences"

    if domain in (GLOBAL_DOMAIN, ".GlobalPreferences"):
        return prefs / GLOBAL_PLIST

    candidates = [
        home / "Library" / "Containers" / domain / "Data" / "Library" / "Preferences" / f"{domain}.plist",
        prefs / f"{domain}.plist",
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate

    byhost = prefs / "ByHost"
    if byhost.is_dir():
        for candidate in sorted(byhost.glob(f"{domain}.*.plist")):
            if domain_from_plist_path(candidate) == domain:
                return candidate

    groups = home / "Library" / "Group Containers"
    if groups.is_dir():
        for candidate in sorted(groups.rglob(f"{domain}.plist")):
            if candidate.is_file():
                return candidate

    return None
