"""
Noise classification for rendered commands.

Preference domains are full of bookkeeping keys (timestamps, counters, window
frames, cache blobs) that change without the user touching anything. The
classifier decides, from the target identity and the rendered command text,
whether a command is worth showing.

Rule tiers, in order:
1. command patterns over the rendered text (binary blobs, float window positions)
2. target allow rules (an allowed key is always kept)
3. global key rules: glob patterns and regex shapes, plus sub-key segment globs
4. target deny rules

All globs are case-sensitive (fnmatchcase).
"""
import re
import json
import logging
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from core.commands import Verdict
from core.errors import NoiseConfigError

logger = logging.getLogger(__name__)


DEFAULT_RULES_FILE = Path(__file__).parent / "noise_rules.json"

FLAT_WRITE_RE = re.compile(r'defaults\s+(?:-currentHost\s+)?write\s+\S+\s+"((?:[^"\\]|\\.)*)"')
PLISTBUDDY_RE = re.compile(r"-c '((?:[^']|'\\'')*)'")


class TargetRules(BaseModel):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class RuleSet(BaseModel):
    """Noise rule catalog, as loaded from JSON."""
    excluded_targets: list[str] = Field(default_factory=list)
    command_patterns: list[str] = Field(default_factory=list)
    global_patterns: list[str] = Field(default_factory=list)
    global_regexes: list[str] = Field(default_factory=list)
    segment_patterns: list[str] = Field(default_factory=list)
    targets: dict[str, TargetRules] = Field(default_factory=dict)
    notes: dict[str, dict[str, str]] = Field(default_factory=dict)

    @field_validator("global_regexes")
    @classmethod
    def regexes_compile(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex {pattern!r}: {e}")
        return value


def load_rules(path=None, excluded_targets: Optional[list[str]] = None) -> RuleSet:
    """
    Load a rule set from JSON.

    Args:
        path: Rule file; the bundled catalog when None
        excluded_targets: Replaces the file's exclusion list when given

    Raises:
        NoiseConfigError: file missing, unreadable or not a valid rule set
    """
    path = Path(path) if path else DEFAULT_RULES_FILE
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise NoiseConfigError(f"Cannot read noise rules {path}: {e}") from e

    try:
        rules = RuleSet.model_validate(json.loads(raw))
    except json.JSONDecodeError as e:
        raise NoiseConfigError(f"Noise rules {path} are not valid JSON: {e}") from e
    except ValidationError as e:
        raise NoiseConfigError(f"Noise rules {path} are invalid: {e}") from e

    if excluded_targets is not None:
        rules.excluded_targets = [p.strip() for p in excluded_targets if p.strip()]

    logger.info(
        f"Loaded noise rules from {path.name}: {len(rules.global_patterns)} global patterns, "
        f"{len(rules.targets)} target rule sets, {len(rules.excluded_targets)} exclusions"
    )
    return rules


def _split_path(text: str) -> list[str]:
    """
    Split a PlistBuddy path (":a:b\\ c:0 rest") into segments.

    Stops at the first unescaped space.
    """
    segments = []
    current = ""
    i = 1 if text.startswith(":") else 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text) and text[i + 1] == " ":
            current += " "
            i += 2
            continue
        if ch == " ":
            break
        if ch == ":":
            segments.append(current)
            current = ""
        else:
            current += ch
        i += 1
    segments.append(current)
    return segments


def command_key_path(text: str) -> Optional[list[str]]:
    """
    Extract the key path addressed by a rendered command.

    Returns:
        [key] for flat writes, the segment list for PlistBuddy commands,
        None when text is neither
    """
    match = FLAT_WRITE_RE.search(text)
    if match:
        return [match.group(1).replace('\\"', '"').replace("\\\\", "\\")]

    match = PLISTBUDDY_RE.search(text)
    if match:
        inner = match.group(1).replace("'\\''", "'")
        _verb, _, rest = inner.partition(" ")
        if rest.startswith(":"):
            return _split_path(rest)
    return None


class NoiseClassifier:
    """Pure predicate over (target identity, rendered command)."""

    def __init__(self, rules: RuleSet):
        self.rules = rules
        self._regexes = [re.compile(p) for p in rules.global_regexes]

    def _target_rules(self, identity: str) -> list[TargetRules]:
        return [r for glob, r in self.rules.targets.items() if fnmatchcase(identity, glob)]

    def is_excluded_target(self, identity: str) -> bool:
        return any(fnmatchcase(identity, p) for p in self.rules.excluded_targets)

    def is_noisy_key(self, identity: str, key: str) -> bool:
        """Decide whether a top-level key of a target is bookkeeping."""
        scoped = self._target_rules(identity)

        for rules in scoped:
            if any(fnmatchcase(key, p) for p in rules.allow):
                return False

        if any(rx.match(key) for rx in self._regexes):
            return True
        if any(fnmatchcase(key, p) for p in self.rules.global_patterns):
            return True

        for rules in scoped:
            if any(fnmatchcase(key, p) for p in rules.deny):
                return True
        return False

    def is_noisy_segment(self, segment: str) -> bool:
        return any(fnmatchcase(segment, p) for p in self.rules.segment_patterns)

    def classify(self, identity: str, text: str) -> Verdict:
        """
        Classify one rendered command.

        Args:
            identity: Target identity (defaults domain)
            text: Rendered command line

        Returns:
            Verdict.NOISE or Verdict.INTERESTING
        """
        if any(fnmatchcase(text, p) for p in self.rules.command_patterns):
            return Verdict.NOISE

        segments = command_key_path(text)
        if not segments:
            return Verdict.INTERESTING

        if self.is_noisy_key(identity, segments[0]):
            return Verdict.NOISE

        # Array indices are never noisy on their own
        for segment in segments[1:]:
            if not segment.isdigit() and self.is_noisy_segment(segment):
                return Verdict.NOISE

        return Verdict.INTERESTING

    def notes_for(self, identity: str, key: str) -> Optional[str]:
        """
        Contextual note for a changed top-level key, if any.

        Exact key globs are preferred over a target's catch-all "*" entry.
        """
        fallback = None
        for glob, entries in self.rules.notes.items():
            if not fnmatchcase(identity, glob):
                continue
            for key_glob, note in entries.items():
                if key_glob == "*":
                    fallback = fallback or note
                elif fnmatchcase(key, key_glob):
                    return note
        return fallback
