# PrefWatch v1.0.0
"""
Core package for PrefWatch.
Contains the tree differ, fingerprint matcher, command synthesis and noise rules.
"""
from core.comparison import (
    compare_trees,
    deep_compare,
    compute_config_hash,
    format_path,
    ConfigChange,
    ChangeSet,
    ChangeType
)
from core.commands import (
    CommandSynthesizer,
    Command,
    CommandKind,
    Confidence,
    Verdict,
    DefaultsReadType,
    PlistTypeQuery
)
from core.errors import (
    PrefwatchError,
    TransientReadFailure,
    NoiseConfigError
)
from core.file_parser import (
    decode_snapshot,
    domain_from_plist_path,
    resolve_domain_plist,
    Snapshot
)
from core.fingerprint import (
    fingerprint,
    match_resized_list,
    DEFAULT_VOLATILE_KEYS
)
from core.noise import (
    load_rules,
    NoiseClassifier,
    RuleSet
)
from core.values import ValueKind

__all__ = [
    "compare_trees",
    "deep_compare",
    "compute_config_hash",
    "format_path",
    "ConfigChange",
    "ChangeSet",
    "ChangeType",
    "CommandSynthesizer",
    "Command",
    "CommandKind",
    "Confidence",
    "Verdict",
    "DefaultsReadType",
    "PlistTypeQuery",
    "PrefwatchError",
    "TransientReadFailure",
    "NoiseConfigError",
    "decode_snapshot",
    "domain_from_plist_path",
    "resolve_domain_plist",
    "Snapshot",
    "fingerprint",
    "match_resized_list",
    "DEFAULT_VOLATILE_KEYS",
    "load_rules",
    "NoiseClassifier",
    "RuleSet",
    "ValueKind"
]
