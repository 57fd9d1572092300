"""
test_commands.py - reconstruction command synthesis

Test cases:
- flat writes for root scalars: live type first, then heuristics, low confidence fallback
- PlistBuddy lines for root deletions and nested changes
- composite additions create the parent before children
- array deletions ordered highest index first, with the warning annotation
- deletions, then additions, then sets
- MDM path rendering, ByHost flat writes, Dock labels
- type sources
"""
import types
import subprocess

import pytest

from conftest import FixedTypes, write_plist
from core.commands import (
    ARRAY_DELETE_WARNING,
    LOW_CONFIDENCE_NOTE,
    NEW_TREE_NOTE,
    CommandKind,
    CommandSynthesizer,
    Confidence,
    DefaultsReadType,
    PlistTypeQuery,
    infer_value_type,
    mdm_plist_path,
    render_path,
)
from core.comparison import compare_trees
from core.values import ValueKind
from services.snapshot_store import Target


def _texts(commands):
    return [c.text for c in commands]


def _pb(target, inner):
    return f"/usr/libexec/PlistBuddy -c '{inner}' \"{target.path}\""


# =============================================================================
# Flat writes
# =============================================================================

class TestFlatWrites:

    @pytest.mark.parametrize("old,new,expected", [
        (48, 64, 'defaults write com.example.app "tilesize" -int 64'),
        (0.25, 0.5, 'defaults write com.example.app "tilesize" -float 0.5'),
        (False, True, 'defaults write com.example.app "tilesize" -bool TRUE'),
        ("Light", "Dark", 'defaults write com.example.app "tilesize" -string "Dark"'),
    ])
    def test_heuristic_types(self, synthesizer, target, old, new, expected):
        commands = synthesizer.synthesize(target, compare_trees({"tilesize": old}, {"tilesize": new}))
        assert _texts(commands) == [expected]
        assert commands[0].kind == CommandKind.FLAT_WRITE
        assert commands[0].confidence == Confidence.HIGH

    def test_root_addition_is_flat_write(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({}, {"autohide": True}))
        assert _texts(commands) == ['defaults write com.example.app "autohide" -bool TRUE']

    def test_live_type_wins_over_heuristics(self, target):
        synthesizer = CommandSynthesizer(FixedTypes({"enabled": ValueKind.BOOL}))
        commands = synthesizer.synthesize(target, compare_trees({"enabled": 0}, {"enabled": 1}))
        assert _texts(commands) == ['defaults write com.example.app "enabled" -bool TRUE']

    def test_unusable_live_type_falls_back(self, target):
        synthesizer = CommandSynthesizer(FixedTypes({"name": ValueKind.INTEGER}))
        commands = synthesizer.synthesize(target, compare_trees({"name": "a"}, {"name": "b"}))
        assert _texts(commands) == ['defaults write com.example.app "name" -string "b"']

    def test_exponent_real_without_live_type(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"scale": 1.5}, {"scale": 1e-07}))
        assert _texts(commands) == ['defaults write com.example.app "scale" -float 1e-07']
        assert commands[0].confidence == Confidence.HIGH

    def test_inconclusive_type_is_low_confidence(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"scale": 1.5}, {"scale": float("inf")}))

        assert len(commands) == 1
        command = commands[0]
        assert command.confidence == Confidence.LOW
        assert command.annotation == (LOW_CONFIDENCE_NOTE,)
        assert command.text == 'defaults write com.example.app "scale" -string "inf"'
        assert command.lines == [LOW_CONFIDENCE_NOTE, command.text]

    def test_live_real_type_renders_exponent(self, target):
        synthesizer = CommandSynthesizer(FixedTypes({"scale": ValueKind.REAL}))
        commands = synthesizer.synthesize(target, compare_trees({"scale": 1.5}, {"scale": 1e-07}))
        assert commands[0].text == 'defaults write com.example.app "scale" -float 1e-07'
        assert commands[0].confidence == Confidence.HIGH

    def test_byhost_uses_current_host(self, synthesizer, prefs_dir):
        target = Target(
            identity="com.apple.screensaver",
            path=prefs_dir / "ByHost" / "com.apple.screensaver.0A1B2C3D-1111.plist",
            key="k",
            by_host=True,
        )
        commands = synthesizer.synthesize(target, compare_trees({"idleTime": 300}, {"idleTime": 600}))
        assert _texts(commands) == ['defaults -currentHost write com.apple.screensaver "idleTime" -int 600']


# =============================================================================
# PlistBuddy commands
# =============================================================================

class TestPathCommands:

    def test_root_deletion(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"a": 1, "b": 2}, {"a": 1}))
        assert _texts(commands) == [_pb(target, "Delete :b")]
        assert commands[0].annotation == ()

    def test_nested_set(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"p": {"q": 1}}, {"p": {"q": 2}}))
        assert _texts(commands) == [_pb(target, "Set :p:q 2")]
        assert commands[0].kind == CommandKind.PATH_SET

    def test_spaces_escaped_in_segments(self, synthesizer, target):
        old = {"My Prefs": {"Name": "a"}}
        new = {"My Prefs": {"Name": "b"}}
        commands = synthesizer.synthesize(target, compare_trees(old, new))
        assert _texts(commands) == [_pb(target, 'Set :My\\ Prefs:Name "b"')]

    def test_single_quote_escaped_for_shell(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"p": {"q": "a"}}, {"p": {"q": "it's"}}))
        assert commands[0].text == _pb(target, "Set :p:q \"it'\\''s\"")

    def test_new_tree_creates_parent_first(self, synthesizer, target):
        new = {"prefs": {"b": 1, "a": [True]}}
        commands = synthesizer.synthesize(target, compare_trees({}, new))

        assert _texts(commands) == [
            _pb(target, "Add :prefs dict"),
            _pb(target, "Add :prefs:a array"),
            _pb(target, "Add :prefs:a:0 bool true"),
            _pb(target, "Add :prefs:b integer 1"),
        ]
        assert commands[0].annotation == (NEW_TREE_NOTE,)
        assert all(c.kind == CommandKind.PATH_ADD for c in commands)

    def test_array_element_addition(self, synthesizer, target):
        old = {"apps": [{"id": "A"}, {"id": "B"}]}
        new = {"apps": [{"id": "A"}, {"id": "C"}, {"id": "B"}]}
        commands = synthesizer.synthesize(target, compare_trees(old, new))
        assert _texts(commands) == [
            _pb(target, "Add :apps:1 dict"),
            _pb(target, 'Add :apps:1:id string "C"'),
        ]

    def test_kind_change_deletes_then_adds(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"p": {"a": 1}}, {"p": [1]}))
        assert _texts(commands) == [
            _pb(target, "Delete :p"),
            _pb(target, "Add :p array"),
            _pb(target, "Add :p:0 integer 1"),
        ]

    def test_scalar_to_composite_at_root(self, synthesizer, target):
        commands = synthesizer.synthesize(target, compare_trees({"p": 1}, {"p": {"x": "y"}}))
        assert _texts(commands) == [
            _pb(target, "Delete :p"),
            _pb(target, "Add :p dict"),
            _pb(target, 'Add :p:x string "y"'),
        ]


# =============================================================================
# Ordering
# =============================================================================

class TestOrdering:

    def test_array_deletions_highest_index_first(self, synthesizer, target):
        old = {"l": ["a", "b", "c", "d", "e"]}
        new = {"l": ["a", "c", "e"]}
        commands = synthesizer.synthesize(target, compare_trees(old, new))

        assert _texts(commands) == [_pb(target, "Delete :l:3"), _pb(target, "Delete :l:1")]
        assert all(c.annotation == ARRAY_DELETE_WARNING for c in commands)

    def test_deletions_then_additions_then_sets(self, synthesizer, target):
        old = {"a": 1, "gone": 2, "l": [1, 2]}
        new = {"a": 5, "l": [1, 2, 3], "new": "x"}
        commands = synthesizer.synthesize(target, compare_trees(old, new))

        assert [c.kind for c in commands] == [
            CommandKind.PATH_DELETE,
            CommandKind.PATH_ADD,
            CommandKind.FLAT_WRITE,
            CommandKind.FLAT_WRITE,
        ]
        assert commands[0].text == _pb(target, "Delete :gone")
        assert commands[1].text == _pb(target, "Add :l:2 integer 3")
        assert commands[2].text == 'defaults write com.example.app "new" -string "x"'
        assert commands[3].text == 'defaults write com.example.app "a" -int 5'

    def test_identical_changeset_gives_nothing(self, synthesizer, target):
        assert synthesizer.synthesize(target, compare_trees({"a": 1}, {"a": 1})) == []


# =============================================================================
# Rendering options
# =============================================================================

class TestRendering:

    def test_mdm_output(self, prefs_dir):
        home = prefs_dir.parent.parent
        target = Target(identity="com.example.app", path=prefs_dir / "com.example.app.plist", key="k")
        synthesizer = CommandSynthesizer(mdm_output=True, home=home)

        commands = synthesizer.synthesize(target, compare_trees({"a": 1, "b": 2}, {"a": 1}))

        assert commands[0].text == (
            "/usr/libexec/PlistBuddy -c 'Delete :b' "
            "\"/Users/$loggedInUser/Library/Preferences/com.example.app.plist\""
        )

    def test_mdm_path_outside_home_untouched(self):
        assert mdm_plist_path("/Library/Preferences/x.plist", "/Users/ann") == "/Library/Preferences/x.plist"
        assert mdm_plist_path("/Users/annex/x.plist", "/Users/ann") == "/Users/annex/x.plist"

    def test_dock_label(self, synthesizer, prefs_dir):
        target = Target(identity="com.apple.dock", path=prefs_dir / "com.apple.dock.plist", key="k")
        tile = {"tile-data": {"file-label": "Safari", "bundle-identifier": "com.apple.Safari"}}
        commands = synthesizer.synthesize(
            target, compare_trees({"persistent-apps": []}, {"persistent-apps": [tile]})
        )
        assert commands[0].annotation == ("# Dock: Safari (com.apple.Safari)",)

    def test_render_path(self):
        assert render_path(("a b", 0, "c")) == ":a\\ b:0:c"

    def test_command_to_dict(self, synthesizer, target):
        command = synthesizer.synthesize(target, compare_trees({"a": 1}, {"a": 2}))[0]
        assert command.to_dict()["kind"] == "flat_write"
        assert command.to_dict()["path"] == "a"
        assert command.to_dict()["verdict"] == "unclassified"


# =============================================================================
# Type sources
# =============================================================================

class TestTypeInference:

    @pytest.mark.parametrize("text,kind", [
        ("12", ValueKind.INTEGER),
        ("-7", ValueKind.INTEGER),
        ("-3.5", ValueKind.REAL),
        (".5", ValueKind.REAL),
        ("TRUE", ValueKind.BOOL),
        ('"hello"', ValueKind.STRING),
        ("hello", None),
        ("1e-07", ValueKind.REAL),
        ("-1.5E+20", ValueKind.REAL),
        ("2e5", ValueKind.REAL),
        ("1e", None),
        ("inf", None),
    ])
    def test_infer_value_type(self, text, kind):
        assert infer_value_type(text) == kind


class TestDefaultsReadType:

    def test_parses_last_word(self, monkeypatch, target):
        seen = {}

        def fake_run(args, **kwargs):
            seen["args"] = args
            return types.SimpleNamespace(returncode=0, stdout="Type is boolean\n")

        monkeypatch.setattr(subprocess, "run", fake_run)

        assert DefaultsReadType().read_type(target, "autohide") == ValueKind.BOOL
        assert seen["args"] == ["/usr/bin/defaults", "read-type", "com.example.app", "autohide"]

    def test_missing_key(self, monkeypatch, target):
        monkeypatch.setattr(
            subprocess, "run",
            lambda args, **kwargs: types.SimpleNamespace(returncode=1, stdout=""),
        )
        assert DefaultsReadType().read_type(target, "nope") is None

    def test_missing_executable(self, target, tmp_path):
        query = DefaultsReadType(executable=str(tmp_path / "no-such-defaults"))
        assert query.read_type(target, "autohide") is None


class TestPlistTypeQuery:

    def test_reads_backing_plist(self, target):
        write_plist(target.path, {"scale": 1.5, "name": "x"})
        query = PlistTypeQuery()
        assert query.read_type(target, "scale") == ValueKind.REAL
        assert query.read_type(target, "name") == ValueKind.STRING
        assert query.read_type(target, "missing") is None

    def test_unreadable_plist(self, target):
        assert PlistTypeQuery().read_type(target, "scale") is None
