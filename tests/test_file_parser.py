"""
test_file_parser.py - snapshot decoding and domain resolution

Test cases:
- XML, binary and JSON plists decode; anything else degrades without raising
- flattened text is stable under key order
- a blob rewritten with the same length changes the flattened text
- domain names from plist paths (ByHost suffix removed)
- domain plist lookup order
"""
import hashlib
import plistlib
from datetime import datetime

import pytest

from conftest import write_plist
from core.file_parser import (
    Snapshot,
    decode_snapshot,
    domain_from_plist_path,
    is_byhost_path,
    render_flat_text,
    resolve_domain_plist,
)


# =============================================================================
# Decoding
# =============================================================================

class TestDecodeSnapshot:

    def test_xml_plist(self):
        snapshot = decode_snapshot(plistlib.dumps({"tilesize": 48, "autohide": True}))
        assert snapshot.decoder == "plist"
        assert snapshot.tree == {"tilesize": 48, "autohide": True}
        assert not snapshot.is_degraded

    def test_binary_plist_with_plist_only_types(self):
        raw = plistlib.dumps(
            {"blob": b"\x00" * 4, "when": datetime(2024, 5, 1, 12, 0, 0)},
            fmt=plistlib.FMT_BINARY,
        )
        snapshot = decode_snapshot(raw)
        assert snapshot.decoder == "plist"
        digest = hashlib.sha1(b"\x00" * 4).hexdigest()[:8]
        assert snapshot.tree == {"blob": f"<data:4:{digest}>", "when": "2024-05-01T12:00:00"}

    def test_blob_change_shows_in_flat_text(self):
        before = decode_snapshot(plistlib.dumps({"blob": b"\x00" * 4}))
        after = decode_snapshot(plistlib.dumps({"blob": b"\xff" * 4}))
        assert before.text != after.text

    def test_json(self):
        snapshot = decode_snapshot(b'{"a": [1, 2.5, "x"], "b": null}')
        assert snapshot.decoder == "json"
        assert snapshot.tree == {"a": [1, 2.5, "x"], "b": ""}

    @pytest.mark.parametrize("raw", [
        b"",
        b"not a plist",
        b'<?xml version="1.0"?><plist><dict><key>a</key>',
        b"[1, 2, 3]",
    ])
    def test_degraded(self, raw):
        snapshot = decode_snapshot(raw)
        assert snapshot.is_degraded
        assert snapshot.tree == {}
        assert snapshot.text == raw.decode("utf-8")

    def test_array_root_plist_degrades(self):
        assert decode_snapshot(plistlib.dumps([1, 2])).is_degraded

    def test_undecodable_bytes_rendered_best_effort(self):
        snapshot = decode_snapshot(b"bad \xff bytes")
        assert snapshot.is_degraded
        assert snapshot.text == "bad � bytes"


class TestFlatText:

    def test_key_order_irrelevant(self):
        assert render_flat_text({"a": 1, "b": {"c": True}}) == render_flat_text({"b": {"c": True}, "a": 1})

    def test_rendering(self):
        text = render_flat_text({"list": ["x", 1.5], "on": False})
        assert text.splitlines() == [
            "{",
            '  "list" => [',
            '    0 => "x"',
            "    1 => 1.5",
            "  ]",
            '  "on" => false',
            "}",
        ]

    def test_kind_visible_in_text(self):
        assert render_flat_text({"v": 1}) != render_flat_text({"v": True})

    def test_snapshot_dict_round_trip(self):
        snapshot = decode_snapshot(plistlib.dumps({"a": 1}))
        restored = Snapshot.from_dict(snapshot.to_dict())
        assert restored == snapshot


# =============================================================================
# Domains
# =============================================================================

class TestDomainFromPath:

    @pytest.mark.parametrize("path,domain", [
        ("/Users/ann/Library/Preferences/com.apple.dock.plist", "com.apple.dock"),
        ("/Users/ann/Library/Preferences/ByHost/com.apple.Spotlight.0A1B2C3D-1111-2222.plist",
         "com.apple.Spotlight"),
        ("/Users/ann/Library/Preferences/.GlobalPreferences.plist", ".GlobalPreferences"),
        ("/Library/Preferences/com.apple.loginwindow.plist", "com.apple.loginwindow"),
    ])
    def test_domains(self, path, domain):
        assert domain_from_plist_path(path) == domain

    def test_byhost(self):
        assert is_byhost_path("/Users/ann/Library/Preferences/ByHost/x.0A1B2C3D.plist")
        assert not is_byhost_path("/Users/ann/Library/Preferences/x.plist")


class TestResolveDomainPlist:

    @pytest.fixture
    def home(self, tmp_path):
        return tmp_path / "home"

    def test_global_domain(self, home):
        assert resolve_domain_plist("NSGlobalDomain", home) == (
            home / "Library" / "Preferences" / ".GlobalPreferences.plist"
        )

    def test_container_before_preferences(self, home):
        prefs = write_plist(home / "Library" / "Preferences" / "com.example.app.plist", {})
        container = write_plist(
            home / "Library" / "Containers" / "com.example.app" / "Data" / "Library"
            / "Preferences" / "com.example.app.plist",
            {},
        )
        assert resolve_domain_plist("com.example.app", home) == container
        container.unlink()
        assert resolve_domain_plist("com.example.app", home) == prefs

    def test_byhost(self, home):
        plist = write_plist(
            home / "Library" / "Preferences" / "ByHost" / "com.example.app.0A1B2C3D-1111-2222.plist", {}
        )
        assert resolve_domain_plist("com.example.app", home) == plist

    def test_group_container(self, home):
        plist = write_plist(
            home / "Library" / "Group Containers" / "group.com.example" / "Library"
            / "Preferences" / "com.example.app.plist",
            {},
        )
        assert resolve_domain_plist("com.example.app", home) == plist

    def test_not_found(self, home):
        assert resolve_domain_plist("com.example.none", home) is None
