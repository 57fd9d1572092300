"""
test_cli.py - settings and command line

Test cases:
- EXCLUDE_DOMAINS parsing and ALL detection
- compare prints the commands turning BEFORE into AFTER, noise filtered
- unreadable input and invalid rules give non-zero exit codes
"""
import json
import logging
import signal

import pytest

import cli
from config import Settings
from conftest import write_plist
from services.syslog import COMMAND_LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_logging():
    """configure_logging replaces root handlers; put them back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)

    output = logging.getLogger(COMMAND_LOGGER_NAME)
    for handler in list(output.handlers):
        output.removeHandler(handler)
    output.propagate = True


# =============================================================================
# Settings
# =============================================================================

class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.watch_all
        assert settings.exclude_patterns is None
        assert settings.FLUSH_RETRY_DELAYS == [0.5, 1.5]

    def test_exclude_patterns(self):
        settings = Settings(EXCLUDE_DOMAINS="com.apple.dock, com.apple.finder*,,")
        assert settings.exclude_patterns == ["com.apple.dock", "com.apple.finder*"]

    def test_single_domain(self):
        assert not Settings(WATCH_DOMAIN="com.apple.dock").watch_all

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL", "2.5")
        monkeypatch.setenv("MDM_OUTPUT", "true")
        settings = Settings()
        assert settings.POLL_INTERVAL == 2.5
        assert settings.MDM_OUTPUT is True


# =============================================================================
# compare
# =============================================================================

class TestCompare:

    def test_prints_commands(self, tmp_path, capsys):
        before = write_plist(tmp_path / "before" / "com.apple.dock.plist", {"tilesize": 48, "autohide": False})
        after = write_plist(tmp_path / "after" / "com.apple.dock.plist", {"tilesize": 64, "autohide": False})

        assert cli.main(["compare", str(before), str(after)]) == 0
        assert capsys.readouterr().out.splitlines() == [
            'defaults write com.apple.dock "tilesize" -int 64',
        ]

    def test_noise_filtered_unless_all(self, tmp_path, capsys):
        before = write_plist(tmp_path / "before.plist", {"trash-full": False})
        after = write_plist(tmp_path / "after.plist", {"trash-full": True})

        cli.main(["compare", str(before), str(after), "--domain", "com.apple.dock"])
        assert capsys.readouterr().out == ""

        cli.main(["compare", str(before), str(after), "--domain", "com.apple.dock", "--all"])
        assert capsys.readouterr().out.splitlines() == [
            'defaults write com.apple.dock "trash-full" -bool TRUE',
        ]

    def test_identical(self, tmp_path, capsys):
        before = write_plist(tmp_path / "a.plist", {"a": 1})
        after = write_plist(tmp_path / "b.plist", {"a": 1})
        assert cli.main(["compare", str(before), str(after)]) == 0
        assert capsys.readouterr().out.strip() == "# Files are identical"

    def test_undecodable_input(self, tmp_path, capsys):
        before = tmp_path / "a.plist"
        before.write_bytes(b"garbage")
        after = write_plist(tmp_path / "b.plist", {"a": 1})
        assert cli.main(["compare", str(before), str(after)]) == 1
        assert "Cannot decode" in capsys.readouterr().err


# =============================================================================
# watch
# =============================================================================

class TestWatch:

    def test_invalid_rules_exit_code(self, tmp_path, monkeypatch):
        monkeypatch.setattr(signal, "signal", lambda signum, handler: None)
        rules = tmp_path / "rules.json"
        rules.write_text(json.dumps({"targets": []}), encoding="utf-8")

        assert cli.main(["watch", "--rules", str(rules), "--no-system"]) == 2

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "usage: prefwatch" in capsys.readouterr().out
