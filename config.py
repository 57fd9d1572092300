"""
PrefWatch - macOS preference change watcher
"""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application Info
    APP_NAME: str = "PrefWatch"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # What to watch
    # "ALL" watches every domain; anything else is a single defaults domain
    WATCH_DOMAIN: str = "ALL"
    USER_PREFERENCES_DIR: Path = Path.home() / "Library" / "Preferences"
    SYSTEM_PREFERENCES_DIR: Path = Path("/Library/Preferences")
    INCLUDE_SYSTEM: bool = True

    # Snapshot cache (a temporary directory when unset)
    CACHE_DIR: Optional[Path] = None
    KEEP_CACHE: bool = False

    # Producers
    POLL_INTERVAL: float = 5.0  # seconds
    BASELINE_WORKERS: int = 16

    # Re-read schedule when a signal finds no change yet (cfprefsd flush latency)
    FLUSH_RETRY_DELAYS: list[float] = [0.5, 1.5]

    # Output
    ONLY_CMDS: bool = True    # print only commands, no timestamps or diagnostics
    MDM_OUTPUT: bool = False  # write user plist paths as /Users/$loggedInUser/...

    # Noise filtering
    # Comma-separated globs replacing the default domain exclusion list
    # Example: "com.apple.dock,com.apple.finder*"
    EXCLUDE_DOMAINS: Optional[str] = None
    NOISE_RULES_FILE: Optional[Path] = None  # bundled core/noise_rules.json when unset
    VOLATILE_KEYS: list[str] = [
        "parent-mod-date", "file-mod-date", "file-type", "dock-extra",
        "is-beta", "tile-type", "GUID", "book",
    ]

    # Type lookup for flat writes (`defaults read-type`, macOS only)
    USE_DEFAULTS_READ_TYPE: bool = True

    # Syslog forwarding
    SYSLOG_ENABLED: bool = False
    SYSLOG_SERVER: str = ""
    SYSLOG_PORT: int = 514
    SYSLOG_PROTOCOL: str = "udp"  # "udp" or "tcp"
    SYSLOG_FACILITY: int = 16     # LOCAL0

    @property
    def watch_all(self) -> bool:
        return self.WATCH_DOMAIN in ("ALL", "all", "*")

    @property
    def exclude_patterns(self) -> Optional[list[str]]:
        """Exclusion globs from EXCLUDE_DOMAINS, or None to keep the defaults."""
        if not self.EXCLUDE_DOMAINS:
            return None
        return [p.strip() for p in self.EXCLUDE_DOMAINS.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
