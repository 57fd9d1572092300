"""
Watch session lifecycle.

start(): load noise rules, take the initial baseline of every watched plist,
then start the watchdog watcher and the interval poller.
stop(): stop producers, let in-flight passes commit, drop the temporary cache.
"""
import sys
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional
from concurrent.futures import ThreadPoolExecutor

from config import Settings
from core.commands import CommandSynthesizer, DefaultsReadType, PlistTypeQuery
from core.file_parser import domain_from_plist_path, resolve_domain_plist
from core.noise import NoiseClassifier, load_rules
from services.coordinator import DiffCoordinator, PassOutcome
from services.scheduler import PlistPoller, SchedulerService
from services.snapshot_store import SnapshotStore
from services.syslog import CommandLogService, SyslogForwarder
from services.watcher import DirectoryWatcher

logger = logging.getLogger(__name__)

# The poller signals these plists again on its next scan
RESIGNAL_OUTCOMES = (PassOutcome.SKIPPED_LOCKED, PassOutcome.READ_FAILED)


class WatchSession:
    """
    One run of the preference watcher.

    Args:
        settings: Application settings
        home: Home directory of the watched user (defaults to the current user)
    """

    def __init__(self, settings: Settings, home=None):
        self.settings = settings
        self.home = Path(home) if home is not None else Path.home()

        self.classifier: Optional[NoiseClassifier] = None
        self.store: Optional[SnapshotStore] = None
        self.coordinator: Optional[DiffCoordinator] = None
        self.output: Optional[CommandLogService] = None
        self.watcher: Optional[DirectoryWatcher] = None
        self.scheduler: Optional[SchedulerService] = None

        self.domain_plist: Optional[Path] = None
        self._temp_cache = False
        self._stopped = threading.Event()
        self._running = False

    # --- setup -----------------------------------------------------------

    def _roots(self) -> list[tuple[Path, str]]:
        if self.domain_plist is not None:
            return [(self.domain_plist.parent, "user")]
        roots = [(Path(self.settings.USER_PREFERENCES_DIR), "user")]
        if self.settings.INCLUDE_SYSTEM:
            roots.append((Path(self.settings.SYSTEM_PREFERENCES_DIR), "system"))
        return roots

    def _wants(self, path) -> bool:
        """Single-domain mode only follows the resolved plist."""
        if self.domain_plist is None:
            return True
        return Path(path) == self.domain_plist

    def _on_change(self, path: str, scope: str) -> bool:
        """False when the signal was not acted on and should be repeated."""
        if not self._wants(path):
            return True
        result = self.coordinator.signal(path, scope)
        return result.outcome not in RESIGNAL_OUTCOMES

    def _type_query(self):
        if self.settings.USE_DEFAULTS_READ_TYPE and sys.platform == "darwin":
            return DefaultsReadType()
        return PlistTypeQuery()

    def _forwarder(self) -> Optional[SyslogForwarder]:
        if not (self.settings.SYSLOG_ENABLED and self.settings.SYSLOG_SERVER):
            return None
        return SyslogForwarder(
            server=self.settings.SYSLOG_SERVER,
            port=self.settings.SYSLOG_PORT,
            protocol=self.settings.SYSLOG_PROTOCOL,
            facility=self.settings.SYSLOG_FACILITY,
        )

    def _resolve_domain(self) -> None:
        domain = self.settings.WATCH_DOMAIN
        plist = resolve_domain_plist(domain, self.home)
        if plist is None:
            plist = Path(self.settings.USER_PREFERENCES_DIR) / f"{domain}.plist"
            logger.warning(f"No plist found for {domain}, waiting for {plist}")
        self.domain_plist = plist
        logger.info(f"Watching domain {domain} at {plist}")

        if self.classifier.is_excluded_target(domain_from_plist_path(plist)):
            logger.warning(f"{domain} is normally excluded in ALL mode, but monitoring as explicitly requested")

    def start(self) -> None:
        """
        Start the session.

        Raises:
            NoiseConfigError: the noise rule file cannot be loaded
        """
        if self._running:
            logger.warning("Session already running")
            return

        rules = load_rules(self.settings.NOISE_RULES_FILE, self.settings.exclude_patterns)
        self.classifier = NoiseClassifier(rules)

        always_watch = ()
        if not self.settings.watch_all:
            self._resolve_domain()
            always_watch = (domain_from_plist_path(self.domain_plist),)

        cache_dir = self.settings.CACHE_DIR
        if cache_dir is None:
            cache_dir = tempfile.mkdtemp(prefix="prefwatch.")
            self._temp_cache = True
        self.store = SnapshotStore(cache_dir)

        self.coordinator = DiffCoordinator(
            store=self.store,
            synthesizer=CommandSynthesizer(self._type_query(), self.settings.MDM_OUTPUT, self.home),
            classifier=self.classifier,
            retry_delays=self.settings.FLUSH_RETRY_DELAYS,
            volatile_keys=self.settings.VOLATILE_KEYS,
            always_watch=always_watch,
        )
        self.output = CommandLogService(self.settings.ONLY_CMDS, self._forwarder())
        self.coordinator.add_command_listener(self.output.emit)
        self.coordinator.add_commit_listener(self.output.record_commit)

        roots = self._roots()
        self.watcher = DirectoryWatcher(roots, self._on_change)
        self.take_baseline()

        try:
            self.watcher.start()
        except FileNotFoundError as e:
            logger.warning(f"File events unavailable ({e}), relying on polling")

        poller = PlistPoller(roots, self._on_change, path_filter=self._wants)
        self.scheduler = SchedulerService(poller, self.settings.POLL_INTERVAL)
        self.scheduler.start()

        self._running = True
        self._stopped.clear()
        logger.info(f"{self.settings.APP_NAME} {self.settings.APP_VERSION} started")

    def take_baseline(self) -> int:
        """Record the current state of every watched plist, in parallel."""
        plists = [(p, scope) for p, scope in self.watcher.scan_existing() if self._wants(p)]
        if self.domain_plist is not None and self.domain_plist.is_file() and not plists:
            plists = [(self.domain_plist, "user")]

        with ThreadPoolExecutor(max_workers=max(1, self.settings.BASELINE_WORKERS)) as pool:
            results = list(pool.map(lambda item: self.coordinator.baseline(*item), plists))

        recorded = sum(1 for r in results if r.outcome == PassOutcome.BASELINE)
        logger.info(f"Initial baseline: {recorded}/{len(plists)} plists recorded")
        return recorded

    # --- shutdown --------------------------------------------------------

    def stop(self) -> None:
        """Stop producers, wait for in-flight passes, drop the temporary cache."""
        if not self._running:
            return

        if self.scheduler:
            self.scheduler.stop()
        if self.watcher:
            self.watcher.stop()
        if self.coordinator:
            self.coordinator.close()
            logger.info(f"Session stats: {self.coordinator.get_stats()}")
        if self.store and self._temp_cache and not self.settings.KEEP_CACHE:
            self.store.clear()

        self._running = False
        self._stopped.set()
        logger.info("Session stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() has completed."""
        return self._stopped.wait(timeout)

    def is_running(self) -> bool:
        return self._running
