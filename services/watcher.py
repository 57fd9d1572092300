"""
File System Watcher Service for PrefWatch.

Uses watchdog to monitor preference directories and signal the coordinator
whenever a .plist file is created, modified, or moved into place (cfprefsd
writes to a temp file, then renames it over the plist).
"""
import os
import time
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent

logger = logging.getLogger(__name__)


def is_plist_path(path) -> bool:
    """Check if a path names a preference plist."""
    return str(path).lower().endswith(".plist")


class PreferenceEventHandler(FileSystemEventHandler):
    """
    Handles file system events for preference plists.

    Only the path is forwarded; the coordinator decides whether anything
    actually changed.
    """

    def __init__(self, on_plist_changed: Callable[[str, str], None], scope: str = "user"):
        """
        Initialize handler.

        Args:
            on_plist_changed: Callback receiving (plist path, scope)
            scope: Scope reported for every path seen by this handler
        """
        self.on_plist_changed = on_plist_changed
        self.scope = scope

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.dest_path)

    def _forward(self, path):
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not is_plist_path(path):
            return
        try:
            self.on_plist_changed(os.path.abspath(path), self.scope)
        except Exception as e:
            logger.error(f"Error handling change of {path}: {e}")


class DirectoryWatcher:
    """
    Watches one or more preference directories.

    Usage:
        watcher = DirectoryWatcher([(home_prefs, "user")], callback)
        watcher.start()
        # ... later
        watcher.stop()
    """

    def __init__(
        self,
        roots: Iterable[tuple[str, str]],
        on_plist_changed: Callable[[str, str], None],
        recursive: bool = True,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        """
        Initialize the directory watcher.

        Args:
            roots: (directory, scope) pairs to monitor
            on_plist_changed: Callback when a plist may have changed
            recursive: Whether to watch subdirectories (ByHost, containers)
            observer_factory: Creates the watchdog observer
        """
        self.roots = [(Path(path), scope) for path, scope in roots]
        self.recursive = recursive
        self.on_plist_changed = on_plist_changed
        self.observer_factory = observer_factory

        self._observer: Optional[Observer] = None
        self._running = False

    def start(self):
        """Start watching every existing root."""
        if self._running:
            logger.warning("Watcher already running")
            return

        self._observer = self.observer_factory()
        scheduled = 0
        for path, scope in self.roots:
            if not path.is_dir():
                logger.warning(f"Watch path does not exist: {path}")
                continue
            handler = PreferenceEventHandler(self.on_plist_changed, scope)
            self._observer.schedule(handler, str(path), recursive=self.recursive)
            logger.info(f"Watching {scope} preferences in: {path}")
            scheduled += 1

        if not scheduled:
            self._observer = None
            raise FileNotFoundError("None of the watch paths exist")

        self._observer.start()
        self._running = True
        logger.info("Directory watcher started")

    def stop(self):
        """Stop watching."""
        if not self._running:
            return

        logger.info("Stopping directory watcher")

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

        self._running = False
        logger.info("Directory watcher stopped")

    def is_running(self) -> bool:
        """Check if watcher is running."""
        return self._running

    def scan_existing(self) -> list[tuple[Path, str]]:
        """
        List the plists already present under the roots.
        Used at startup to take the initial baseline.
        """
        found = []
        for root, scope in self.roots:
            if not root.is_dir():
                continue
            pattern = "**/*.plist" if self.recursive else "*.plist"
            for plist in root.glob(pattern):
                if plist.is_file():
                    found.append((plist, scope))
        logger.info(f"Found {len(found)} existing plists")
        return found


# Standalone runner for testing
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    def print_change(path: str, scope: str):
        print(f"Changed ({scope}): {path}")

    watch_dir = os.environ.get("WATCH_DIR", str(Path.home() / "Library" / "Preferences"))

    print(f"Watching: {watch_dir}")
    print("Press Ctrl+C to stop")

    watcher = DirectoryWatcher([(watch_dir, "user")], print_change)
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping...")
        watcher.stop()
