"""
Scheduler Service for PrefWatch.

File system events are not always delivered for plists rewritten by
cfprefsd. An interval job rescans the preference directories and signals
every plist whose modification time moved since the previous scan.
"""
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class PlistPoller:
    """
    Detects plists modified since the last scan.

    The first scan only records modification times; nothing is signalled.
    A callback returning False leaves the old time in place so the next
    scan signals that plist again.
    """

    def __init__(
        self,
        roots: Iterable[tuple[str, str]],
        on_plist_changed: Callable[[str, str], Optional[bool]],
        recursive: bool = True,
        path_filter: Optional[Callable[[Path], bool]] = None,
    ):
        self.roots = [(Path(path), scope) for path, scope in roots]
        self.on_plist_changed = on_plist_changed
        self.recursive = recursive
        self.path_filter = path_filter
        self._mtimes: dict[str, float] = {}
        self._primed = False
        self.last_scan_result: Optional[dict] = None

    def _scan(self) -> dict[str, tuple[float, str]]:
        seen = {}
        pattern = "**/*.plist" if self.recursive else "*.plist"
        for root, scope in self.roots:
            if not root.is_dir():
                continue
            for plist in root.glob(pattern):
                if self.path_filter and not self.path_filter(plist):
                    continue
                try:
                    seen[str(plist)] = (os.stat(plist).st_mtime, scope)
                except OSError:
                    continue
        return seen

    def poll_once(self) -> list[str]:
        """
        Scan once and signal changed plists.

        Returns:
            Paths that were signalled
        """
        seen = self._scan()
        changed = []
        unsettled = {}

        if self._primed:
            for path, (mtime, scope) in seen.items():
                if self._mtimes.get(path) != mtime:
                    changed.append(path)
                    try:
                        settled = self.on_plist_changed(path, scope)
                    except Exception as e:
                        logger.error(f"Error handling change of {path}: {e}")
                        continue
                    if settled is False:
                        unsettled[path] = self._mtimes.get(path)

        self._mtimes = {path: mtime for path, (mtime, _scope) in seen.items()}
        for path, mtime in unsettled.items():
            if mtime is None:
                del self._mtimes[path]
            else:
                self._mtimes[path] = mtime
        self._primed = True
        self.last_scan_result = {"files_seen": len(seen), "files_changed": len(changed)}
        if changed:
            logger.debug(f"Poll found {len(changed)} modified plists")
        return changed


class SchedulerService:
    """
    Runs the plist poller on a fixed interval.
    """

    def __init__(self, poller: PlistPoller, interval_seconds: float = 5.0):
        """
        Initialize the scheduler service.

        Args:
            poller: Poller to run
            interval_seconds: Seconds between scans
        """
        self.poller = poller
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler()
        self._running = False

    def start(self):
        """Start the scheduler."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        # Prime mtimes so the first tick only reports real changes
        self.poller.poll_once()

        self.scheduler.add_job(
            self._run_poll,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="plist_poll",
            name="Preference plist poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler service started (poll every {self.interval_seconds}s)")

    def _run_poll(self):
        """Run poll job (called by scheduler)."""
        try:
            self.poller.poll_once()
        except Exception as e:
            logger.error(f"Scheduled plist poll failed: {e}")

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=True)
        self._running = False
        logger.info("Scheduler service stopped")

    def get_scheduled_jobs(self) -> list:
        """Get list of scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None
            })
        return jobs

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
