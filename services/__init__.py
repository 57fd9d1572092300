# PrefWatch v1.0.0
"""
Services package for PrefWatch.
Contains the snapshot store, the diff coordinator, the event and interval
producers, command output and the session that wires them together.
"""
from services.snapshot_store import SnapshotStore, Target
from services.coordinator import DiffCoordinator, CoordinatorCache, PassOutcome, PassResult
from services.watcher import DirectoryWatcher, PreferenceEventHandler
from services.scheduler import SchedulerService, PlistPoller
from services.syslog import CommandLogService, SyslogForwarder

__all__ = [
    "SnapshotStore",
    "Target",
    "DiffCoordinator",
    "CoordinatorCache",
    "PassOutcome",
    "PassResult",
    "DirectoryWatcher",
    "PreferenceEventHandler",
    "SchedulerService",
    "PlistPoller",
    "CommandLogService",
    "SyslogForwarder"
]
