"""
Diff Coordinator for PrefWatch.

Receives "maybe changed" signals from the watcher and the poller and runs at
most one diff pass per target at a time:

    Idle -> Locked -> Diffing -> Committing -> Idle

A signal that finds its target locked is dropped. The pass holding the lock,
or a later signal, will observe the latest state anyway.
"""
import time
import hashlib
import logging
import threading
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional, Sequence

from core.comparison import ChangeSet, compare_trees
from core.commands import Command, CommandSynthesizer, Verdict
from core.errors import TransientReadFailure
from core.file_parser import Snapshot, domain_from_plist_path, is_byhost_path
from core.fingerprint import DEFAULT_VOLATILE_KEYS
from core.noise import NoiseClassifier
from core.retry import retry_until
from services.snapshot_store import SnapshotStore, Target

logger = logging.getLogger(__name__)


class TargetState(str, Enum):
    IDLE = "idle"
    LOCKED = "locked"
    DIFFING = "diffing"
    COMMITTING = "committing"


class PassOutcome(str, Enum):
    COMMITTED = "committed"
    BASELINE = "baseline"
    UNCHANGED = "unchanged"
    SKIPPED_LOCKED = "skipped_locked"
    READ_FAILED = "read_failed"
    MALFORMED = "malformed"
    EXCLUDED = "excluded"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class PassResult:
    """What one signal turned into."""
    target: Optional[Target]
    outcome: PassOutcome
    commands: list[Command] = field(default_factory=list)
    changeset: Optional[ChangeSet] = None


def _default_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


class CoordinatorCache:
    """
    Session caches owned by one coordinator.

    - target keys (hash of the plist path)
    - exclusion results per identity
    - notes already shown this session
    - time of the last completed pass per identity

    Args:
        hash_fn: Maps a path string to a stable key
        clock: Time source for pass bookkeeping
    """

    def __init__(self, hash_fn: Callable[[str], str] = _default_hash, clock: Callable[[], float] = time.monotonic):
        self.hash_fn = hash_fn
        self.clock = clock
        self._lock = threading.Lock()
        self._keys: dict[str, str] = {}
        self._exclusions: dict[str, bool] = {}
        self._notes: set[tuple[str, str]] = set()
        self._last_pass: dict[str, float] = {}

    def target_key(self, path: str) -> str:
        with self._lock:
            key = self._keys.get(path)
            if key is None:
                key = self._keys[path] = self.hash_fn(path)
            return key

    def is_excluded(self, identity: str, predicate: Callable[[str], bool]) -> bool:
        with self._lock:
            if identity in self._exclusions:
                return self._exclusions[identity]
        result = predicate(identity)
        with self._lock:
            self._exclusions[identity] = result
        return result

    def note_once(self, identity: str, note: str) -> bool:
        """True the first time a note is seen for an identity."""
        with self._lock:
            if (identity, note) in self._notes:
                return False
            self._notes.add((identity, note))
            return True

    def mark_pass(self, identity: str) -> None:
        with self._lock:
            self._last_pass[identity] = self.clock()

    def last_pass(self, identity: str) -> Optional[float]:
        with self._lock:
            return self._last_pass.get(identity)


class DiffCoordinator:
    """
    Serializes diff passes per target and drives the pipeline:
    materialize -> compare -> synthesize -> classify -> emit -> commit.

    Args:
        store: Snapshot store holding previous states
        synthesizer: Turns ChangeSets into commands
        classifier: Noise classifier; None keeps every command
        retry_delays: Re-read schedule when a signal finds no textual change
        sleep: Sleep function used between re-reads
        volatile_keys: Keys ignored when fingerprinting array elements
        cache: Session cache object
        always_watch: Identities watched even when excluded by the rules
    """

    def __init__(
        self,
        store: SnapshotStore,
        synthesizer: CommandSynthesizer,
        classifier: Optional[NoiseClassifier] = None,
        retry_delays: Sequence[float] = (0.5, 1.5),
        sleep: Callable[[float], None] = time.sleep,
        volatile_keys: Optional[Iterable[str]] = None,
        cache: Optional[CoordinatorCache] = None,
        always_watch: Iterable[str] = (),
    ):
        self.store = store
        self.synthesizer = synthesizer
        self.classifier = classifier
        self.retry_delays = tuple(retry_delays)
        self.sleep = sleep
        self.volatile_keys = frozenset(volatile_keys) if volatile_keys is not None else DEFAULT_VOLATILE_KEYS
        self.cache = cache or CoordinatorCache()
        self.always_watch = set(always_watch)

        self._command_listeners: list[Callable[[Command], None]] = []
        self._commit_listeners: list[Callable[[Target], None]] = []

        self._registry_lock = threading.Lock()
        self._targets: dict[str, Target] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._states: dict[str, TargetState] = {}

        self._idle = threading.Condition()
        self._inflight = 0
        self._closed = False

        self._stats = {outcome.value: 0 for outcome in PassOutcome}
        self._stats["commands"] = 0
        self._stats["noise"] = 0
        self._stats_lock = threading.Lock()

    # --- listeners -------------------------------------------------------

    def add_command_listener(self, listener: Callable[[Command], None]) -> None:
        self._command_listeners.append(listener)

    def add_commit_listener(self, listener: Callable[[Target], None]) -> None:
        self._commit_listeners.append(listener)

    def _notify(self, listeners, payload, what: str) -> None:
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"{what} listener failed: {e}")

    # --- registry --------------------------------------------------------

    def register(self, path, scope: str = "user") -> Target:
        """Return the target for a plist path, creating it on first sight."""
        path = Path(path)
        name = str(path)
        with self._registry_lock:
            target = self._targets.get(name)
            if target is None:
                target = Target(
                    identity=domain_from_plist_path(path),
                    path=path,
                    key=self.cache.target_key(name),
                    scope=scope,
                    by_host=is_byhost_path(path),
                )
                self._targets[name] = target
                self._locks[target.key] = threading.Lock()
                self._states[target.key] = TargetState.IDLE
                logger.debug(f"Registered target {target.identity} ({scope}) at {path}")
            return target

    def state_of(self, path) -> TargetState:
        target = self.register(path)
        return self._states[target.key]

    def _set_state(self, target: Target, state: TargetState) -> None:
        self._states[target.key] = state

    def is_excluded(self, target: Target) -> bool:
        if self.classifier is None or target.identity in self.always_watch:
            return False
        return self.cache.is_excluded(target.identity, self.classifier.is_excluded_target)

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount

    def get_stats(self) -> dict:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["targets"] = len(self._targets)
        stats["closed"] = self._closed
        return stats

    # --- passes ----------------------------------------------------------

    def signal(self, path, scope: str = "user") -> PassResult:
        """
        Handle a "maybe changed" signal for a plist path.

        Never blocks on another pass: if the target is already locked the
        signal is dropped and SKIPPED_LOCKED is returned.
        """
        if self._closed:
            return PassResult(None, PassOutcome.CLOSED)

        target = self.register(path, scope)
        if self.is_excluded(target):
            self._count(PassOutcome.EXCLUDED.value)
            return PassResult(target, PassOutcome.EXCLUDED)

        return self._locked_pass(target, self._run_pass, blocking=False)

    def baseline(self, path, scope: str = "user") -> PassResult:
        """Record the current state of a plist without emitting anything."""
        if self._closed:
            return PassResult(None, PassOutcome.CLOSED)

        target = self.register(path, scope)
        if self.is_excluded(target):
            return PassResult(target, PassOutcome.EXCLUDED)

        return self._locked_pass(target, self._run_baseline, blocking=True)

    def _locked_pass(self, target: Target, body: Callable[[Target], PassResult], blocking: bool) -> PassResult:
        lock = self._locks[target.key]
        if not lock.acquire(blocking=blocking):
            self._count(PassOutcome.SKIPPED_LOCKED.value)
            logger.debug(f"{target.identity}: pass already running, signal dropped")
            return PassResult(target, PassOutcome.SKIPPED_LOCKED)

        try:
            with self._idle:
                if self._closed:
                    return PassResult(target, PassOutcome.CLOSED)
                self._inflight += 1

            try:
                self._set_state(target, TargetState.LOCKED)
                result = body(target)
            except Exception as e:
                logger.exception(f"Diff pass failed for {target.identity}: {e}")
                result = PassResult(target, PassOutcome.FAILED)
            finally:
                self._set_state(target, TargetState.IDLE)
                with self._idle:
                    self._inflight -= 1
                    self._idle.notify_all()
        finally:
            lock.release()

        self._count(result.outcome.value)
        self.cache.mark_pass(target.identity)
        return result

    def _materialize(self, target: Target) -> Optional[Snapshot]:
        """Read the target; None when unreadable or malformed."""
        try:
            snapshot = self.store.materialize(target)
        except TransientReadFailure as e:
            logger.debug(f"{target.identity}: {e}")
            return None
        return None if snapshot.is_degraded else snapshot

    def _commit(self, target: Target, snapshot: Snapshot) -> None:
        self._set_state(target, TargetState.COMMITTING)
        self.store.commit(target, snapshot)
        self._notify(self._commit_listeners, target, "Commit")

    def _run_baseline(self, target: Target) -> PassResult:
        try:
            current = self.store.materialize(target)
        except TransientReadFailure as e:
            logger.debug(f"{target.identity}: baseline skipped, {e}")
            return PassResult(target, PassOutcome.READ_FAILED)
        if current.is_degraded:
            return PassResult(target, PassOutcome.MALFORMED)
        self._commit(target, current)
        return PassResult(target, PassOutcome.BASELINE)

    def _run_pass(self, target: Target) -> PassResult:
        try:
            current = self.store.materialize(target)
        except TransientReadFailure as e:
            logger.debug(f"{target.identity}: pass skipped, {e}")
            return PassResult(target, PassOutcome.READ_FAILED)

        if current.is_degraded:
            logger.debug(f"{target.identity}: undecodable plist, pass skipped")
            return PassResult(target, PassOutcome.MALFORMED)

        previous = self.store.load_previous(target)
        if previous is None:
            self._commit(target, current)
            logger.info(f"{target.identity}: first snapshot recorded")
            return PassResult(target, PassOutcome.BASELINE)

        if current.text == previous.text:
            # cfprefsd may not have flushed yet
            reread = retry_until(
                lambda: self._materialize(target),
                accept=lambda snap: snap is not None and snap.text != previous.text,
                delays=self.retry_delays,
                sleep=self.sleep,
                immediate=False,
            )
            if reread is None or reread.text == previous.text:
                return PassResult(target, PassOutcome.UNCHANGED)
            current = reread

        self._set_state(target, TargetState.DIFFING)
        changeset = compare_trees(previous.tree, current.tree, self.volatile_keys)
        for move in changeset.moves:
            logger.debug(f"{target.identity}: {move.display_path} moved from index {move.old_index}")

        commands = self._classify(target, self.synthesizer.synthesize(target, changeset))
        for command in commands:
            self._notify(self._command_listeners, command, "Command")
        self._count("commands", len(commands))

        self._commit(target, current)
        logger.debug(
            f"{target.identity}: {changeset.change_count} changes "
            f"({len(changeset.additions)} added, {len(changeset.deletions)} removed), "
            f"{len(changeset.moves)} moves, {len(commands)} commands"
        )
        return PassResult(target, PassOutcome.COMMITTED, commands, changeset)

    def _classify(self, target: Target, commands: list[Command]) -> list[Command]:
        """Drop noise and attach first-seen contextual notes."""
        if self.classifier is None:
            return [replace(c, verdict=Verdict.INTERESTING) for c in commands]

        kept = []
        for command in commands:
            verdict = self.classifier.classify(target.identity, command.text)
            if verdict == Verdict.NOISE:
                self._count("noise")
                logger.debug(f"{target.identity}: noise suppressed: {command.text}")
                continue

            annotation = command.annotation
            note = self.classifier.notes_for(target.identity, str(command.path[0]))
            if note and self.cache.note_once(target.identity, note):
                annotation = (f"# NOTE: {note}",) + annotation
            kept.append(replace(command, verdict=verdict, annotation=annotation))
        return kept

    # --- shutdown --------------------------------------------------------

    def close(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting signals and wait for in-flight passes to commit.

        Returns:
            True if every pass finished within timeout
        """
        with self._idle:
            self._closed = True
            finished = self._idle.wait_for(lambda: self._inflight == 0, timeout=timeout)
        logger.info(f"Coordinator closed ({'idle' if finished else 'passes still running'})")
        return finished
