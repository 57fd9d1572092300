"""
Snapshot Store for PrefWatch.

Materializes the current state of a watched plist and persists the
previous state between passes. Each target owns one JSON file in the cache
directory, named after the target key. Commits are atomic: the new state is
written to a holding file, fsynced, then renamed over the previous one and
the directory is fsynced.
"""
import os
import json
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional
from dataclasses import dataclass

from core.errors import TransientReadFailure
from core.file_parser import Snapshot, decode_snapshot

logger = logging.getLogger(__name__)


def _fsync_dir(dir_path: Path) -> None:
    """Flush a directory entry after a rename, where the platform allows it."""
    try:
        dir_fd = os.open(str(dir_path), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError) as e:
        logger.warning(f"Directory fsync failed for {dir_path}: {e}")


@dataclass(frozen=True)
class Target:
    """One watched plist, registered on first observation."""
    identity: str      # defaults domain
    path: Path         # backing plist
    key: str           # stable hash of path, used for cache file names
    scope: str = "user"  # "user", "system" or "other"
    by_host: bool = False


class SnapshotStore:
    """
    Holds the previous snapshot of every target.

    Args:
        cache_dir: Directory for persisted snapshots (created if missing)
        reader: Callable returning the raw bytes of a path
    """

    def __init__(self, cache_dir, reader: Callable[[Path], bytes] = Path.read_bytes):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.reader = reader

    def _snapshot_file(self, target: Target) -> Path:
        return self.cache_dir / f"{target.key}.snapshot.json"

    def materialize(self, target: Target) -> Snapshot:
        """
        Read and decode the backing plist.

        Raises:
            TransientReadFailure: the file could not be read this time
        """
        try:
            raw = self.reader(Path(target.path))
        except OSError as e:
            raise TransientReadFailure(target.path, str(e)) from e
        return decode_snapshot(raw)

    def load_previous(self, target: Target) -> Optional[Snapshot]:
        path = self._snapshot_file(target)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable cached snapshot for {target.identity}: {e}")
            return None

        try:
            return Snapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid cached snapshot for {target.identity}: {e}")
            return None

    def commit(self, target: Target, snapshot: Snapshot) -> None:
        """
        Make snapshot the new previous state of target.

        Either the old or the new file is visible afterwards, never a partial
        one. On failure the holding file is removed and the error propagates.
        """
        final_path = self._snapshot_file(target)
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.cache_dir,
                prefix=f"{target.key}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            ) as f:
                temp_path = Path(f.name)
                json.dump(snapshot.to_dict(), f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, final_path)
            temp_path = None
            _fsync_dir(self.cache_dir)
        finally:
            if temp_path is not None:
                try:
                    temp_path.unlink()
                except OSError:
                    pass

        logger.debug(f"Committed snapshot for {target.identity} ({snapshot.decoder})")

    def discard(self, target: Target) -> None:
        """Forget the previous state of target."""
        try:
            self._snapshot_file(target).unlink()
        except FileNotFoundError:
            pass

    def clear(self) -> None:
        """Remove the whole cache directory."""
        shutil.rmtree(self.cache_dir, ignore_errors=True)
        logger.info(f"Removed snapshot cache {self.cache_dir}")
