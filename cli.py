# PrefWatch v1.0.0
"""
PrefWatch CLI

Watch macOS preference changes and print the commands that reproduce them.
"""
import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from core.errors import NoiseConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(only_cmds: bool, level: str = "INFO", log_file: str = None, debug: bool = False):
    """Root logging plus the command output logger."""
    from services.syslog import configure_command_logger

    if debug:
        root_level = logging.DEBUG
    elif only_cmds:
        root_level = logging.WARNING
    else:
        root_level = getattr(logging, level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    if log_file and not only_cmds:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=root_level, format=LOG_FORMAT, handlers=handlers, force=True)
    configure_command_logger(only_cmds, log_file)


def compare_files(before_path: str, after_path: str, domain: str = None, filter_noise: bool = True) -> int:
    """Diff two plist files and print the commands turning BEFORE into AFTER."""
    from core import compare_trees, decode_snapshot, domain_from_plist_path, load_rules, NoiseClassifier, Verdict
    from core.commands import CommandSynthesizer, PlistTypeQuery
    from core.file_parser import is_byhost_path
    from services.snapshot_store import Target

    snapshots = []
    for path in (before_path, after_path):
        snapshot = decode_snapshot(Path(path).read_bytes())
        if snapshot.is_degraded:
            print(f"Cannot decode {path} as a plist or JSON dictionary", file=sys.stderr)
            return 1
        snapshots.append(snapshot)
    before, after = snapshots

    target = Target(
        identity=domain or domain_from_plist_path(after_path),
        path=Path(after_path).absolute(),
        key="compare",
        scope="other",
        by_host=is_byhost_path(after_path),
    )

    changeset = compare_trees(before.tree, after.tree)
    if changeset.is_identical:
        print("# Files are identical")
        return 0

    classifier = NoiseClassifier(load_rules()) if filter_noise else None
    commands = CommandSynthesizer(PlistTypeQuery()).synthesize(target, changeset)

    for command in commands:
        if classifier and classifier.classify(target.identity, command.text) == Verdict.NOISE:
            continue
        for line in command.lines:
            print(line)
    return 0


def watch(settings) -> int:
    """Run a watch session until SIGINT/SIGTERM."""
    from services.session import WatchSession

    session = WatchSession(settings)
    stop_requested = threading.Event()

    def _request_stop(signum, frame):
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        session.start()
    except NoiseConfigError as e:
        logger.error(f"Invalid noise configuration: {e}")
        return 2

    try:
        while not stop_requested.wait(1):
            pass
    finally:
        session.stop()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="prefwatch",
        description="Watch macOS preference changes and print reproducing commands",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # watch
    watch_parser = subparsers.add_parser("watch", help="Watch preference domains")
    watch_parser.add_argument("domain", nargs="?", default=None, help="Domain to watch (default: ALL)")
    watch_parser.add_argument("-l", "--log", help="Log file")
    watch_parser.add_argument("--no-system", action="store_true", help="Ignore /Library/Preferences")
    watch_parser.add_argument("-v", "--verbose", action="store_true", help="Show diagnostics, not only commands")
    watch_parser.add_argument("-e", "--exclude", help="Comma-separated domain globs replacing the default exclusions")
    watch_parser.add_argument("--mdm", action="store_true", help="Write user paths as /Users/$loggedInUser")
    watch_parser.add_argument("--rules", help="Noise rule file (JSON)")

    # compare
    compare_parser = subparsers.add_parser("compare", help="Compare two plist files")
    compare_parser.add_argument("before", help="Before plist")
    compare_parser.add_argument("after", help="After plist")
    compare_parser.add_argument("--domain", help="Domain name used in commands")
    compare_parser.add_argument("--all", action="store_true", help="Do not filter noisy keys")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    from config import settings

    if args.command == "compare":
        configure_logging(only_cmds=True, debug=settings.DEBUG)
        try:
            return compare_files(args.before, args.after, args.domain, filter_noise=not args.all)
        except NoiseConfigError as e:
            logger.error(f"Invalid noise configuration: {e}")
            return 2

    overrides = {}
    if args.domain:
        overrides["WATCH_DOMAIN"] = args.domain
    if args.log:
        overrides["LOG_FILE"] = args.log
    if args.no_system:
        overrides["INCLUDE_SYSTEM"] = False
    if args.verbose:
        overrides["ONLY_CMDS"] = False
    if args.exclude is not None:
        overrides["EXCLUDE_DOMAINS"] = args.exclude
    if args.mdm:
        overrides["MDM_OUTPUT"] = True
    if args.rules:
        overrides["NOISE_RULES_FILE"] = Path(args.rules)
    run_settings = settings.model_copy(update=overrides)

    configure_logging(run_settings.ONLY_CMDS, run_settings.LOG_LEVEL, run_settings.LOG_FILE, run_settings.DEBUG)
    return watch(run_settings)


if __name__ == "__main__":
    sys.exit(main())
