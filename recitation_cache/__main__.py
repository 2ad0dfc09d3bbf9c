"""
Command-line entry point for RecitationCache.

Inspect and maintain the offline cache without the application UI.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT

Usage:
    python -m recitation_cache stats
    python -m recitation_cache verify
    python -m recitation_cache list verse
    python -m recitation_cache clear --yes
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .config.settings import Settings
from .core.cache_manager import OfflineCacheManager
from .core.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from .core.exceptions import CacheError
from .models.records import RecordKind
from .utils.formatting import format_cache_size
from .utils.logger import configure_package_logging, get_logger
from .version import __version__

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recitation-cache",
        description="Inspect and maintain the offline verse and audio cache.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", type=Path, help="Cache data directory")
    parser.add_argument("--offline", action="store_true", help="Skip the connectivity probe")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("stats", help="Show cache statistics and readiness")
    commands.add_parser("verify", help="Check totals against a full recount")

    list_cmd = commands.add_parser("list", help="List cached keys")
    list_cmd.add_argument("kind", choices=[kind.value for kind in RecordKind])

    clear_cmd = commands.add_parser("clear", help="Remove all cached content")
    clear_cmd.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    return parser


def _open_manager(settings: Settings, offline: bool) -> OfflineCacheManager:
    probe = None
    if not offline:
        probe = HttpConnectivityProbe(
            url=settings.connectivity_probe_url,
            timeout=settings.connectivity_timeout_seconds,
        )
    monitor = ConnectivityMonitor(probe=probe, interval=settings.connectivity_interval_seconds)
    monitor.check_now()
    return OfflineCacheManager.from_settings(settings, monitor=monitor)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the CLI.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    overrides = {"data_directory": args.data_dir} if args.data_dir else {}
    settings = Settings(**overrides)
    configure_package_logging(settings.log_level, settings.log_directory)

    try:
        with _open_manager(settings, args.offline) as manager:
            if args.command == "stats":
                snapshot = manager.snapshot()
                stats = snapshot.cache_stats
                print(f"Online:        {'yes' if snapshot.is_online else 'no'}")
                print(f"Offline ready: {'yes' if snapshot.is_offline_ready else 'no'}")
                print(f"Verses:        {stats.verses}")
                print(f"Audio clips:   {stats.audio}")
                print(f"Size:          {format_cache_size(stats.size)}")

            elif args.command == "verify":
                verified = manager.verify_integrity()
                print(f"OK: {verified.verses} verses, {verified.audio} audio, "
                      f"{format_cache_size(verified.size)}")

            elif args.command == "list":
                for key in manager.list_keys(RecordKind(args.kind)):
                    print(key.storage_key)

            elif args.command == "clear":
                if not args.yes:
                    answer = input("Remove all cached verses and audio? [y/N] ")
                    if answer.strip().lower() not in {"y", "yes"}:
                        print("Aborted.")
                        return 1
                removed = manager.clear()
                print(f"Removed {removed.verses} verses and {removed.audio} audio clips "
                      f"({format_cache_size(removed.size)})")

    except CacheError as e:
        logger.error(str(e))
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
