"""
rebrute - Command Line Entry Point
==================================

Runs one reconstruction search from a JSON job file or from flags.

Exit codes: 0 match found, 1 error or no match, 130 cancelled (Ctrl+C).
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from . import __version__
from .core.errors import ConfigurationError, RebruteError
from .core.options import RecoveredMetadata, SearchOptions, SearchPolicy
from .core.orchestrator import (
    CompletionReason,
    LogChannel,
    SearchOrchestrator,
    SearchProgress,
    SearchStatus,
)
from .core.executor import CandidateExecutor
from .core.switches import DICTIONARY_SIZES, SwitchSelection, VolumeUnit
from .core.verification import HashType, VerificationTarget
from .utils.config import CONFIG_DIR, Config, ensure_directories, load_config

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def setup_logging(verbose: bool = False) -> None:
    """Configure logging: full log file plus warnings (or everything with -v) on stderr."""
    log_dir = CONFIG_DIR / "logs"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers: List[logging.Handler] = [console]

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            log_dir / "rebrute.log",
            encoding='utf-8',
            mode='a'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except OSError as e:
        print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=handlers
    )


def _parse_checksum(value: str) -> Tuple[str, str]:
    """Parse "release.rar:deadbeef" or a bare checksum."""
    if ":" in value:
        name, checksum = value.rsplit(":", 1)
        return name, checksum
    return "", value


def build_argparser() -> argparse.ArgumentParser:
    """Build command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="rebrute",
        description="Reconstruct the exact RAR parameters of a published archive",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""
EXAMPLES:
  # Run a prepared job file:
  %(prog)s --job job.json

  # Search m3/m5 with RAR 3.x and 4.x for a single-volume archive:
  %(prog)s --installations C:/rar --release ./release --output ./out \\
           --crc32 release.rar:1a2b3c4d -m 3 -m 5 --versions 3,4

  # Split archive in 15,000,000 byte volumes, keep every candidate:
  %(prog)s ... --volume 15000 kb --continue --keep-duplicates
        """
    )

    parser.add_argument("--job", type=Path, help="JSON job file (other search flags are ignored)")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.rebrute/config.json)")
    parser.add_argument("--installations", type=Path, help="Directory holding one folder per compressor build")
    parser.add_argument("--release", type=Path, help="Directory with the original input files")
    parser.add_argument("--output", type=Path, help="Directory receiving candidate archives")
    parser.add_argument("--archive-name", default="", help="Name of produced archives (default: first original name)")

    hashes = parser.add_mutually_exclusive_group()
    hashes.add_argument("--crc32", action="append", default=[], metavar="[NAME:]CRC",
                        help="Expected CRC32 of a volume (repeatable)")
    hashes.add_argument("--sha1", action="append", default=[], metavar="[NAME:]SHA1",
                        help="Expected SHA1 of a volume (repeatable)")

    parser.add_argument("--versions", default="",
                        help="Comma separated major versions to search, e.g. 3,4,5")
    parser.add_argument("-m", dest="levels", action="append", type=int, choices=range(6),
                        help="Compression level to try (repeatable)")
    parser.add_argument("--ma", dest="formats", action="append", type=int, choices=(4, 5),
                        help="Archive format switch -ma4 / -ma5 to try (repeatable)")
    parser.add_argument("--md", dest="dictionaries", action="append", choices=list(DICTIONARY_SIZES),
                        help="Dictionary size to try (repeatable)")
    parser.add_argument("--mt", nargs=2, type=int, metavar=("START", "END"),
                        help="Thread count range to try")
    parser.add_argument("--volume", nargs=2, metavar=("SIZE", "UNIT"),
                        help=f"Volume size, unit one of: {', '.join(u.value for u in VolumeUnit)}")
    parser.add_argument("--vn", action="store_true", help="Also use old style volume naming (-vn)")
    parser.add_argument("--ai", action="store_true", help="Try with and without -ai")
    parser.add_argument("--no-recurse", action="store_true", help="Do not pass -r")
    parser.add_argument("--ds", action="store_true", help="Pass -ds")
    parser.add_argument("--non-solid", action="store_true", help="Pass -s-")

    parser.add_argument("--continue", dest="keep_going", action="store_true",
                        help="Keep searching after a match")
    parser.add_argument("--keep-duplicates", action="store_true",
                        help="Keep output whose checksum was already produced")
    parser.add_argument("--delete-non-matching", action="store_true",
                        help="Delete every non-matching candidate archive")
    parser.add_argument("--complete-all-volumes", action="store_true",
                        help="Produce every volume once the first one matches")
    parser.add_argument("--rename", action="store_true",
                        help="Rename a single match to the original volume names")
    parser.add_argument("--patch-headers", action="store_true",
                        help="Patch recovered header fields before verification")
    parser.add_argument("--metadata", type=Path, help="JSON file with recovered metadata")

    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser


def options_from_args(args: argparse.Namespace, config: Config) -> SearchOptions:
    """
    Build SearchOptions from flags, with config values as defaults.

    Raises:
        ConfigurationError: If a required directory is missing
        ValueError: If a checksum or value is malformed
    """
    if args.job:
        with open(args.job, 'r', encoding='utf-8') as f:
            return SearchOptions.from_dict(json.load(f))

    installations = args.installations or (Path(config.tools.installations_dir) if config.tools.installations_dir else None)
    output = args.output or Path(config.tools.output_dir)
    if installations is None:
        raise ConfigurationError("--installations is required (or tools.installations_dir in the config)")
    if args.release is None:
        raise ConfigurationError("--release is required")

    hash_type = HashType.SHA1 if args.sha1 else HashType.CRC32
    target = VerificationTarget.from_pairs(
        [_parse_checksum(v) for v in (args.sha1 or args.crc32)], hash_type
    )

    volume_size = None
    volume_unit = VolumeUnit.KB
    if args.volume:
        volume_size = int(args.volume[0])
        volume_unit = VolumeUnit(args.volume[1].lower())

    switches = SwitchSelection(
        compression_levels=args.levels or list(config.search.compression_levels),
        archive_formats=args.formats or [],
        dictionary_sizes=args.dictionaries or list(config.search.dictionary_sizes),
        toggle_ignore_attributes=args.ai,
        recurse=not args.no_recurse,
        no_sort=args.ds,
        disable_solid=args.non_solid,
        threads=tuple(args.mt) if args.mt else None,
        volume_size=volume_size,
        volume_unit=volume_unit,
        old_volume_naming=args.vn,
    )

    defaults = config.search
    policy = SearchPolicy(
        stop_on_first_match=defaults.stop_on_first_match and not args.keep_going,
        delete_duplicate_crc_files=defaults.delete_duplicate_crc_files and not args.keep_duplicates,
        delete_rar_files=defaults.delete_rar_files or args.delete_non_matching,
        complete_all_volumes=defaults.complete_all_volumes or args.complete_all_volumes,
        rename_to_original=defaults.rename_to_original or args.rename,
        header_patching=defaults.header_patching or args.patch_headers,
    )

    metadata = RecoveredMetadata()
    if args.metadata:
        with open(args.metadata, 'r', encoding='utf-8') as f:
            metadata = RecoveredMetadata.from_dict(json.load(f))

    majors = config.versions.enabled_majors
    if args.versions:
        majors = [int(part) for part in args.versions.split(",") if part.strip()]

    return SearchOptions(
        installations_dir=installations,
        release_dir=args.release,
        output_dir=output,
        target=target,
        switches=switches,
        policy=policy,
        metadata=metadata,
        enabled_majors=tuple(majors),
        archive_name=args.archive_name,
    )


class ConsoleReporter:
    """Prints progress on one line and channel logs above it."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout
        self._last_percent = -1

    def on_progress(self, progress: SearchProgress) -> None:
        percent = int(progress.percent)
        if percent == self._last_percent:
            return
        self._last_percent = percent
        self.stream.write(
            f"\r[{percent:3d}%] {progress.version_label} "
            f"{progress.candidates_tried}/{progress.candidates_total}"
        )
        self.stream.flush()

    def on_log(self, channel: LogChannel, message: str) -> None:
        self.stream.write(f"\r[{channel.value}] {message}\n")
        self.stream.flush()

    def on_status_changed(self, status: SearchStatus, reason: Optional[CompletionReason]) -> None:
        if status is SearchStatus.COMPLETED:
            self.stream.write(f"\nFinished: {reason.value if reason else 'unknown'}\n")
            self.stream.flush()


def main(argv: Optional[List[str]] = None) -> int:
    """Main program entry point."""
    parser = build_argparser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    logger.info(f"rebrute {__version__} starting")

    config = load_config(args.config)
    for problem in config.validate():
        logger.warning(f"Config: {problem}")

    try:
        ensure_directories(config)
        options = options_from_args(args, config)
    except (RebruteError, OSError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    cancel_event = threading.Event()

    def _on_sigint(signum, frame):
        print("\nCancelling...", file=sys.stderr)
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)

    reporter = ConsoleReporter()
    orchestrator = SearchOrchestrator(
        options,
        on_progress=reporter.on_progress,
        on_status_changed=reporter.on_status_changed,
        on_log=reporter.on_log,
        executor=CandidateExecutor(
            timeout=config.process.timeout_seconds,
            poll_interval=config.process.poll_interval_ms / 1000.0,
        ),
        cancel_event=cancel_event,
        probe_versions=config.versions.probe_versions,
    )

    try:
        result = orchestrator.run()
    finally:
        signal.signal(signal.SIGINT, previous)

    for match in result.matches:
        print(f"MATCH [{match.installation_label}] {match.arguments}")
        for volume in match.volumes:
            print(f"  {volume}")

    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)

    if result.reason is CompletionReason.SUCCESS:
        return EXIT_OK
    if result.reason is CompletionReason.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
