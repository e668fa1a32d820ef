from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fssync import __version__
from fssync.ignore import EDITOR_IGNORE_PATTERNS
from fssync.sync import DEFAULT_DELAY_SEC, RETRY_DELAY_SEC

APP_DIR = Path.home() / ".fssync"
CONFIG_PATH = APP_DIR / "config.json"


@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    destination_dir: Path
    whitelist_file: Optional[Path] = None
    delay_sec: float = DEFAULT_DELAY_SEC
    retry_delay_sec: float = RETRY_DELAY_SEC
    rsync: str = "rsync"
    ignore_patterns: list[str] = field(default_factory=list)
    log_dir: Optional[Path] = None
    verbose: bool = False


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="fssync",
        description="Watch a folder and mirror whitelisted changes into another folder with rsync.",
    )
    p.add_argument("--source", "-s", type=str, default=None, help="Folder to watch (source).")
    p.add_argument("--destination", "-d", type=str, default=None, help="Folder to mirror into (destination).")
    p.add_argument(
        "--whitelist",
        "-w",
        type=str,
        default=None,
        help="File with one relative path per line; only these paths and their children are synced. "
        "Without it every change triggers a sync.",
    )
    p.add_argument("--delay", type=float, default=None, help=f"Seconds of quiet before syncing (default {DEFAULT_DELAY_SEC:g}).")
    p.add_argument(
        "--retry-delay",
        type=float,
        default=None,
        help=f"Seconds to wait when a sync is still running (default {RETRY_DELAY_SEC:g}).",
    )
    p.add_argument("--rsync", type=str, default=None, help="rsync executable (default: rsync from PATH).")
    p.add_argument(
        "--ignore",
        action="append",
        default=None,
        metavar="PATTERN",
        help="gitignore-style pattern whose changes never trigger a sync (repeatable).",
    )
    p.add_argument(
        "--default-ignores",
        action="store_true",
        default=None,
        help="Also ignore the built-in editor swap/temp file patterns.",
    )
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--config", type=str, default=None, help=f"JSON config file (default {CONFIG_PATH}).")
    p.add_argument("--verbose", "-v", action="store_true", help="Log every inotify event and watch change.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def load_config_file(path: Optional[Path] = None) -> dict:
    """Read the JSON config. A missing default file is fine; a named file must exist and parse."""
    if path is None:
        if not CONFIG_PATH.exists():
            return {}
        path = CONFIG_PATH

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(source: Path, destination: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    destination = destination.expanduser().resolve()

    if not source.exists() or not source.is_dir():
        raise ValueError(f"Source folder does not exist or is not a folder: {source}")
    if source == destination:
        raise ValueError("Source and destination folders must be different.")
    if _is_subpath(destination, source):
        raise ValueError("Destination folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, destination):
        raise ValueError("Source folder must NOT be inside destination folder (--delete would remove it).")

    destination.mkdir(parents=True, exist_ok=True)
    return source, destination


def _non_negative(name: str, value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number: {value!r}") from None
    if value < 0:
        raise ValueError(f"{name} must not be negative: {value}")
    return value


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    saved = load_config_file(Path(args.config).expanduser() if args.config else None)

    source = args.source or saved.get("source")
    destination = args.destination or saved.get("destination")
    if not source:
        raise ValueError("Source folder is required (--source or 'source' in config).")
    if not destination:
        raise ValueError("Destination folder is required (--destination or 'destination' in config).")

    whitelist = args.whitelist or saved.get("whitelist")
    log_dir = args.log_dir or saved.get("log_dir")

    delay = args.delay if args.delay is not None else saved.get("delay", DEFAULT_DELAY_SEC)
    retry_delay = args.retry_delay if args.retry_delay is not None else saved.get("retry_delay", RETRY_DELAY_SEC)

    default_ignores = args.default_ignores if args.default_ignores is not None else saved.get("default_ignores", False)
    patterns = list(EDITOR_IGNORE_PATTERNS) if default_ignores else []
    patterns.extend(saved.get("ignore", []))
    patterns.extend(args.ignore or [])

    return AppConfig(
        source_dir=Path(source),
        destination_dir=Path(destination),
        whitelist_file=Path(whitelist).expanduser() if whitelist else None,
        delay_sec=_non_negative("delay", delay),
        retry_delay_sec=_non_negative("retry_delay", retry_delay),
        rsync=args.rsync or saved.get("rsync", "rsync"),
        ignore_patterns=patterns,
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        verbose=bool(args.verbose),
    )
