from __future__ import annotations

import asyncio
import errno
import logging
import signal
import sys
from typing import Optional

from inotify_simple import flags

from fssync import __version__
from fssync.config import AppConfig, build_effective_config, parse_args, validate_paths
from fssync.ignore import IgnoreMatcher
from fssync.logs import get_logger, log_action, setup_logger
from fssync.sync import SyncScheduler
from fssync.watch import DirectoryWatcher, WatchError, mask_names
from fssync.whitelist import PathWhitelist

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOTHING_TO_WATCH = errno.ENOENT


class ChangeFilter:
    """Watcher callback: drops ignored and non-whitelisted paths, forwards the rest to the scheduler."""

    def __init__(
        self,
        scheduler: SyncScheduler,
        whitelist: Optional[PathWhitelist] = None,
        ignore: Optional[IgnoreMatcher] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.scheduler = scheduler
        self.whitelist = whitelist
        self.ignore = ignore
        self.logger = logger or get_logger("daemon")

    def accepts(self, mask: int, rel_path: str) -> bool:
        if self.ignore and self.ignore.is_ignored(rel_path, is_dir=bool(mask & flags.ISDIR)):
            return False
        if self.whitelist is not None and not self.whitelist.check(rel_path):
            return False
        return True

    def on_change(self, mask: int, rel_path: str) -> None:
        if not self.accepts(mask, rel_path):
            return
        log_action(self.logger, "EVENT", f"mask={mask:08X} ({mask_names(mask)}) {rel_path}", level=logging.DEBUG)
        self.scheduler.process_entry(mask, rel_path)

    __call__ = on_change


class Daemon:
    """Owns the event loop and everything registered on it."""

    def __init__(self, cfg: AppConfig, loop: asyncio.AbstractEventLoop, logger: logging.Logger):
        self.cfg = cfg
        self.loop = loop
        self.logger = logger
        self.watcher: Optional[DirectoryWatcher] = None
        self.scheduler: Optional[SyncScheduler] = None
        self._exit: asyncio.Future = loop.create_future()

    def stop(self, code: int) -> None:
        if not self._exit.done():
            self._exit.set_result(code)

    def _on_signal(self, signum: int) -> None:
        self.logger.info("Signal %s received, terminating...", signal.Signals(signum).name)
        self.stop(EXIT_SUCCESS)

    def _on_exhausted(self) -> None:
        self.stop(EXIT_NOTHING_TO_WATCH)

    def setup(self) -> None:
        """Build the components. Raises on any startup failure."""
        cfg = self.cfg
        source, destination = validate_paths(cfg.source_dir, cfg.destination_dir)
        self.logger.info("Source     : %s", source)
        self.logger.info("Destination: %s", destination)

        whitelist = None
        if cfg.whitelist_file is not None:
            whitelist = PathWhitelist.load(cfg.whitelist_file)
            self.logger.info("Whitelist  : %s (%d entries)", cfg.whitelist_file, len(whitelist))
        else:
            self.logger.info("Whitelist  : none, every change triggers a sync")

        self.scheduler = SyncScheduler(
            self.loop,
            source,
            destination,
            delay=cfg.delay_sec,
            rsync=cfg.rsync,
            retry_delay=cfg.retry_delay_sec,
        )
        if cfg.whitelist_file is not None:
            self.scheduler.set_whitelist_file(cfg.whitelist_file.expanduser().resolve())

        change_filter = ChangeFilter(self.scheduler, whitelist, IgnoreMatcher(cfg.ignore_patterns))

        for signum in (signal.SIGINT, signal.SIGTERM):
            self.loop.add_signal_handler(signum, self._on_signal, signum)
        self.loop.add_signal_handler(signal.SIGCHLD, self.scheduler.handle_sigchld)

        self.watcher = DirectoryWatcher.create(
            self.loop,
            str(source),
            change_filter,
            on_exhausted=self._on_exhausted,
        )
        self.logger.info("Watching %d directories", len(self.watcher))
        self.scheduler.start()

    async def wait(self) -> int:
        return await self._exit

    def close(self) -> None:
        if self.watcher is not None:
            self.watcher.close()
        if self.scheduler is not None:
            self.scheduler.close()
        for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGCHLD):
            self.loop.remove_signal_handler(signum)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except ValueError as e:
        logger = setup_logger(None)
        logger.error("Config error: %s", e)
        return EXIT_FAILURE

    logger = setup_logger(cfg.log_dir, verbose=cfg.verbose)
    logger.info("fssync ver %s", __version__)

    loop = asyncio.new_event_loop()
    daemon = Daemon(cfg, loop, logger)
    try:
        try:
            daemon.setup()
        except ValueError as e:
            logger.error("Config error: %s", e)
            return EXIT_FAILURE
        except (WatchError, OSError) as e:
            logger.error("Startup failed: %s", e)
            return EXIT_FAILURE

        logger.info("Starting watcher... (Ctrl+C to stop)")
        rc = loop.run_until_complete(daemon.wait())
        logger.info("Bye! (exit code %d)", rc)
        return rc
    finally:
        daemon.close()
        loop.close()


if __name__ == "__main__":
    raise SystemExit(main())
