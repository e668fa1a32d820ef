from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Iterator, Optional

from inotify_simple import INotify, flags

from fssync.logs import get_logger, log_action

WATCH_MASK = (
    flags.CLOSE_WRITE
    | flags.ATTRIB
    | flags.CREATE
    | flags.DELETE
    | flags.MOVED_FROM
    | flags.MOVED_TO
    | flags.MOVE_SELF
    | flags.DELETE_SELF
)

ChangeCallback = Callable[[int, str], None]


class WatchError(RuntimeError):
    pass


def mask_names(mask: int) -> str:
    return "|".join(f.name for f in flags.from_mask(mask)) or "0"


class DirectoryWatcher:
    """
    Recursive inotify watch over a directory tree, driven by an asyncio loop.

    Every directory under `root` holds one watch descriptor; `_wds` maps
    descriptor -> path and `_paths` maps back, and both are kept in step by
    `_bind`/`_unbind`. Events for descriptors no longer in the map are dropped.

    `on_change(mask, rel_path)` is called for each event on a tracked
    directory, with the path relative to `root` ("." for the root itself).
    `on_exhausted()` is called when no tracked directory is left.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        inotify: INotify,
        root: str,
        on_change: Optional[ChangeCallback] = None,
        logger: Optional[logging.Logger] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
    ):
        self.loop = loop
        self.root = os.path.abspath(root)
        self.on_change = on_change
        self.on_exhausted = on_exhausted
        self.logger = logger or get_logger("watch")
        self._inotify: Optional[INotify] = inotify
        self._wds: dict[int, str] = {}
        self._paths: dict[str, int] = {}
        self._rescan_handle: Optional[asyncio.Handle] = None
        self._check_handle: Optional[asyncio.Handle] = None

    @classmethod
    def create(
        cls,
        loop: asyncio.AbstractEventLoop,
        root: str,
        on_change: Optional[ChangeCallback] = None,
        logger: Optional[logging.Logger] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
    ) -> "DirectoryWatcher":
        """Open the inotify channel, watch `root` recursively and hook the fd into `loop`."""
        try:
            inotify = INotify(nonblocking=True)
        except OSError as e:
            raise WatchError(f"inotify_init1() failed, {e}") from e

        watcher = cls(loop, inotify, root, on_change, logger=logger, on_exhausted=on_exhausted)
        try:
            watcher.add_watch(watcher.root)
            loop.add_reader(inotify.fileno(), watcher._on_readable)
        except BaseException:
            watcher.close()
            raise
        watcher._schedule_check()
        return watcher

    # -------------------------
    # Watch map
    # -------------------------

    def add_watch(self, path: str) -> None:
        """Watch `path` and every directory below it. Raises WatchError if `path` is not a directory."""
        if not os.path.isdir(path):
            raise WatchError(f"'{path}' is not a directory")

        self._bind(self._create_watch(path), path)
        for dirpath, dirnames, _ in os.walk(path):
            kept = []
            for name in dirnames:
                sub = os.path.join(dirpath, name)
                if os.path.islink(sub):
                    continue
                try:
                    self._bind(self._create_watch(sub), sub)
                except WatchError as e:
                    # vanished between listing and watching
                    log_action(self.logger, "WATCH", f"skip {sub}: {e}", path=sub, level=logging.DEBUG)
                    continue
                kept.append(name)
            dirnames[:] = kept

    def _create_watch(self, path: str) -> int:
        try:
            wd = self._inotify.add_watch(path, WATCH_MASK)
        except OSError as e:
            raise WatchError(f"inotify_add_watch({path}) failed, {e.strerror or e}") from e
        log_action(self.logger, "WATCH", f"wd={wd} {path}", path=path, level=logging.DEBUG)
        return wd

    def _bind(self, wd: int, path: str) -> None:
        old_path = self._wds.get(wd)
        if old_path is not None and old_path != path:
            # same inode re-added under a new name (moved inside the tree)
            self._paths.pop(old_path, None)

        old_wd = self._paths.get(path)
        if old_wd is not None and old_wd != wd:
            # a different directory now lives at this path
            self._wds.pop(old_wd, None)
            self._remove_watch(old_wd, path)

        self._wds[wd] = path
        self._paths[path] = wd

    def _unbind(self, wd: int) -> Optional[str]:
        path = self._wds.pop(wd, None)
        if path is not None and self._paths.get(path) == wd:
            del self._paths[path]
        return path

    def _remove_watch(self, wd: int, path: str) -> None:
        if self._inotify is None:
            return
        try:
            self._inotify.rm_watch(wd)
            log_action(self.logger, "UNWATCH", f"wd={wd} {path}", path=path, level=logging.DEBUG)
        except OSError as e:
            # the kernel already dropped it (deleted directory, IN_IGNORED)
            log_action(self.logger, "UNWATCH", f"wd={wd} {path}: {e.strerror or e}", path=path, level=logging.DEBUG)

    def _drop(self, wd: int) -> Optional[str]:
        path = self._unbind(wd)
        if path is not None:
            self._remove_watch(wd, path)
        return path

    def watched_paths(self) -> list[str]:
        return sorted(self._paths)

    def __len__(self) -> int:
        return len(self._wds)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and os.path.abspath(path) in self._paths

    def __iter__(self) -> Iterator[str]:
        return iter(self.watched_paths())

    # -------------------------
    # Event handling
    # -------------------------

    def _relative(self, path: str) -> str:
        return os.path.relpath(path, self.root)

    def _on_readable(self) -> None:
        if self._inotify is None:
            return
        try:
            events = self._inotify.read(timeout=0)
        except OSError as e:
            self.logger.error("inotify read failed: %s", e)
            return

        for event in events:
            self._handle_event(event.wd, event.mask, event.name)

        self._schedule_check()

    def _handle_event(self, wd: int, mask: int, name: str) -> None:
        self.logger.debug("INOTIFY: %08X (%s), wd=%d, name: %s", mask, mask_names(mask), wd, name or "(null)")

        if mask & flags.Q_OVERFLOW:
            self.logger.warning("inotify queue overflow, events were lost")
            self._schedule_rescan()
            return

        path = self._wds.get(wd)
        if path is None:
            return

        target = os.path.join(path, name) if name else path

        if self.on_change is not None:
            self.on_change(mask, self._relative(target))

        if mask & flags.ISDIR and mask & (flags.CREATE | flags.MOVED_TO):
            try:
                self.add_watch(target)
            except WatchError as e:
                log_action(self.logger, "WATCH", f"new directory gone before watching: {e}", path=target, level=logging.DEBUG)

        if mask & flags.DELETE_SELF:
            self._drop(wd)

        if mask & flags.IGNORED:
            self._drop(wd)
            if os.path.isdir(path):
                # watch removed by the kernel while the directory survives
                try:
                    self.add_watch(path)
                except WatchError as e:
                    log_action(self.logger, "WATCH", f"re-add failed: {e}", path=path, level=logging.WARNING)

        if mask & flags.MOVE_SELF:
            log_action(self.logger, "RESCAN", f"pending, {path} moved", path=path, level=logging.DEBUG)
            self._schedule_rescan()

    # -------------------------
    # Deferred tasks
    # -------------------------
    # call_soon runs these after the current inotify batch, but asyncio has no
    # priority tiers: readers and timers that became ready in the same
    # iteration can still run first. Rescan and the idle check only rely on
    # seeing a fully processed batch.

    def _schedule_rescan(self) -> None:
        if self._rescan_handle is None:
            self._rescan_handle = self.loop.call_soon(self._rescan)

    def _rescan(self) -> None:
        self._rescan_handle = None
        if self._inotify is None:
            return

        stale = [wd for wd, path in self._wds.items() if not os.path.isdir(path)]
        for wd in stale:
            self._drop(wd)

        try:
            self.add_watch(self.root)
        except WatchError as e:
            log_action(self.logger, "RESCAN", f"root not watchable: {e}", path=self.root, level=logging.WARNING)

        log_action(
            self.logger,
            "RESCAN",
            f"{self.root}: {len(stale)} stale, {len(self._wds)} watched",
            path=self.root,
        )
        self._schedule_check()

    def _schedule_check(self) -> None:
        if self._check_handle is None:
            self._check_handle = self.loop.call_soon(self._check_watches)

    def _check_watches(self) -> None:
        self._check_handle = None
        if self._inotify is None or self._wds or self._rescan_handle is not None:
            return
        self.logger.error("No directories to watch exist.")
        if self.on_exhausted is not None:
            self.on_exhausted()

    # -------------------------
    # Teardown
    # -------------------------

    def close(self) -> None:
        inotify, self._inotify = self._inotify, None
        if inotify is None:
            return

        for handle in (self._rescan_handle, self._check_handle):
            if handle is not None:
                handle.cancel()
        self._rescan_handle = self._check_handle = None

        try:
            self.loop.remove_reader(inotify.fileno())
        except (ValueError, RuntimeError):
            pass

        for wd in list(self._wds):
            try:
                inotify.rm_watch(wd)
            except OSError:
                pass
        self._wds.clear()
        self._paths.clear()
        inotify.close()

    def __enter__(self) -> "DirectoryWatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
