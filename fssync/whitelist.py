from __future__ import annotations

import bisect
from pathlib import Path
from typing import Iterable, Iterator, Union

_EXCESS = " \t\n\r\v\f/"


def _normalize(line: str) -> str:
    return line.strip(_EXCESS)


class PathWhitelist:
    """
    Set of relative paths allowed to trigger a sync.

    A path is allowed when a whitelist entry is a prefix of it, i.e. the entry
    names the path itself or one of its ancestors. Entries are kept sorted and
    prefix-free: an entry that already has a shorter entry as its prefix adds
    nothing and is dropped. With no entry being a prefix of another, the only
    candidate for a given path is the greatest entry <= path, so a lookup is a
    single bisect.

    Prefixes are compared byte-wise, without checking that the match ends on a
    path separator: "etc/sys" admits "etc/systemd" as well as "etc/sys/foo".
    """

    def __init__(self, entries: Iterable[str] = ()):
        kept: list[str] = []
        for entry in sorted({_normalize(e) for e in entries}):
            # sorted order puts any prefix of `entry` before it; the nearest
            # kept entry is the only one that can be that prefix
            if kept and entry.startswith(kept[-1]):
                continue
            kept.append(entry)
        self._entries = kept

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PathWhitelist":
        """Read newline-delimited entries. An empty file allows nothing; a blank line allows everything."""
        # lines end at "\n" only
        with open(path, "r", encoding="utf-8", newline="") as f:
            lines = f.read().split("\n")
        if lines[-1] == "":
            lines.pop()
        return cls(lines)

    def check(self, path: Union[str, Path]) -> bool:
        rel = str(path)
        if rel.startswith("./"):
            rel = rel[2:]
        rel = rel.strip("/")

        idx = bisect.bisect_right(self._entries, rel)
        if idx == 0:
            return False
        return rel.startswith(self._entries[idx - 1])

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __contains__(self, entry: object) -> bool:
        if not isinstance(entry, str):
            return False
        idx = bisect.bisect_left(self._entries, entry)
        return idx < len(self._entries) and self._entries[idx] == entry

    def __repr__(self) -> str:
        return f"PathWhitelist({len(self._entries)} entries)"
