from __future__ import annotations

from typing import Iterable, Optional

from pathspec import PathSpec

# Editor swap/backup files, lock files and partial downloads. Only applied
# with --default-ignores; a whitelisted path must otherwise always sync.
EDITOR_IGNORE_PATTERNS = [
    "*.swp",
    "*.swo",
    "*.swx",
    "*~",
    ".#*",
    "4913",
    "*.tmp",
    "*.part",
    ".~lock.*#",
]


class IgnoreMatcher:
    def __init__(self, patterns: Iterable[str]):
        self.patterns = list(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, rel_path: str, is_dir: Optional[bool] = None) -> bool:
        if not self.patterns or rel_path in ("", "."):
            return False
        rel_posix = rel_path[2:] if rel_path.startswith("./") else rel_path
        if is_dir is True and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)

    def __bool__(self) -> bool:
        return bool(self.patterns)
