"""Idempotent config edits with per-run backups."""

import re
from datetime import datetime
from typing import Callable

from rich.console import Console

from vpsharden.connection import Host

console = Console()

_MATCH_BLOCK = re.compile(r"^\s*Match\s", re.IGNORECASE)


def _directive_pattern(key: str) -> re.Pattern:
    return re.compile(rf"^\s*{re.escape(key)}(\s|=|$)", re.IGNORECASE)


def _directive_value(line: str, key: str) -> str:
    rest = line.strip()[len(key):]
    return rest.lstrip(" \t=").strip()


def get_directive(content: str, key: str) -> str | None:
    """Return the value of the first global (pre-Match) occurrence of `key`."""
    pattern = _directive_pattern(key)
    for line in content.splitlines():
        if _MATCH_BLOCK.match(line):
            break
        if pattern.match(line):
            return _directive_value(line, key)
    return None


def count_directive(content: str, key: str) -> int:
    """Count global (pre-Match) occurrences of `key`."""
    pattern = _directive_pattern(key)
    count = 0
    for line in content.splitlines():
        if _MATCH_BLOCK.match(line):
            break
        if pattern.match(line):
            count += 1
    return count


def set_directive(content: str, key: str, value: str, only_if_present: bool = False) -> str:
    """Set `key value` in a keyword-per-line config file such as sshd_config.

    The first global occurrence is replaced in place and later global
    duplicates are dropped. An absent key is appended, ahead of the first
    Match block so it stays global. Commented lines and Match blocks are
    left alone. With only_if_present, an absent key is not added.
    """
    pattern = _directive_pattern(key)
    desired = f"{key} {value}"
    result = []
    found = False
    in_match = False
    match_at = None

    for line in content.splitlines():
        if not in_match and _MATCH_BLOCK.match(line):
            in_match = True
            match_at = len(result)
        if not in_match and pattern.match(line):
            if not found:
                result.append(desired)
                found = True
            continue
        result.append(line)

    if not found and not only_if_present:
        if match_at is None:
            result.append(desired)
        else:
            result.insert(match_at, desired)

    if not result:
        return ""
    return "\n".join(result) + "\n"


class FileEditor:
    """Writes managed files, backing each one up before its first edit in a run.

    Backups go to `<path>.backup.<YYYYmmdd-HHMMSS>`. Files that did not exist
    are remembered as absent so a restore removes them again.
    """

    def __init__(self, host: Host, stamp: str | None = None):
        self.host = host
        self.stamp = stamp or datetime.now().strftime("%Y%m%d-%H%M%S")
        self.step: str | None = None
        self._backups: dict[str, str | None] = {}
        self._touched: dict[str, list[str]] = {}

    def begin(self, step_name: str) -> None:
        """Attribute subsequent writes to a step."""
        self.step = step_name

    def backup_path(self, path: str) -> str | None:
        """Backup taken for `path` in this run (None if it did not exist)."""
        return self._backups.get(path)

    def _backup(self, path: str) -> None:
        if path in self._backups:
            return
        if self.host.file_exists(path):
            backup = f"{path}.backup.{self.stamp}"
            self.host.copy_file(path, backup)
            console.print(f"[dim]  Backed up {path} to {backup}[/dim]")
            self._backups[path] = backup
        else:
            self._backups[path] = None

    def _track(self, path: str) -> None:
        paths = self._touched.setdefault(self.step or "", [])
        if path not in paths:
            paths.append(path)

    def write(self, path: str, content: str, mode: str = "644", owner: str | None = None) -> bool:
        """Write `content` to `path` if it differs. Returns True if written."""
        current = self.host.read_file(path)
        if current == content:
            return False
        self._backup(path)
        self._track(path)
        self.host.write_file(path, content, mode=mode, owner=owner)
        return True

    def edit(
        self,
        path: str,
        transform: Callable[[str], str],
        mode: str = "644",
        owner: str | None = None,
    ) -> bool:
        """Read `path`, apply `transform` in memory, and write back if changed."""
        current = self.host.read_file(path)
        updated = transform(current or "")
        if current == updated:
            return False
        self._backup(path)
        self._track(path)
        self.host.write_file(path, updated, mode=mode, owner=owner)
        return True

    def restore(self, step_name: str) -> list[str]:
        """Put back every file `step_name` touched. Returns the restored paths."""
        restored = []
        for path in self._touched.pop(step_name, []):
            backup = self._backups.get(path)
            if backup is None:
                self.host.remove_file(path)
            else:
                self.host.copy_file(backup, path)
            restored.append(path)
            console.print(f"[yellow]  Restored {path}[/yellow]")
        return restored
