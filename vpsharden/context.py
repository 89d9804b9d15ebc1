"""Per-run state handed to every step."""

from dataclasses import dataclass, field
from typing import Callable

from vpsharden.config import HardenConfig
from vpsharden.connection import Host
from vpsharden.edits import FileEditor


def no_key(user: str) -> str | None:
    return None


@dataclass
class RunContext:
    host: Host
    config: HardenConfig
    files: FileEditor
    confirm: Callable[[str], bool]
    # Asked for a public key when an account has none configured
    ask_key: Callable[[str], str | None] = no_key
    dry_run: bool = False
    # Facts gathered during preflight, e.g. os-release fields
    facts: dict = field(default_factory=dict)


def make_context(
    host: Host,
    config: HardenConfig,
    confirm: Callable[[str], bool],
    dry_run: bool = False,
    ask_key: Callable[[str], str | None] = no_key,
) -> RunContext:
    return RunContext(
        host=host,
        config=config,
        files=FileEditor(host),
        confirm=confirm,
        ask_key=ask_key,
        dry_run=dry_run,
    )
