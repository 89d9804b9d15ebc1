"""vps-harden library modules."""

from vpsharden.config import load_config, validate_config, HardenConfig
from vpsharden.connection import Host, LocalHost, RemoteHost, open_host
from vpsharden.context import RunContext, make_context
from vpsharden.registry import build_steps, select_steps
from vpsharden.reporter import Reporter
from vpsharden.runner import preflight, run_lock, run_steps

__all__ = [
    "load_config",
    "validate_config",
    "HardenConfig",
    "Host",
    "LocalHost",
    "RemoteHost",
    "open_host",
    "RunContext",
    "make_context",
    "build_steps",
    "select_steps",
    "Reporter",
    "preflight",
    "run_lock",
    "run_steps",
]
