#!/usr/bin/env python3
"""vps-harden: bootstrap and harden a fresh Ubuntu VPS."""

import argparse
import sys
from datetime import datetime

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from vpsharden.config import HardenConfig, load_config, read_key_file, validate_config
from vpsharden.connection import Host, RemoteHost, open_host
from vpsharden.context import make_context
from vpsharden.errors import HardenError
from vpsharden.registry import build_steps, select_steps
from vpsharden.reporter import Reporter
from vpsharden.runner import preflight, run_lock, run_steps

console = Console()


def print_banner():
    """Print the vps-harden banner."""
    console.print(Panel.fit(
        "[bold cyan]vps-harden[/bold cyan]\n"
        "[dim]Idempotent bootstrap and hardening for Ubuntu VPS hosts[/dim]",
        border_style="blue",
    ))


def make_confirm(assume_yes: bool):
    """Build the confirmation callback used before destructive actions."""
    if assume_yes:
        return lambda question: True

    def confirm(question: str) -> bool:
        if not sys.stdin.isatty():
            console.print(f"[yellow]⚠ {question} -> no (not a terminal; pass --yes to accept)[/yellow]")
            return False
        return Confirm.ask(question, default=False)

    return confirm


def make_key_prompt(assume_yes: bool):
    """Build the callback that asks for a public key when an account has none."""

    def ask_key(user: str) -> str | None:
        if assume_yes or not sys.stdin.isatty():
            return None
        console.print(f"\n[cyan]No SSH key configured for {user}.[/cyan]")
        return Prompt.ask(
            f"Paste a public key for {user} (ssh-ed25519 AAAA...), or press Enter to skip",
            default="",
            show_default=False,
        )

    return ask_key


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap and harden a fresh Ubuntu VPS",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="Optional YAML configuration file")

    accounts = parser.add_argument_group("accounts and ports")
    accounts.add_argument("--deploy-user", help="Deployment (CI/CD) user (default: originate-devops)")
    accounts.add_argument("--admin-user", help="Personal admin user (default: wkenn)")
    accounts.add_argument("--ssh-port", type=int, help="SSH port (default: 22)")
    accounts.add_argument(
        "--extra-ports",
        help="Additional firewall ports, comma-delimited (e.g. 8080/tcp,51820/udp)",
    )
    accounts.add_argument("--admin-key-file", action="append", default=[], help="Public key file for the admin user")
    accounts.add_argument("--deploy-key-file", action="append", default=[], help="Public key file for the deploy user")
    accounts.add_argument("--no-docker", action="store_true", help="Skip Docker installation")
    accounts.add_argument("--no-lock-root", action="store_true", help="Leave the root password unlocked")

    target = parser.add_argument_group("remote target")
    target.add_argument("--target", help="Harden a remote host over SSH instead of this machine")
    target.add_argument("--target-user", help="SSH user for the remote host (default: root)")
    target.add_argument("--target-port", type=int, help="SSH port of the remote host (default: 22)")
    target.add_argument("--target-key", help="Private key for the remote host")
    target.add_argument("--login-key", help="Private key used to verify admin login before locking root")

    run = parser.add_argument_group("run control")
    run.add_argument("--yes", "-y", action="store_true", help="Answer yes to all confirmations")
    run.add_argument("--dry-run", action="store_true", help="Probe and report without changing anything")
    run.add_argument("--only", help="Comma-delimited step names to run")
    run.add_argument("--skip", help="Comma-delimited step names to skip")
    run.add_argument("--list-steps", action="store_true", help="List registered steps and exit")
    run.add_argument("--verbose", "-v", action="store_true", help="Show command output")
    return parser


def config_from_args(args) -> HardenConfig:
    """Load the YAML config (if any) and overlay command-line options."""
    admin_keys = [key for path in args.admin_key_file for key in read_key_file(path)]
    deploy_keys = [key for path in args.deploy_key_file for key in read_key_file(path)]

    overrides = {
        "deploy_user": args.deploy_user,
        "admin_user": args.admin_user,
        "ssh_port": args.ssh_port,
        "extra_ports": args.extra_ports,
        "admin_keys": admin_keys or None,
        "deploy_keys": deploy_keys or None,
        "lock_root": False if args.no_lock_root else None,
        "target": {
            "host": args.target,
            "user": args.target_user,
            "port": args.target_port,
            "key_path": args.target_key,
            "login_key_path": args.login_key,
        },
    }
    if args.no_docker:
        overrides["docker"] = {"enabled": False}

    return load_config(args.config, overrides)


def list_steps(config: HardenConfig) -> None:
    table = Table(title="Registered steps")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Critical")
    table.add_column("Description")
    for index, step in enumerate(build_steps(config), 1):
        table.add_row(str(index), step.name, "yes" if step.critical else "no", step.description)
    console.print(table)


def _names(value: str | None) -> list[str]:
    return [name.strip() for name in (value or "").split(",") if name.strip()]


def connect(config: HardenConfig, verbose: bool) -> Host:
    host = open_host(config, verbose=verbose)
    if isinstance(host, RemoteHost):
        console.print(f"[cyan]Connecting to {config.target.host}...[/cyan]")
        if not host.test_connection():
            console.print("[red]✗ Could not connect to server[/red]")
            sys.exit(1)
        console.print("[green]✓ SSH connection established[/green]")
    return host


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    print_banner()

    try:
        config = config_from_args(args)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]✗ Config error: {e}[/red]")
        sys.exit(1)

    if args.list_steps:
        list_steps(config)
        return

    try:
        steps = select_steps(build_steps(config), _names(args.only), _names(args.skip))
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    for warning in validate_config(config):
        console.print(f"[yellow]⚠ {warning}[/yellow]")

    start_time = datetime.now()
    host = connect(config, args.verbose)
    ctx = make_context(
        host,
        config,
        make_confirm(args.yes),
        dry_run=args.dry_run,
        ask_key=make_key_prompt(args.yes),
    )
    reporter = Reporter()

    try:
        preflight(ctx)
        with run_lock(host, enabled=not args.dry_run):
            run_steps(steps, ctx, reporter)
    except HardenError as e:
        console.print(f"\n[bold red]✗ {e}[/bold red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)
    finally:
        host.close()

    reporter.summary(config)

    elapsed = datetime.now() - start_time
    if args.dry_run:
        console.print("\n[bold yellow]DRY RUN: no changes were made.[/bold yellow]")
    elif reporter.exit_code == 0:
        console.print(Panel.fit(
            f"[bold green]Hardening complete![/bold green]\n\n"
            f"Time elapsed: {elapsed.total_seconds():.0f} seconds",
            border_style="green",
        ))
    sys.exit(reporter.exit_code)


if __name__ == "__main__":
    main()
