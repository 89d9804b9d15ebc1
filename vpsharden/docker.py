"""Docker Engine installation and configuration steps."""

import json

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.errors import ApplyError
from vpsharden.models import Step
from vpsharden.system import (
    add_to_group,
    apt_update,
    enable_service,
    install_packages,
    missing_packages,
    package_installed,
    remove_packages,
    restart_service,
    service_active,
    user_exists,
    user_groups,
)

console = Console()

DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)
CONFLICTING_PACKAGES = ("docker.io", "docker-doc", "docker-compose", "podman-docker", "containerd", "runc")

KEYRING_DIR = "/etc/apt/keyrings"
KEYRING_PATH = f"{KEYRING_DIR}/docker.gpg"
SOURCES_PATH = "/etc/apt/sources.list.d/docker.list"
DAEMON_JSON = "/etc/docker/daemon.json"
GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
REPO_URL = "https://download.docker.com/linux/ubuntu"


def docker_installed(ctx: RunContext) -> bool:
    missing = missing_packages(ctx.host, DOCKER_PACKAGES)
    if missing:
        console.print(f"[dim]  Missing: {', '.join(missing)}[/dim]")
        return False
    return service_active(ctx.host, "docker")


def _codename(ctx: RunContext) -> str:
    os_info = ctx.facts.get("os") or ctx.host.get_os_info()
    codename = os_info.get("VERSION_CODENAME") or os_info.get("UBUNTU_CODENAME")
    if not codename:
        raise ApplyError("Cannot determine Ubuntu codename for the Docker repository")
    return codename


def setup_docker_repo(ctx: RunContext) -> None:
    """Add Docker's official GPG key and repository."""
    host = ctx.host
    console.print("[cyan]Setting up Docker repository...[/cyan]")

    host.run(f"install -m 0755 -d {KEYRING_DIR}")
    host.run(f"curl -fsSL {GPG_URL} | gpg --dearmor --yes -o {KEYRING_PATH}")
    host.run(f"chmod a+r {KEYRING_PATH}")

    arch = host.output("dpkg --print-architecture")
    line = f"deb [arch={arch} signed-by={KEYRING_PATH}] {REPO_URL} {_codename(ctx)} stable\n"
    ctx.files.write(SOURCES_PATH, line)


def install_docker(ctx: RunContext) -> None:
    """Install Docker Engine and the Compose plugin from the official repository."""
    host = ctx.host

    conflicting = [p for p in CONFLICTING_PACKAGES if package_installed(host, p)]
    if conflicting:
        console.print(f"[yellow]Removing conflicting packages: {', '.join(conflicting)}[/yellow]")
        remove_packages(host, conflicting)

    missing = missing_packages(host, DOCKER_PACKAGES)
    if missing:
        setup_docker_repo(ctx)
        apt_update(host)
        console.print("[cyan]Installing Docker Engine...[/cyan]")
        install_packages(host, missing)

    enable_service(host, "docker", now=True)
    console.print("[green]✓ Docker Engine installed[/green]")


def verify_docker(ctx: RunContext) -> bool:
    """Verify Docker installation."""
    host = ctx.host
    version = host.run("docker --version", warn=True)
    if not version.ok:
        console.print("[red]✗ Docker installation verification failed[/red]")
        return False
    console.print(f"[dim]  {version.stdout.strip()}[/dim]")

    compose = host.run("docker compose version", warn=True)
    if not compose.ok:
        console.print("[red]✗ Docker Compose installation verification failed[/red]")
        return False
    console.print(f"[dim]  {compose.stdout.strip()}[/dim]")

    if not service_active(host, "docker"):
        return False

    if ctx.config.docker.smoke_test:
        if host.run("docker run --rm hello-world", warn=True).ok:
            console.print("[green]  Docker test container ran successfully[/green]")
        else:
            console.print("[yellow]⚠ Docker test container failed, but Docker is installed[/yellow]")

    return True


def _docker_user(ctx: RunContext) -> str:
    return ctx.config.deploy_user


def in_docker_group(ctx: RunContext) -> bool:
    user = _docker_user(ctx)
    return user_exists(ctx.host, user) and "docker" in user_groups(ctx.host, user)


def add_docker_group(ctx: RunContext) -> None:
    user = _docker_user(ctx)
    if not user_exists(ctx.host, user):
        raise ApplyError(f"User {user} does not exist yet; run: usermod -aG docker {user}")
    add_to_group(ctx.host, user, "docker")
    console.print(f"[green]  Added {user} to docker group[/green]")
    console.print(f"[yellow]⚠ {user} will need to log out and back in for group changes to take effect[/yellow]")


def desired_daemon_settings(config) -> dict:
    return {
        "log-driver": "json-file",
        "log-opts": {
            "max-size": config.docker.log_max_size,
            "max-file": str(config.docker.log_max_file),
        },
        "live-restore": config.docker.live_restore,
    }


def _current_daemon_settings(ctx: RunContext) -> dict | None:
    text = ctx.host.read_file(DAEMON_JSON)
    if text is None or not text.strip():
        return {}
    try:
        settings = json.loads(text)
    except json.JSONDecodeError:
        console.print(f"[yellow]⚠ {DAEMON_JSON} is not valid JSON[/yellow]")
        return None
    return settings if isinstance(settings, dict) else None


def daemon_configured(ctx: RunContext) -> bool:
    current = _current_daemon_settings(ctx)
    if current is None:
        return False
    desired = desired_daemon_settings(ctx.config)
    return all(current.get(key) == value for key, value in desired.items())


def configure_daemon(ctx: RunContext) -> None:
    """Merge log rotation and live-restore into daemon.json, keeping other keys."""
    console.print("[cyan]Configuring Docker daemon...[/cyan]")
    settings = _current_daemon_settings(ctx) or {}
    settings.update(desired_daemon_settings(ctx.config))
    ctx.host.makedirs("/etc/docker")
    ctx.files.write(DAEMON_JSON, json.dumps(settings, indent=2) + "\n")


def validate_daemon(ctx: RunContext) -> bool:
    result = ctx.host.run(f"dockerd --validate --config-file={DAEMON_JSON}", warn=True)
    if not result.ok:
        console.print(f"[red]Docker daemon config invalid: {result.stderr.strip()}[/red]")
    return result.ok


def restart_docker(ctx: RunContext) -> None:
    restart_service(ctx.host, "docker")
    console.print("[green]✓ Docker daemon configured with log rotation and live-restore[/green]")


def docker_running(ctx: RunContext) -> bool:
    return service_active(ctx.host, "docker")


def docker_steps(config) -> list[Step]:
    if not config.docker.enabled:
        return []

    return [
        Step(
            name="docker-engine",
            description="Docker Engine, Buildx and Compose from the official repository",
            check=docker_installed,
            apply=install_docker,
            verify=verify_docker,
            critical=False,
        ),
        Step(
            name="docker-group",
            description=f"Let '{config.deploy_user}' use Docker",
            check=in_docker_group,
            apply=add_docker_group,
            verify=in_docker_group,
            critical=False,
        ),
        Step(
            name="docker-daemon",
            description="Log rotation and live-restore in daemon.json",
            check=daemon_configured,
            apply=configure_daemon,
            validate=validate_daemon,
            commit=restart_docker,
            verify=docker_running,
            critical=False,
            remediation="daemon.json invalid, backup restored, Docker NOT restarted",
        ),
    ]
