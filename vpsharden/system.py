"""Thin wrappers around the package manager, user database and systemd."""

from vpsharden.connection import Host

APT_ENV = "DEBIAN_FRONTEND=noninteractive"


def package_installed(host: Host, package: str) -> bool:
    result = host.run(f"dpkg-query -W -f='${{Status}}' {package}", warn=True)
    return result.ok and "install ok installed" in result.stdout


def missing_packages(host: Host, packages) -> list[str]:
    return [p for p in packages if not package_installed(host, p)]


def apt_update(host: Host) -> None:
    host.run(f"{APT_ENV} apt-get update")


def install_packages(host: Host, packages) -> None:
    host.run(f"{APT_ENV} apt-get install -y {' '.join(packages)}")


def remove_packages(host: Host, packages) -> None:
    host.run(f"{APT_ENV} apt-get remove -y {' '.join(packages)}")


def upgradable_packages(host: Host) -> list[str]:
    """Packages `apt-get upgrade` would install, from a simulated run."""
    output = host.output("apt-get -s upgrade")
    names = []
    for line in output.splitlines():
        if line.startswith("Inst "):
            names.append(line.split()[1])
    return names


def user_exists(host: Host, user: str) -> bool:
    return host.succeeds(f"id -u {user}")


def user_groups(host: Host, user: str) -> set[str]:
    return set(host.output(f"id -nG {user}").split())


def user_home(host: Host, user: str) -> str:
    entry = host.output(f"getent passwd {user}")
    return entry.split(":")[5]


def create_user(host: Host, user: str) -> None:
    host.run(f"useradd -m -s /bin/bash {user}")


def add_to_group(host: Host, user: str, group: str) -> None:
    host.run(f"usermod -aG {group} {user}")


def password_status(host: Host, user: str) -> str:
    """Second field of `passwd -S`: P (usable), L (locked) or NP (none)."""
    fields = host.output(f"passwd -S {user}").split()
    return fields[1] if len(fields) > 1 else ""


def service_active(host: Host, service: str) -> bool:
    return host.succeeds(f"systemctl is-active --quiet {service}")


def service_enabled(host: Host, service: str) -> bool:
    return host.succeeds(f"systemctl is-enabled --quiet {service}")


def enable_service(host: Host, service: str, now: bool = False) -> None:
    host.run(f"systemctl enable --now {service}" if now else f"systemctl enable {service}")


def restart_service(host: Host, service: str) -> None:
    host.run(f"systemctl restart {service}")
