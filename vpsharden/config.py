"""Configuration parsing and validation for vps-harden."""

import re
from pathlib import Path

import yaml
from paramiko.pkey import PublicBlob
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
PORT_SPEC_RE = re.compile(r"^(\d{1,5})(?::(\d{1,5}))?(?:/(tcp|udp))?$")

BASE_PORTS = ("80/tcp", "443/tcp")


def split_list(value):
    """Accept either a list or a comma-delimited string."""
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    # YAML hands bare port numbers over as ints
    return tuple(str(item).strip() for item in value if str(item).strip())


def parse_public_key(line: str) -> PublicBlob:
    """Parse an OpenSSH public key line, raising ValueError if malformed."""
    try:
        return PublicBlob.from_string(line.strip())
    except Exception as e:
        raise ValueError(f"Invalid SSH public key: {line.strip()[:40]}... ({e})") from e


def read_key_file(path: str | Path) -> list[str]:
    """Read public keys from a file, one per line, skipping blanks and comments."""
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Key file not found: {path}")

    keys = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            keys.append(line)
    return keys


class TargetConfig(BaseModel):
    """Where to run: the local machine, or a remote host over SSH."""

    model_config = ConfigDict(frozen=True)

    host: str | None = None
    user: str = "root"
    port: int = Field(22, ge=1, le=65535)
    key_path: str | None = None
    password: str | None = None
    # Private key used to prove an alternate admin can log in before root is locked
    login_key_path: str | None = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None


class Fail2banConfig(BaseModel):
    """fail2ban jail settings."""

    model_config = ConfigDict(frozen=True)

    bantime: int = 3600
    findtime: int = 600
    maxretry: int = 5
    destemail: str = "root@localhost"
    sendername: str = "Fail2Ban"


class DockerConfig(BaseModel):
    """Docker engine settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    log_max_size: str = "10m"
    log_max_file: int = 3
    live_restore: bool = True
    smoke_test: bool = True


class HardenConfig(BaseModel):
    """Main configuration for vps-harden. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    deploy_user: str = "originate-devops"
    admin_user: str = "wkenn"
    ssh_port: int = Field(22, ge=1, le=65535)
    extra_ports: tuple[str, ...] = ()

    admin_keys: tuple[str, ...] = ()
    deploy_keys: tuple[str, ...] = ()
    deploy_sudo_commands: tuple[str, ...] = ("ALL",)

    security_packages: tuple[str, ...] = (
        "ufw",
        "fail2ban",
        "unattended-upgrades",
        "apt-listchanges",
        "software-properties-common",
        "ca-certificates",
        "curl",
        "gnupg",
        "lsb-release",
    )
    convenience_packages: tuple[str, ...] = ("wget", "git", "vim")

    system_upgrade: bool = True
    auto_reboot: bool = False
    lock_root: bool = True

    fail2ban: Fail2banConfig = Field(default_factory=Fail2banConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)

    @field_validator("extra_ports", "deploy_sudo_commands", mode="before")
    @classmethod
    def parse_comma_list(cls, v):
        """Handle comma-delimited strings from the CLI or YAML."""
        return split_list(v)

    @field_validator("extra_ports")
    @classmethod
    def validate_ports(cls, v):
        for spec in v:
            match = PORT_SPEC_RE.match(spec)
            if not match:
                raise ValueError(f"Invalid port spec '{spec}' (expected PORT[:PORT][/tcp|udp])")
            low, high, proto = match.groups()
            for number in (low, high):
                if number is not None and not 1 <= int(number) <= 65535:
                    raise ValueError(f"Port out of range in '{spec}'")
            if high is not None and proto is None:
                raise ValueError(f"Port range '{spec}' needs a protocol (e.g. {spec}/tcp)")
            if high is not None and int(high) < int(low):
                raise ValueError(f"Port range '{spec}' is reversed")
        return v

    @field_validator("deploy_user", "admin_user")
    @classmethod
    def validate_username(cls, v):
        if not USERNAME_RE.match(v):
            raise ValueError(f"Invalid username '{v}'")
        if v == "root":
            raise ValueError("Managed accounts must not be root")
        return v

    @field_validator("admin_keys", "deploy_keys", mode="before")
    @classmethod
    def parse_keys(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(line.strip() for line in v.splitlines() if line.strip())
        return tuple(v)

    @field_validator("admin_keys", "deploy_keys")
    @classmethod
    def validate_keys(cls, v):
        for key in v:
            parse_public_key(key)
        return v

    @model_validator(mode="after")
    def validate_accounts(self):
        if self.admin_user == self.deploy_user:
            raise ValueError("admin_user and deploy_user must differ")
        return self

    @property
    def firewall_rules(self) -> list[tuple[str, str]]:
        """Allowed UFW rules in the order they are added, with their comments."""
        rules = [(f"{self.ssh_port}/tcp", "SSH"), ("80/tcp", "HTTP"), ("443/tcp", "HTTPS")]
        seen = {rule for rule, _ in rules}
        for spec in self.extra_ports:
            if spec not in seen:
                rules.append((spec, "Custom"))
                seen.add(spec)
        return rules

    @property
    def managed_users(self) -> tuple[str, str]:
        return (self.admin_user, self.deploy_user)


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> HardenConfig:
    """Load configuration from an optional YAML file, with CLI overrides applied on top."""
    raw = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config root must be a mapping: {path}")

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if isinstance(value, dict):
            section = dict(raw.get(key) or {})
            section.update({k: v for k, v in value.items() if v is not None})
            raw[key] = section
        elif key in ("admin_keys", "deploy_keys"):
            raw[key] = list(split_list(raw.get(key))) + list(value)
        else:
            raw[key] = value

    return HardenConfig(**raw)


def validate_config(config: HardenConfig) -> list[str]:
    """Perform additional checks on the config.

    Returns a list of warnings (empty if all good).
    """
    warnings = []

    if not config.admin_keys and not config.deploy_keys:
        warnings.append(
            "No SSH public keys configured; SSH hardening will refuse to disable "
            "password authentication unless keys are already installed"
        )
    elif not config.admin_keys:
        warnings.append(f"No SSH keys configured for admin user '{config.admin_user}'")
    elif not config.deploy_keys:
        warnings.append(f"No SSH keys configured for deploy user '{config.deploy_user}'")

    if "ALL" in config.deploy_sudo_commands:
        warnings.append(
            f"Deploy user '{config.deploy_user}' gets passwordless sudo for ALL commands; "
            "set deploy_sudo_commands to narrow it"
        )

    base = {f"{config.ssh_port}/tcp", *BASE_PORTS}
    for spec in config.extra_ports:
        if spec in base:
            warnings.append(f"Extra port {spec} is already allowed by default")

    if config.lock_root and config.target.is_remote and not config.target.login_key_path:
        warnings.append(
            "No login key given; root lock will rely on operator confirmation "
            "instead of an automated login check"
        )

    return warnings
