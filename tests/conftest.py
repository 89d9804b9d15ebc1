"""Pytest configuration and shared fixtures."""

import fnmatch
import json
import shlex
from typing import Callable

import pytest
from invoke import Result
from invoke.exceptions import UnexpectedExit

from vpsharden.config import HardenConfig
from vpsharden.connection import Host
from vpsharden.context import RunContext, make_context, no_key
from vpsharden.errors import CommandError
from vpsharden.models import RunReport
from vpsharden.registry import build_steps
from vpsharden.reporter import Reporter
from vpsharden.runner import preflight, run_lock, run_steps

ED25519_PREFIX = "AAAAC3NzaC1lZDI1NTE5AAAAI"
ADMIN_KEY = f"ssh-ed25519 {ED25519_PREFIX}{'AdminKey' * 5}Adm wayne@laptop"
DEPLOY_KEY = f"ssh-ed25519 {ED25519_PREFIX}{'DeployKey' * 4}DeployK github-actions"
OTHER_KEY = f"ssh-ed25519 {ED25519_PREFIX}{'ExtraKey' * 5}Ext someone@else"

SSHD_CONFIG = "/etc/ssh/sshd_config"

DEFAULT_SSHD = """\
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#PermitRootLogin prohibit-password
#PubkeyAuthentication yes
KbdInteractiveAuthentication no
UsePAM yes
X11Forwarding yes
PrintMotd no
AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server
"""

OS_RELEASE = """\
PRETTY_NAME="Ubuntu 24.04.1 LTS"
NAME="Ubuntu"
VERSION_ID="24.04"
VERSION="24.04.1 LTS (Noble Numbat)"
VERSION_CODENAME=noble
ID=ubuntu
ID_LIKE=debian
UBUNTU_CODENAME=noble
"""

SSHD_DEFAULTS = {
    "port": "22",
    "permitrootlogin": "without-password",
    "passwordauthentication": "yes",
    "pubkeyauthentication": "yes",
    "kbdinteractiveauthentication": "yes",
    "x11forwarding": "no",
}


class FakeHost(Host):
    """In-memory Ubuntu host that understands the commands the steps issue.

    Commands it does not model succeed silently and are still recorded in
    `commands`.
    """

    def __init__(self):
        super().__init__()
        self.files = {
            "/etc/os-release": OS_RELEASE,
            SSHD_CONFIG: DEFAULT_SSHD,
        }
        self.modes = {}
        self.owners = {}
        self.dirs = {"/etc/ssh/sshd_config.d", "/etc/sudoers.d", "/root"}
        self.packages = {"openssh-server", "sudo", "ca-certificates"}
        self.upgradable = ["libssl3", "openssl"]
        self.uninstallable = set()
        self.users = {"root": {"uid": 0, "groups": ["root"], "home": "/root", "password": "P"}}
        self.services = {"ssh": {"active": True, "enabled": True}}
        self.ufw = {"active": False, "incoming": "deny", "outgoing": "allow", "rules": []}
        self.restarts = []
        self.commands = []
        self.unreadable = set()
        self.sshd_valid = True
        self.visudo_valid = True
        self.login_ok = None

    # Transport

    def _execute(self, command: str, warn: bool, hide: bool):
        self.commands.append(command)
        code, stdout, stderr = self._dispatch(command)
        result = Result(stdout=stdout, stderr=stderr, command=command, exited=code)
        if code != 0 and not warn:
            raise UnexpectedExit(result)
        return result

    def _dispatch(self, command: str):
        command = command.removeprefix("DEBIAN_FRONTEND=noninteractive ")
        args = shlex.split(command)
        handler = getattr(self, f"_cmd_{args[0].replace('-', '_')}", None)
        if handler is None:
            return 0, "", ""
        return handler(args[1:])

    def ran(self, prefix: str) -> bool:
        return any(c.startswith(prefix) for c in self.commands)

    # Files

    def file_exists(self, path):
        return path in self.files

    def read_file(self, path):
        if path in self.unreadable:
            raise CommandError(f"cat {path}", 1, "Permission denied")
        return self.files.get(path)

    def write_file(self, path, content, mode="644", owner=None):
        self.files[path] = content
        self.modes[path] = mode
        self.owners[path] = owner or "root:root"

    def copy_file(self, src, dst):
        self.files[dst] = self.files[src]
        self.modes[dst] = self.modes.get(src, "644")
        self.owners[dst] = self.owners.get(src, "root:root")

    def remove_file(self, path):
        self.files.pop(path, None)

    def makedirs(self, path, mode="755", owner=None):
        self.dirs.add(path)
        self.modes[path] = mode
        self.owners[path] = owner or "root:root"

    def glob(self, pattern):
        return sorted(p for p in self.files if fnmatch.fnmatch(p, pattern))

    def check_login(self, user, key_path, port):
        return self.login_ok

    # Commands

    def _install(self, package):
        self.packages.add(package)
        if package == "fail2ban":
            self.services["fail2ban"] = {"active": True, "enabled": True}
        if package == "docker-ce":
            self.services["docker"] = {"active": True, "enabled": True}

    def _cmd_dpkg_query(self, args):
        package = args[-1]
        if package in self.packages:
            return 0, "install ok installed", ""
        return 1, "", f"dpkg-query: no packages found matching {package}"

    def _cmd_dpkg(self, args):
        return 0, "amd64\n", ""

    def _cmd_apt_get(self, args):
        if args[0] == "-s":
            lines = [f"Inst {p} [1.0] (1.1 Ubuntu:24.04/noble-updates [amd64])" for p in self.upgradable]
            return 0, "\n".join(lines) + "\n", ""
        action = args[0]
        packages = [a for a in args[1:] if not a.startswith("-")]
        if action == "install":
            bad = [p for p in packages if p in self.uninstallable]
            if bad:
                return 100, "", f"E: Unable to locate package {bad[0]}"
            for package in packages:
                self._install(package)
        elif action == "remove":
            self.packages -= set(packages)
        elif action == "upgrade":
            self.upgradable = []
        return 0, "", ""

    def _cmd_id(self, args):
        if args == ["-u"]:
            return 0, "0\n", ""
        user = args[-1]
        if user not in self.users:
            return 1, "", f"id: '{user}': no such user"
        if args[0] == "-nG":
            return 0, " ".join(self.users[user]["groups"]) + "\n", ""
        return 0, f"{self.users[user]['uid']}\n", ""

    def _cmd_useradd(self, args):
        user = args[-1]
        if user in self.users:
            return 9, "", f"useradd: user '{user}' already exists"
        self.users[user] = {
            "uid": 1000 + len(self.users),
            "groups": [user],
            "home": f"/home/{user}",
            "password": "L",
        }
        self.dirs.add(f"/home/{user}")
        return 0, "", ""

    def _cmd_usermod(self, args):
        group, user = args[1], args[2]
        if user not in self.users:
            return 6, "", f"usermod: user '{user}' does not exist"
        if group not in self.users[user]["groups"]:
            self.users[user]["groups"].append(group)
        return 0, "", ""

    def _cmd_getent(self, args):
        user = args[-1]
        if user not in self.users:
            return 2, "", ""
        entry = self.users[user]
        return 0, f"{user}:x:{entry['uid']}:{entry['uid']}::{entry['home']}:/bin/bash\n", ""

    def _cmd_passwd(self, args):
        user = args[-1]
        if args[0] == "-S":
            return 0, f"{user} {self.users[user]['password']} 2026-10-01 0 99999 7 -1\n", ""
        if args[0] == "-l":
            self.users[user]["password"] = "L"
            return 0, "passwd: password changed.\n", ""
        return 1, "", "unsupported"

    def _cmd_systemctl(self, args):
        action = args[0]
        if action == "daemon-reload":
            return 0, "", ""
        service = args[-1]
        state = self.services.get(service)
        if action == "is-active":
            return (0 if state and state["active"] else 3), "", ""
        if action == "is-enabled":
            return (0 if state and state["enabled"] else 1), "", ""
        state = self.services.setdefault(service, {"active": False, "enabled": False})
        if action == "enable":
            state["enabled"] = True
            if "--now" in args:
                state["active"] = True
        elif action in ("start", "restart"):
            state["active"] = True
            if action == "restart":
                self.restarts.append(service)
        return 0, "", ""

    def _cmd_ufw(self, args):
        if args[0] == "status":
            return 0, self._ufw_status(), ""
        if args[:2] == ["--force", "reset"]:
            self.ufw = {"active": False, "incoming": "deny", "outgoing": "allow", "rules": []}
        elif args[:2] == ["--force", "enable"]:
            self.ufw["active"] = True
        elif args[0] == "default":
            self.ufw[args[2]] = args[1]
        elif args[0] == "allow":
            comment = args[3] if len(args) > 3 else ""
            if args[1] not in [rule for rule, _ in self.ufw["rules"]]:
                self.ufw["rules"].append((args[1], comment))
        elif args[0] == "delete":
            self.ufw["rules"] = [(r, c) for r, c in self.ufw["rules"] if r != args[2]]
        return 0, "", ""

    def _ufw_status(self):
        if not self.ufw["active"]:
            return "Status: inactive\n"
        lines = [
            "Status: active",
            "Logging: on (low)",
            f"Default: {self.ufw['incoming']} (incoming), {self.ufw['outgoing']} (outgoing), disabled (routed)",
            "New profiles: skip",
            "",
            "To                         Action      From",
            "--                         ------      ----",
        ]
        for suffix, source in (("", "Anywhere"), (" (v6)", "Anywhere (v6)")):
            for rule, comment in self.ufw["rules"]:
                line = f"{rule + suffix:<27}ALLOW IN    {source}"
                if comment:
                    line = f"{line:<70}# {comment}"
                lines.append(line)
        return "\n".join(lines) + "\n"

    def _cmd_sshd(self, args):
        if not self.sshd_valid:
            return 255, "", f"{SSHD_CONFIG} line 12: Bad configuration option: Bogus"
        if args[0] == "-T":
            settings = {}
            self._collect_sshd(self.files.get(SSHD_CONFIG, ""), settings)
            for key, value in SSHD_DEFAULTS.items():
                settings.setdefault(key, value)
            return 0, "".join(f"{k} {v}\n" for k, v in settings.items()), ""
        return 0, "", ""

    def _collect_sshd(self, text, settings):
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            key, _, value = stripped.partition(" ")
            key = key.lower()
            if key == "match":
                break
            if key == "include":
                for pattern in value.split():
                    for path in self.glob(pattern):
                        self._collect_sshd(self.files[path], settings)
                continue
            if key == "challengeresponseauthentication":
                key = "kbdinteractiveauthentication"
            settings.setdefault(key, value.strip())

    def _cmd_visudo(self, args):
        if self.visudo_valid:
            return 0, "parsed OK\n", ""
        return 1, "", ">>> /etc/sudoers.d/originate-devops: syntax error near line 1 <<<"

    def _cmd_docker(self, args):
        if args[0] == "--version" and "docker-ce-cli" in self.packages:
            return 0, "Docker version 27.3.1, build ce12230\n", ""
        if args[:2] == ["compose", "version"] and "docker-compose-plugin" in self.packages:
            return 0, "Docker Compose version v2.29.7\n", ""
        if args[0] == "run" and self.services.get("docker", {}).get("active"):
            return 0, "Hello from Docker!\n", ""
        return 1, "", "docker: command not found"

    def _cmd_dockerd(self, args):
        try:
            json.loads(self.files.get("/etc/docker/daemon.json", "{}"))
        except json.JSONDecodeError:
            return 1, "", "unable to configure the Docker daemon with file /etc/docker/daemon.json"
        return 0, "configuration OK\n", ""

    def _cmd_mkdir(self, args):
        path = args[-1]
        if path in self.dirs:
            return 1, "", f"mkdir: cannot create directory '{path}': File exists"
        self.dirs.add(path)
        return 0, "", ""

    def _cmd_rmdir(self, args):
        self.dirs.discard(args[-1])
        return 0, "", ""


def always_yes(question: str) -> bool:
    return True


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def config() -> HardenConfig:
    """Default options plus one key per managed account."""
    return HardenConfig(admin_keys=[ADMIN_KEY], deploy_keys=[DEPLOY_KEY])


@pytest.fixture
def ctx(fake_host: FakeHost, config: HardenConfig) -> RunContext:
    context = make_context(fake_host, config, always_yes)
    context.facts["os"] = fake_host.get_os_info()
    return context


@pytest.fixture
def harden() -> Callable[..., tuple[int, RunReport]]:
    """Run the full registry against a host, the way main() does."""

    def _run(host, config, confirm=always_yes, dry_run=False, steps=None, ask_key=no_key):
        context = make_context(host, config, confirm, dry_run=dry_run, ask_key=ask_key)
        reporter = Reporter()
        preflight(context)
        with run_lock(host, enabled=not dry_run):
            code = run_steps(steps if steps is not None else build_steps(config), context, reporter)
        return code, reporter.report

    return _run
