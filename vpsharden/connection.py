"""Command execution and file access on the host being hardened."""

import glob
import io
import os
import secrets
import shlex
import shutil
import tempfile
from pathlib import Path

from fabric import Connection
from invoke import Context
from invoke.exceptions import UnexpectedExit
from paramiko.ssh_exception import SSHException
from rich.console import Console

from vpsharden.config import HardenConfig, TargetConfig
from vpsharden.errors import CommandError

console = Console()


def parse_os_release(text: str) -> dict:
    """Parse /etc/os-release into a dict."""
    info = {}
    for line in text.splitlines():
        if "=" in line and not line.lstrip().startswith("#"):
            key, value = line.split("=", 1)
            info[key.strip()] = value.strip().strip('"')
    return info


def _split_owner(owner: str) -> tuple[str, str]:
    user, _, group = owner.partition(":")
    return user, group or user


class Host:
    """The machine being hardened.

    Subclasses supply the transport. Everything above this class only issues
    shell commands (run as root) and whole-file reads and writes.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def _execute(self, command: str, warn: bool, hide: bool):
        """Run a command, returning an invoke Result or raising UnexpectedExit."""
        raise NotImplementedError

    def run(self, command: str, warn: bool = False, hide: bool | None = None):
        """Run a command as root and return the invoke Result."""
        if hide is None:
            hide = not self.verbose
        try:
            return self._execute(command, warn=warn, hide=hide)
        except UnexpectedExit as e:
            raise CommandError(command, e.result.exited, e.result.stderr.strip()) from e

    def succeeds(self, command: str) -> bool:
        """Run a read-only check command and report whether it exited zero."""
        return self.run(command, warn=True).ok

    def output(self, command: str) -> str:
        """Run a command and return its stripped stdout."""
        return self.run(command).stdout.strip()

    # File access. Paths are absolute paths on the target host.

    def file_exists(self, path: str) -> bool:
        raise NotImplementedError

    def read_file(self, path: str) -> str | None:
        """Return file content, or None if the file does not exist."""
        raise NotImplementedError

    def write_file(self, path: str, content: str, mode: str = "644", owner: str | None = None) -> None:
        """Replace a file atomically (temp file in the same directory, then rename)."""
        raise NotImplementedError

    def copy_file(self, src: str, dst: str) -> None:
        """Copy a file preserving mode and ownership."""
        raise NotImplementedError

    def remove_file(self, path: str) -> None:
        raise NotImplementedError

    def makedirs(self, path: str, mode: str = "755", owner: str | None = None) -> None:
        raise NotImplementedError

    def glob(self, pattern: str) -> list[str]:
        raise NotImplementedError

    # Facts

    def is_root(self) -> bool:
        return self.output("id -u") == "0"

    def get_os_info(self) -> dict:
        """Get information about the target OS from /etc/os-release."""
        text = self.read_file("/etc/os-release")
        if text is None:
            return {}
        return parse_os_release(text)

    def check_login(self, user: str, key_path: str, port: int) -> bool | None:
        """Try a fresh SSH login as `user`. Returns None when not supported."""
        return None

    def close(self) -> None:
        pass


class LocalHost(Host):
    """Runs on the machine itself, as the original scripts do (must be root)."""

    def __init__(self, verbose: bool = False):
        super().__init__(verbose)
        self.context = Context()

    def _execute(self, command: str, warn: bool, hide: bool):
        return self.context.run(command, warn=warn, hide=hide, in_stream=False)

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def file_exists(self, path: str) -> bool:
        return Path(path).is_file()

    def read_file(self, path: str) -> str | None:
        p = Path(path)
        if not p.exists():
            return None
        try:
            return p.read_text()
        except OSError as e:
            raise CommandError(f"read {path}", 1, str(e)) from e

    def write_file(self, path: str, content: str, mode: str = "644", owner: str | None = None) -> None:
        p = Path(path)
        try:
            fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=f".{p.name}.")
        except OSError as e:
            raise CommandError(f"write {path}", 1, str(e)) from e
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp, int(mode, 8))
            if owner:
                user, group = _split_owner(owner)
                shutil.chown(tmp, user, group)
            os.replace(tmp, p)
        except BaseException as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            if isinstance(e, OSError):
                raise CommandError(f"write {path}", 1, str(e)) from e
            raise

    def copy_file(self, src: str, dst: str) -> None:
        dst_path = Path(dst)
        tmp = dst_path.with_name(f".{dst_path.name}.{secrets.token_hex(4)}")
        try:
            shutil.copy2(src, tmp)
            st = os.stat(src)
            os.chown(tmp, st.st_uid, st.st_gid)
            os.replace(tmp, dst_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise CommandError(f"copy {src} {dst}", 1, str(e)) from e

    def remove_file(self, path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise CommandError(f"remove {path}", 1, str(e)) from e

    def makedirs(self, path: str, mode: str = "755", owner: str | None = None) -> None:
        p = Path(path)
        try:
            p.mkdir(parents=True, exist_ok=True)
            os.chmod(p, int(mode, 8))
            if owner:
                user, group = _split_owner(owner)
                shutil.chown(p, user, group)
        except OSError as e:
            raise CommandError(f"mkdir {path}", 1, str(e)) from e

    def glob(self, pattern: str) -> list[str]:
        return sorted(p for p in glob.glob(pattern) if os.path.isfile(p))


class RemoteHost(Host):
    """Runs over SSH with fabric. Non-root logins escalate through sudo."""

    def __init__(self, target: TargetConfig, verbose: bool = False):
        super().__init__(verbose)
        self.target = target
        self._connection: Connection | None = None

    def _get_connect_kwargs(self) -> dict:
        """Get connection kwargs based on auth method."""
        if self.target.key_path:
            key_path = Path(self.target.key_path).expanduser()
            return {"key_filename": str(key_path)}
        if self.target.password:
            return {"password": self.target.password}
        return {}

    @property
    def conn(self) -> Connection:
        """Get or create the connection."""
        if self._connection is None:
            self._connection = Connection(
                host=self.target.host,
                user=self.target.user,
                port=self.target.port,
                connect_kwargs=self._get_connect_kwargs(),
            )
        return self._connection

    def test_connection(self) -> bool:
        """Test if we can connect to the server."""
        try:
            result = self.conn.run("echo 'connection test'", hide=True)
            return result.ok
        except (SSHException, OSError) as e:
            console.print(f"[red]Connection failed: {e}[/red]")
            return False

    def _execute(self, command: str, warn: bool, hide: bool):
        if self.target.user == "root":
            return self.conn.run(command, warn=warn, hide=hide, in_stream=False)

        # Wrap in a shell so pipes and redirects run under sudo too
        return self.conn.sudo(
            f"sh -c {shlex.quote(command)}",
            warn=warn,
            hide=hide,
            password=self.target.password,
            in_stream=False,
        )

    def file_exists(self, path: str) -> bool:
        return self.succeeds(f"test -f {shlex.quote(path)}")

    def read_file(self, path: str) -> str | None:
        if not self.succeeds(f"test -e {shlex.quote(path)}"):
            return None
        return self.run(f"cat {shlex.quote(path)}", hide=True).stdout

    def write_file(self, path: str, content: str, mode: str = "644", owner: str | None = None) -> None:
        upload = f"/tmp/vps-harden.{secrets.token_hex(6)}"
        staged = f"{path}.vps-harden-{secrets.token_hex(4)}"
        self.conn.put(io.BytesIO(content.encode()), upload)
        user, group = _split_owner(owner or "root:root")
        try:
            self.run(
                f"install -m {mode} -o {user} -g {group} {upload} {shlex.quote(staged)} "
                f"&& mv -f {shlex.quote(staged)} {shlex.quote(path)}"
            )
        finally:
            self.run(f"rm -f {upload}", warn=True)

    def copy_file(self, src: str, dst: str) -> None:
        staged = f"{dst}.vps-harden-{secrets.token_hex(4)}"
        self.run(
            f"cp -p {shlex.quote(src)} {shlex.quote(staged)} && mv -f {shlex.quote(staged)} {shlex.quote(dst)}"
        )

    def remove_file(self, path: str) -> None:
        self.run(f"rm -f {shlex.quote(path)}")

    def makedirs(self, path: str, mode: str = "755", owner: str | None = None) -> None:
        command = f"install -d -m {mode}"
        if owner:
            user, group = _split_owner(owner)
            command += f" -o {user} -g {group}"
        self.run(f"{command} {shlex.quote(path)}")

    def glob(self, pattern: str) -> list[str]:
        # Pattern comes from root-owned config (sshd Include lines); let the shell expand it
        result = self.run(f'for f in {pattern}; do [ -f "$f" ] && echo "$f"; done; true', warn=True)
        return sorted(line for line in result.stdout.splitlines() if line.strip())

    def check_login(self, user: str, key_path: str, port: int) -> bool | None:
        """Open a fresh connection as `user` to prove key login works."""
        probe = Connection(
            host=self.target.host,
            user=user,
            port=port,
            connect_kwargs={
                "key_filename": str(Path(key_path).expanduser()),
                "look_for_keys": False,
                "allow_agent": False,
            },
        )
        try:
            return probe.run("true", hide=True, warn=True).ok
        except (SSHException, OSError) as e:
            console.print(f"[red]Login as {user} failed: {e}[/red]")
            return False
        finally:
            probe.close()

    def close(self) -> None:
        """Close the connection."""
        if self._connection:
            self._connection.close()


def open_host(config: HardenConfig, verbose: bool = False) -> Host:
    """Build the Host for the configured target."""
    if config.target.is_remote:
        return RemoteHost(config.target, verbose=verbose)
    return LocalHost(verbose=verbose)
