"""OS account provisioning: admin and deploy users, SSH keys, sudo, root lock.

Each managed account moves one way through
ABSENT -> CREATED -> SUDO_GRANTED -> KEYS_INSTALLED -> ACTIVE, where ACTIVE
means it holds a key and sudo it can actually use. Adding keys can be
repeated; it only ever appends to authorized_keys. Root goes from ACTIVE to
LOCKED, and only after another account is ACTIVE and its login has been
checked or confirmed by the operator.
"""

from enum import IntEnum

from rich.console import Console

from vpsharden.config import parse_public_key
from vpsharden.context import RunContext
from vpsharden.errors import ApplyError, Declined
from vpsharden.models import Step
from vpsharden.rendering import render
from vpsharden.system import (
    add_to_group,
    create_user,
    password_status,
    user_exists,
    user_groups,
    user_home,
)

console = Console()

SUDOERS_DIR = "/etc/sudoers.d"

KEY_TYPES = {
    "ssh-ed25519",
    "ssh-rsa",
    "ssh-dss",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
}


class AccountState(IntEnum):
    ABSENT = 0
    CREATED = 1
    SUDO_GRANTED = 2
    KEYS_INSTALLED = 3
    ACTIVE = 4
    LOCKED = 5


def key_blob(line: str) -> str | None:
    """Base64 key material of an authorized_keys line, skipping any options prefix."""
    tokens = line.split()
    for i, token in enumerate(tokens[:-1]):
        if token in KEY_TYPES:
            return tokens[i + 1]
    return None


def installed_key_blobs(text: str) -> set[str]:
    blobs = set()
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            blob = key_blob(line)
            if blob:
                blobs.add(blob)
    return blobs


def authorized_keys_path(ctx: RunContext, user: str) -> str:
    return f"{user_home(ctx.host, user)}/.ssh/authorized_keys"


def missing_keys(ctx: RunContext, user: str, keys) -> list[str]:
    text = ctx.host.read_file(authorized_keys_path(ctx, user)) or ""
    present = installed_key_blobs(text)
    missing = []
    for key in keys:
        blob = key_blob(key)
        if blob not in present:
            missing.append(key.strip())
            present.add(blob)
    return missing


def account_state(ctx: RunContext, user: str) -> AccountState:
    """Furthest state an account has reached, as far as probes can tell."""
    host = ctx.host
    if not user_exists(host, user):
        return AccountState.ABSENT
    if "sudo" not in user_groups(host, user):
        return AccountState.CREATED
    text = host.read_file(authorized_keys_path(ctx, user)) or ""
    if not installed_key_blobs(text):
        return AccountState.SUDO_GRANTED
    if not has_usable_sudo(ctx, user):
        return AccountState.KEYS_INSTALLED
    return AccountState.ACTIVE


def root_state(ctx: RunContext) -> AccountState:
    if password_status(ctx.host, "root") == "L":
        return AccountState.LOCKED
    return AccountState.ACTIVE


def install_keys(ctx: RunContext, user: str, keys) -> None:
    """Append missing keys to the user's authorized_keys, keeping what is there."""
    missing = missing_keys(ctx, user, keys)
    if not missing:
        console.print(f"[dim]  All configured keys already present for {user}[/dim]")
        return

    path = authorized_keys_path(ctx, user)
    ssh_dir = path.rsplit("/", 1)[0]
    owner = f"{user}:{user}"

    ctx.host.makedirs(ssh_dir, mode="700", owner=owner)
    current = ctx.host.read_file(path) or ""
    if current and not current.endswith("\n"):
        current += "\n"
    ctx.files.write(path, current + "\n".join(missing) + "\n", mode="600", owner=owner)
    console.print(f"[green]  Added {len(missing)} key(s) to {path}[/green]")


def entered_key(ctx: RunContext, user: str) -> list[str]:
    """Ask the operator to paste a key for an account that has none yet."""
    if account_state(ctx, user) >= AccountState.KEYS_INSTALLED:
        return []
    line = (ctx.ask_key(user) or "").strip()
    if not line:
        return []
    try:
        parse_public_key(line)
    except ValueError as e:
        console.print(f"[yellow]⚠ {e}[/yellow]")
        return []
    return [line]


def _account_ready(user: str, keys):
    def check(ctx: RunContext) -> bool:
        host = ctx.host
        if not user_exists(host, user):
            return False
        if "sudo" not in user_groups(host, user):
            return False
        return not (keys and missing_keys(ctx, user, keys))

    return check


def _provision_account(user: str, keys, purpose: str):
    def apply(ctx: RunContext) -> None:
        host = ctx.host
        if user_exists(host, user):
            console.print(f"[yellow]User '{user}' already exists, updating...[/yellow]")
        else:
            console.print(f"[cyan]Creating {purpose} user '{user}'...[/cyan]")
            create_user(host, user)

        if "sudo" not in user_groups(host, user):
            add_to_group(host, user, "sudo")

        entered = keys or entered_key(ctx, user)
        if entered:
            install_keys(ctx, user, entered)
        elif account_state(ctx, user) < AccountState.KEYS_INSTALLED:
            console.print(
                f"[yellow]⚠ No SSH keys configured for {user}. "
                f"Add one later to ~{user}/.ssh/authorized_keys[/yellow]"
            )

    return apply


def _account_reached(user: str, keys):
    def verify(ctx: RunContext) -> bool:
        target = AccountState.KEYS_INSTALLED if keys else AccountState.SUDO_GRANTED
        return account_state(ctx, user) >= target

    return verify


# Deploy sudoers drop-in


def sudoers_path(user: str) -> str:
    return f"{SUDOERS_DIR}/{user}"


def sudoers_content(ctx: RunContext) -> str:
    return render(
        "sudoers.j2",
        user=ctx.config.deploy_user,
        commands=ctx.config.deploy_sudo_commands,
    )


def sudoers_configured(ctx: RunContext) -> bool:
    return ctx.host.read_file(sudoers_path(ctx.config.deploy_user)) == sudoers_content(ctx)


def install_sudoers(ctx: RunContext) -> None:
    """Install the deploy user's sudoers entry, checked by visudo before it goes live."""
    user = ctx.config.deploy_user
    content = sudoers_content(ctx)
    # sudo ignores includedir files whose names contain a dot
    staged = f"{SUDOERS_DIR}/.{user}.pending"

    ctx.host.write_file(staged, content, mode="440", owner="root:root")
    try:
        result = ctx.host.run(f"visudo -cf {staged}", warn=True)
    finally:
        ctx.host.remove_file(staged)
    if not result.ok:
        raise ApplyError(f"sudoers entry rejected by visudo: {result.stderr.strip() or result.stdout.strip()}")

    ctx.files.write(sudoers_path(user), content, mode="440", owner="root:root")
    console.print(f"[green]  Passwordless sudo configured for {user} (CI/CD automation)[/green]")


def validate_sudoers(ctx: RunContext) -> bool:
    result = ctx.host.run("visudo -c", warn=True)
    if not result.ok:
        console.print(f"[red]sudoers check failed: {result.stderr.strip() or result.stdout.strip()}[/red]")
    return result.ok


# Root lock


def has_usable_sudo(ctx: RunContext, user: str) -> bool:
    """Full sudo without a password, or a password the user can give to sudo.

    Only the deploy drop-in granting ALL counts as passwordless admin
    access; a drop-in narrowed to a few commands does not.
    """
    config = ctx.config
    if user == config.deploy_user and tuple(config.deploy_sudo_commands) == ("ALL",):
        if ctx.host.read_file(sudoers_path(user)) == sudoers_content(ctx):
            return True
    return password_status(ctx.host, user) == "P"


def login_verified(ctx: RunContext, user: str) -> bool | None:
    """Automated login check; None when it cannot be performed here."""
    key = ctx.config.target.login_key_path
    if not key:
        return None
    return ctx.host.check_login(user, key, ctx.config.ssh_port)


def key_holders(ctx: RunContext) -> list[str]:
    """Managed accounts that can already log in with a key."""
    return [
        user for user in ctx.config.managed_users
        if account_state(ctx, user) >= AccountState.KEYS_INSTALLED
    ]


def root_locked(ctx: RunContext) -> bool:
    return root_state(ctx) is AccountState.LOCKED


def lock_root(ctx: RunContext) -> None:
    """Lock root once another admin account is ACTIVE."""
    candidates = [
        user for user in ctx.config.managed_users
        if account_state(ctx, user) is AccountState.ACTIVE
    ]
    if not candidates:
        raise ApplyError(
            "No alternate account has SSH keys and usable sudo; refusing to lock root"
        )

    results = {user: login_verified(ctx, user) for user in candidates}
    active = [user for user, ok in results.items() if ok]
    if not active:
        if any(ok is False for ok in results.values()):
            raise ApplyError(
                f"Login check failed for {', '.join(candidates)}; refusing to lock root"
            )
        if not ctx.confirm(
            f"Lock the root account? Confirm you have logged in as {' or '.join(candidates)} "
            "from a new session"
        ):
            raise Declined("root left unlocked; lock it later with: passwd -l root")
        active = candidates

    console.print("[cyan]Disabling root account...[/cyan]")
    ctx.host.run("passwd -l root")
    console.print("[yellow]⚠ Root account has been locked[/yellow]")
    console.print(f"[yellow]⚠ Future access must be via {' or '.join(active)}[/yellow]")


def account_steps(config) -> list[Step]:
    steps = [
        Step(
            name="admin-account",
            description=f"Admin user '{config.admin_user}' (sudo with password)",
            check=_account_ready(config.admin_user, config.admin_keys),
            apply=_provision_account(config.admin_user, config.admin_keys, "admin"),
            verify=_account_reached(config.admin_user, config.admin_keys),
            critical=True,
        ),
        Step(
            name="deploy-account",
            description=f"Deployment user '{config.deploy_user}' for CI/CD",
            check=_account_ready(config.deploy_user, config.deploy_keys),
            apply=_provision_account(config.deploy_user, config.deploy_keys, "deployment"),
            verify=_account_reached(config.deploy_user, config.deploy_keys),
            critical=True,
        ),
        Step(
            name="deploy-sudoers",
            description=f"sudoers entry for '{config.deploy_user}'",
            check=sudoers_configured,
            apply=install_sudoers,
            validate=validate_sudoers,
            verify=sudoers_configured,
            critical=True,
            remediation="sudoers invalid, previous entry restored; check with: visudo -c",
        ),
    ]
    return steps


def root_lock_step(config) -> Step:
    return Step(
        name="root-lock",
        description="Lock the root password once another admin is active",
        check=root_locked,
        apply=lock_root,
        verify=root_locked,
        critical=False,
        remediation="Root stays unlocked; lock manually with: passwd -l root",
    )
