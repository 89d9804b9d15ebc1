"""Step Registry: the ordered list of reconciliation steps."""

from vpsharden.accounts import account_steps, root_lock_step
from vpsharden.config import HardenConfig
from vpsharden.docker import docker_steps
from vpsharden.fail2ban import fail2ban_step
from vpsharden.firewall import firewall_step
from vpsharden.models import Step
from vpsharden.packages import package_steps
from vpsharden.sshd import sshd_step


def build_steps(config: HardenConfig) -> list[Step]:
    """All steps in execution order.

    Later steps rely on earlier postconditions: packages before the tools
    that use them, the firewall and key-holding accounts before sshd is
    narrowed, sshd before root is locked.
    """
    steps = []
    steps.extend(package_steps(config))
    steps.append(firewall_step(config))
    steps.append(fail2ban_step(config))
    steps.extend(account_steps(config))
    steps.append(sshd_step(config))
    if config.lock_root:
        steps.append(root_lock_step(config))
    steps.extend(docker_steps(config))
    return steps


def select_steps(steps: list[Step], only=(), skip=()) -> list[Step]:
    """Filter by name, keeping registration order."""
    names = {step.name for step in steps}
    unknown = (set(only) | set(skip)) - names
    if unknown:
        raise ValueError(f"Unknown step(s): {', '.join(sorted(unknown))}")

    selected = [step for step in steps if not only or step.name in only]
    return [step for step in selected if step.name not in skip]
