"""Exception types for vps-harden."""


class HardenError(Exception):
    """Base class for all vps-harden errors."""


class CommandError(HardenError):
    """A shell command on the target host exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"`{command}` exited with status {exit_code}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class ProbeError(HardenError):
    """Current state could not be inspected."""


class ApplyError(HardenError):
    """A mutation could not be carried out."""


class VerifyError(HardenError):
    """A change did not pass its validity check or did not take effect."""

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        self.remediation = remediation


class Declined(HardenError):
    """The operator declined a confirmation prompt."""


class LockError(HardenError):
    """Another run holds the run lock on the target host."""
