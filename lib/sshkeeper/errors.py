"""Error types shared by the key store, archive and rotation engine."""

from typing import List, Optional


class SshKeeperError(Exception):
    """Base class for all sshkeeper failures."""


class NotFoundError(SshKeeperError):
    """A key, archived key, profile or host does not exist."""

    def __init__(self, message: str, candidates: Optional[List[str]] = None):
        super().__init__(message)
        self.candidates = candidates or []


class InvalidInputError(SshKeeperError, ValueError):
    """Bad algorithm, malformed key name or out-of-range bit size."""


class AlreadyExistsError(SshKeeperError):
    """Destination already exists and overwriting was not requested."""


class ConflictInUseError(SshKeeperError):
    """Key is referenced by SSH config hosts and the operator declined."""

    def __init__(self, message: str, hosts=None):
        super().__init__(message)
        self.hosts = sorted(hosts or [])


class ExternalToolError(SshKeeperError):
    """An external program exited non-zero or could not be started."""

    def __init__(self, command: List[str], returncode: Optional[int] = None,
                 output: str = ''):
        self.command = command
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"Could not run {command[0]}"
        else:
            message = f"{command[0]} exited with status {returncode}"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class ConfigIOError(SshKeeperError):
    """The SSH config or the profile store could not be read, written or backed up."""
