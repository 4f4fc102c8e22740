"""Exception hierarchy for Homonculus."""

from typing import List, Optional, Sequence


class HomonculusError(Exception):
    """Base class for every error raised by Homonculus."""


class NotFoundError(HomonculusError, LookupError):
    """A named domain does not exist."""

    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(message or f"virtual machine '{name}' not found")


class ValidationError(HomonculusError, ValueError):
    pass


class HypervisorConnectionError(HomonculusError, ConnectionError):
    pass


class SSHConnectionError(HomonculusError, ConnectionError):
    pass


class HypervisorError(HomonculusError):
    """A libvirt call failed for a reason other than a missing domain.

    ``uuid`` is set when the domain was resolved before the failing call.
    """

    def __init__(self, message: str, uuid: Optional[str] = None):
        self.uuid = uuid
        super().__init__(message)


class BootMediaError(HomonculusError):
    """Cloud-init documents could not be written to local scratch space."""


class ExecutionError(HomonculusError):
    """An external command exited non-zero or could not be started."""

    UNKNOWN_EXIT_CODE = -1

    def __init__(
        self,
        command: str,
        exit_code: int = UNKNOWN_EXIT_CODE,
        stdout: str = "",
        stderr: str = "",
        reason: Optional[str] = None,
    ):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason
        super().__init__(self._format())

    def _format(self) -> str:
        if self.exit_code == self.UNKNOWN_EXIT_CODE:
            msg = f"command execution failed: {self.command}"
            if self.reason:
                msg += f": {self.reason}"
        else:
            msg = f"command exited with code {self.exit_code}: {self.command}"
        if self.stderr.strip():
            msg += f"\nstderr: {self.stderr.strip()}"
        return msg

    def with_output(self, stdout: str, stderr: str) -> "ExecutionError":
        """Return a copy carrying captured output."""
        return ExecutionError(
            self.command,
            exit_code=self.exit_code,
            stdout=stdout,
            stderr=stderr,
            reason=self.reason,
        )


class PartialBatchFailure(HomonculusError):
    """One or more items of a cluster operation failed.

    Items that succeeded in the same batch are not rolled back. For query
    operations the successfully resolved results are kept on ``results``.
    """

    def __init__(self, operation: str, failed: Sequence[str], results: Optional[list] = None):
        self.operation = operation
        self.failed: List[str] = list(failed)
        self.results = list(results or [])
        super().__init__(f"failed to {operation} {len(self.failed)} VM(s): {self.failed}")


class BootstrapError(HomonculusError):
    """K3s installation failed on a node."""

    def __init__(self, host: str, role: str, cause: Exception):
        self.host = host
        self.role = role
        self.cause = cause
        super().__init__(f"failed to bootstrap {role} {host}: {cause}")
