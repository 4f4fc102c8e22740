"""Abstract interface for command execution."""

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, TextIO

from homonculus.errors import ExecutionError


@dataclass
class CommandResult:
    """Captured result of a command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class CommandExecutor(ABC):
    """Runs one command at a time against a local or remote shell.

    Output is streamed to the given sinks as it is produced. A non-zero exit
    raises ``ExecutionError`` carrying the exit code; a command that cannot be
    started raises ``ExecutionError`` with exit code -1.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable executor name, e.g. 'local-shell'."""
        pass

    @abstractmethod
    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> int:
        """Run a command, streaming output. Returns the exit code (0)."""
        pass

    def close(self) -> None:
        """Release any underlying connection."""

    def __enter__(self) -> "CommandExecutor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


def format_command(command: str, args: Sequence[str]) -> str:
    if not args:
        return command
    return command + " " + " ".join(args)


def run_and_capture(executor: CommandExecutor, command: str, *args: str) -> CommandResult:
    """Run a command with in-memory sinks and return what it printed.

    On failure the raised ``ExecutionError`` carries the captured output.
    """
    out, err = io.StringIO(), io.StringIO()
    try:
        exit_code = executor.execute(command, args, stdout=out, stderr=err)
    except ExecutionError as e:
        raise e.with_output(out.getvalue(), err.getvalue()) from e
    return CommandResult(exit_code=exit_code, stdout=out.getvalue(), stderr=err.getvalue())
