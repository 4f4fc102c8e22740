"""File operations routed through a command executor."""

from ..interfaces.process import CommandExecutor, run_and_capture


def remove_file(executor: CommandExecutor, path: str) -> None:
    """Remove ``path``; absence is not an error.

    Raises ``ExecutionError`` with the captured stderr when ``rm`` fails.
    """
    run_and_capture(executor, "rm", "-f", path)
