"""Local command executor implementation."""

import subprocess
import threading
from typing import IO, Optional, Sequence, TextIO

from ..errors import ExecutionError
from ..interfaces.process import CommandExecutor, format_command
from ..logging import get_logger

log = get_logger(__name__)


def pump_lines(source: IO[bytes], sink: Optional[TextIO]) -> None:
    """Copy ``source`` to ``sink`` line by line; undecodable bytes become U+FFFD."""
    for raw in iter(source.readline, b""):
        if sink is not None:
            sink.write(raw.decode("utf-8", errors="replace"))
    source.close()


class LocalExecutor(CommandExecutor):
    """Run commands as child processes of this host."""

    name = "local-shell"

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> int:
        """Run a command."""
        cmd_str = format_command(command, args)
        log.debug("executing command locally", cmd=cmd_str)

        try:
            proc = subprocess.Popen(
                [command, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            log.error("command execution error", cmd=cmd_str, error=str(e))
            raise ExecutionError(cmd_str, reason=str(e)) from e

        pumps = [
            threading.Thread(target=pump_lines, args=(proc.stdout, stdout), daemon=True),
            threading.Thread(target=pump_lines, args=(proc.stderr, stderr), daemon=True),
        ]
        for t in pumps:
            t.start()
        exit_code = proc.wait()
        for t in pumps:
            t.join()

        if exit_code != 0:
            log.warning("command failed", cmd=cmd_str, exit_code=exit_code)
            raise ExecutionError(cmd_str, exit_code=exit_code)

        log.debug("command succeeded", cmd=cmd_str)
        return 0
