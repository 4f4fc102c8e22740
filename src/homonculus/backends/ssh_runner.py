"""SSH command executor backed by paramiko.

One authenticated connection is kept open per executor; every ``execute``
opens a fresh session channel on it and runs a single shell command string.
"""

import io
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, TextIO

import paramiko

from ..errors import ExecutionError, SSHConnectionError
from ..interfaces.process import CommandExecutor, format_command
from ..logging import get_logger
from .subprocess_runner import pump_lines

log = get_logger(__name__)

DEFAULT_SSH_PORT = 22
HOST_KEY_POLICIES = ("insecure", "known_hosts")

# Tried in order when parsing a private key of unknown type
_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class SSHConfig:
    """SSH connection parameters."""

    host: str
    user: str
    key_path: str
    port: int = DEFAULT_SSH_PORT
    host_key_policy: str = "insecure"
    connect_timeout: float = 10.0


def load_private_key(key_path: str) -> paramiko.PKey:
    """Read and parse a private key, expanding ``~``."""
    path = Path(key_path).expanduser()
    try:
        data = path.read_text()
    except OSError as e:
        raise SSHConnectionError(f"failed to read SSH key {path}: {e}") from e

    for key_cls in _KEY_TYPES:
        try:
            return key_cls.from_private_key(io.StringIO(data))
        except paramiko.SSHException:
            continue
    raise SSHConnectionError(f"failed to parse SSH key {path}")


class SSHExecutor(CommandExecutor):
    """Run commands on a remote host over a persistent SSH connection."""

    def __init__(self, config: SSHConfig):
        if config.host_key_policy not in HOST_KEY_POLICIES:
            raise SSHConnectionError(f"unknown host key policy: {config.host_key_policy}")
        self.config = config
        self.host = config.host
        self.log = log.bind(executor="ssh", host=config.host)
        self._client = self._connect()

    @property
    def name(self) -> str:
        return f"ssh-{self.host}"

    def _connect(self) -> paramiko.SSHClient:
        port = self.config.port or DEFAULT_SSH_PORT
        pkey = load_private_key(self.config.key_path)

        client = paramiko.SSHClient()
        if self.config.host_key_policy == "known_hosts":
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            self.log.warning(
                "ssh host key verification disabled",
                policy=self.config.host_key_policy,
            )
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        addr = f"{self.config.host}:{port}"
        self.log.debug("establishing SSH connection", addr=addr)
        try:
            client.connect(
                self.config.host,
                port=port,
                username=self.config.user,
                pkey=pkey,
                timeout=self.config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHConnectionError(f"failed to connect to {addr}: {e}") from e

        self.log.debug("SSH connection established", addr=addr)
        return client

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> int:
        cmd_str = format_command(command, args)
        self.log.debug("executing command via SSH", cmd=cmd_str)

        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise ExecutionError(cmd_str, reason="SSH connection is closed")

        channel = None
        try:
            channel = transport.open_session()
            channel.exec_command(cmd_str)
        except paramiko.SSHException as e:
            if channel is not None:
                channel.close()
            self.log.error("SSH command execution error", cmd=cmd_str, error=str(e))
            raise ExecutionError(cmd_str, reason=f"failed to create SSH session: {e}") from e

        try:
            pumps = [
                threading.Thread(
                    target=pump_lines, args=(channel.makefile("rb"), stdout), daemon=True
                ),
                threading.Thread(
                    target=pump_lines, args=(channel.makefile_stderr("rb"), stderr), daemon=True
                ),
            ]
            for t in pumps:
                t.start()
            exit_code = channel.recv_exit_status()
            for t in pumps:
                t.join()
        finally:
            channel.close()

        if exit_code == -1:
            self.log.error("SSH command execution error", cmd=cmd_str, error="no exit status")
            raise ExecutionError(cmd_str, reason="session ended without an exit status")
        if exit_code != 0:
            self.log.warning("SSH command failed", cmd=cmd_str, exit_code=exit_code)
            raise ExecutionError(cmd_str, exit_code=exit_code)

        self.log.debug("SSH command succeeded", cmd=cmd_str)
        return 0

    def close(self) -> None:
        if self._client is not None:
            self.log.debug("closing SSH connection")
            self._client.close()
            self._client = None
