"""
K3s installation on remote nodes.

Masters are installed one after another and stop at the first failure.
Workers are installed in parallel; every started node runs to completion
and the first failure (in node order) is raised afterwards.
"""

import shlex
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TextIO

from homonculus.backends.ssh_runner import SSHConfig, SSHExecutor
from homonculus.errors import BootstrapError, HomonculusError
from homonculus.interfaces.process import CommandExecutor
from homonculus.logging import get_logger, log_operation
from homonculus.models import K3sNodeConfig, KubernetesRole

log = get_logger(__name__)

INSTALL_SCRIPT_URL = "https://get.k3s.io"

ExecutorFactory = Callable[[SSHConfig], CommandExecutor]


def master_install_command(token: str) -> str:
    return (
        f'curl -sfL {INSTALL_SCRIPT_URL} | INSTALL_K3S_EXEC="server --cluster-init" '
        f"K3S_TOKEN={shlex.quote(token)} sh -s -"
    )


def worker_install_command(token: str, master_url: str) -> str:
    return (
        f'curl -sfL {INSTALL_SCRIPT_URL} | INSTALL_K3S_EXEC="agent" '
        f"K3S_URL={shlex.quote(master_url)} K3S_TOKEN={shlex.quote(token)} sh -s -"
    )


class LinePrefixer:
    """Text sink that tags every write with ``[prefix]`` under a shared lock."""

    def __init__(self, prefix: str, dest: TextIO, lock: threading.Lock):
        self.prefix = prefix
        self.dest = dest
        self.lock = lock

    def write(self, chunk: str) -> int:
        line = chunk.rstrip("\n")
        with self.lock:
            self.dest.write(f"[{self.prefix}] {line}\n")
        return len(chunk)

    def flush(self) -> None:
        with self.lock:
            self.dest.flush()


class BootstrapService:
    """
    Install K3s servers and agents through per-node SSH executors.

    Usage:
        service = BootstrapService()
        service.bootstrap_masters(config.nodes, config.token)
        service.bootstrap_workers(config.nodes, config.token, config.master_url)
    """

    def __init__(
        self,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        host_key_policy: str = "insecure",
        connect_timeout: float = 10.0,
        max_parallel: Optional[int] = None,
    ):
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.executor_factory = executor_factory or SSHExecutor
        self.host_key_policy = host_key_policy
        self.connect_timeout = connect_timeout
        self.max_parallel = max_parallel
        self.log = log.bind(service="k3s-bootstrap")

    def _ssh_config(self, node: K3sNodeConfig) -> SSHConfig:
        return SSHConfig(
            host=node.host,
            user=node.ssh_user,
            key_path=node.ssh_key,
            port=node.ssh_port,
            host_key_policy=self.host_key_policy,
            connect_timeout=self.connect_timeout,
        )

    def _install(
        self, node: K3sNodeConfig, command: str, stdout: TextIO, stderr: TextIO
    ) -> None:
        with self.executor_factory(self._ssh_config(node)) as executor:
            self.log.info("executing K3s installation", host=node.host, executor=executor.name)
            executor.execute(command, stdout=stdout, stderr=stderr)

    def bootstrap_masters(
        self,
        nodes: Sequence[K3sNodeConfig],
        token: str,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Install the K3s server on each node in order; stop at the first failure."""
        role = KubernetesRole.MASTER.value
        with log_operation(self.log, "bootstrap_masters", nodes=len(nodes)):
            command = master_install_command(token)
            for i, node in enumerate(nodes):
                if cancel is not None and cancel.is_set():
                    raise BootstrapError(node.host, role, HomonculusError("cancelled"))
                self.log.info("bootstrapping K3s master", index=i + 1, total=len(nodes), host=node.host)
                try:
                    self._install(node, command, self.stdout, self.stderr)
                except HomonculusError as e:
                    self.log.error("failed to bootstrap master", host=node.host, error=str(e))
                    raise BootstrapError(node.host, role, e) from e
                self.log.info("K3s master bootstrapped successfully", host=node.host)

    def bootstrap_workers(
        self,
        nodes: Sequence[K3sNodeConfig],
        token: str,
        master_url: str,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Install the K3s agent on all nodes concurrently.

        Output lines are prefixed with the node's host. A failing node does not
        stop the others; once all have finished the first failure is raised.
        """
        role = KubernetesRole.WORKER.value
        if not nodes:
            return

        with log_operation(self.log, "bootstrap_workers", nodes=len(nodes), master_url=master_url):
            command = worker_install_command(token, master_url)
            write_lock = threading.Lock()

            def run(i: int, node: K3sNodeConfig) -> None:
                if cancel is not None and cancel.is_set():
                    raise BootstrapError(node.host, role, HomonculusError("cancelled"))
                self.log.info("bootstrapping K3s worker", index=i + 1, total=len(nodes), host=node.host)
                node_stdout = LinePrefixer(node.host, self.stdout, write_lock)
                node_stderr = LinePrefixer(node.host, self.stderr, write_lock)
                try:
                    self._install(node, command, node_stdout, node_stderr)
                except HomonculusError as e:
                    self.log.error("failed to bootstrap worker", host=node.host, error=str(e))
                    raise BootstrapError(node.host, role, e) from e
                self.log.info("K3s worker bootstrapped successfully", host=node.host)

            max_workers = self.max_parallel or len(nodes)
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="k3s-worker") as pool:
                futures = [pool.submit(run, i, node) for i, node in enumerate(nodes)]

            errors: List[BaseException] = [f.exception() for f in futures if f.exception() is not None]
            if errors:
                raise errors[0]
