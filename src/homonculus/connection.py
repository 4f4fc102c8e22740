"""
Exclusive access to the hypervisor connection and its local executor.
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple

try:
    import libvirt
except ImportError:
    libvirt = None

from homonculus.backends.subprocess_runner import LocalExecutor
from homonculus.errors import HypervisorConnectionError
from homonculus.interfaces.hypervisor import HypervisorContext
from homonculus.interfaces.process import CommandExecutor
from homonculus.logging import get_logger

log = get_logger(__name__)


class ConnectionManager:
    """
    Owns one libvirt connection and one local executor.

    Every cluster operation holds the manager for its whole duration, so
    batches never interleave. The held connection is health-checked on each
    acquire and reopened only when it is no longer alive.

    Usage:
        manager = ConnectionManager("qemu:///system")
        with manager.hypervisor() as hv:
            hv.conn.lookupByName("vm-1")
    """

    def __init__(self, uri: str, executor: Optional[CommandExecutor] = None):
        self.uri = uri
        self.executor = executor or LocalExecutor()
        self.log = log.bind(component="connection", uri=uri)
        self._lock = threading.Lock()
        self._closed = False
        self._conn = self._connect()
        self.log.info("connected to hypervisor")

    def _connect(self) -> Any:
        if libvirt is None:
            raise HypervisorConnectionError("libvirt-python is not installed")
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            raise HypervisorConnectionError(f"cannot connect to {self.uri}: {e}") from e
        if conn is None:
            raise HypervisorConnectionError(f"cannot connect to {self.uri}")
        return conn

    def _is_alive(self) -> bool:
        try:
            return bool(self._conn.isAlive())
        except libvirt.libvirtError as e:
            self.log.warning("connection health check failed", error=str(e))
            return False

    def _reconnect(self) -> None:
        self.log.warning("connection is not alive, reconnecting")
        try:
            self._conn.close()
        except libvirt.libvirtError as e:
            self.log.debug("error closing stale connection", error=str(e))
        self._conn = self._connect()
        self.log.info("reconnected to hypervisor")

    def acquire(self) -> Tuple[Any, CommandExecutor, Callable[[], None]]:
        """Block until the connection is free and return it with a release callback.

        The callback must be called exactly once. If a reconnect is needed and
        fails, the lock is released before ``HypervisorConnectionError`` is raised.
        """
        self._lock.acquire()
        try:
            if self._closed:
                raise HypervisorConnectionError("connection manager is closed")
            if not self._is_alive():
                self._reconnect()
        except BaseException:
            self._lock.release()
            raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                raise RuntimeError("connection already released")
            released = True
            self._lock.release()

        return self._conn, self.executor, release

    @contextmanager
    def hypervisor(self) -> Iterator[HypervisorContext]:
        conn, executor, release = self.acquire()
        try:
            yield HypervisorContext(conn=conn, executor=executor, uri=self.uri)
        finally:
            release()

    def close(self) -> None:
        """Close the connection and executor. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.close()
            except libvirt.libvirtError as e:
                self.log.warning("error closing connection", error=str(e))
            self.executor.close()
        self.log.info("connection closed")

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
