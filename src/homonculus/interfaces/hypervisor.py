"""Runtime handles threaded through every hypervisor-touching call."""

from dataclasses import dataclass
from typing import Any

from .process import CommandExecutor


@dataclass(frozen=True)
class HypervisorContext:
    """Connection, executor and URI held for one cluster operation.

    Only valid between ``ConnectionManager.acquire()`` and its release.
    """

    conn: Any
    executor: CommandExecutor
    uri: str
