"""
Compensating cleanup for partially completed VM provisioning.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List

from homonculus.backends.fileops import remove_file
from homonculus.interfaces.process import CommandExecutor
from homonculus.logging import get_logger

log = get_logger(__name__)


@dataclass
class RollbackAction:
    """A single rollback action."""

    description: str
    action: Callable[[], None]


@dataclass
class RollbackContext:
    """
    Unwinds registered artifacts in reverse order when the block fails.

    Usage:
        with RollbackContext("create vm-1") as rb:
            rb.add_file(executor, disk_path)
            create_disk()
            rb.add_file(executor, iso_path)
            create_iso()  # failure here removes the ISO, then the disk
            define_domain()
            rb.commit()

    Cleanup failures are logged and collected, never raised, so the original
    exception always propagates.
    """

    operation_name: str
    _actions: List[RollbackAction] = field(default_factory=list)
    _committed: bool = False
    errors: List[str] = field(default_factory=list)
    _log: Any = None

    def __post_init__(self):
        self._log = log.bind(operation=self.operation_name)

    def add_file(self, executor: CommandExecutor, path: str) -> str:
        """Register a file created through ``executor`` for removal on rollback."""
        self._actions.append(
            RollbackAction(description=f"remove {path}", action=lambda: remove_file(executor, path))
        )
        self._log.debug("registered file for rollback", path=path)
        return path

    def add_action(self, description: str, action: Callable[[], None]) -> None:
        """Register a custom rollback action."""
        self._actions.append(RollbackAction(description=description, action=action))
        self._log.debug("registered action for rollback", action=description)

    def commit(self) -> None:
        """Mark operation as successful, preventing rollback."""
        self._committed = True

    def rollback(self) -> List[str]:
        """Execute rollback actions newest first. Returns list of errors."""
        for action in reversed(self._actions):
            try:
                self._log.info("rollback action", action=action.description)
                action.action()
            except Exception as e:
                error_msg = f"rollback action '{action.description}' failed: {e}"
                self.errors.append(error_msg)
                self._log.warning("rollback action failed", action=action.description, error=str(e))
        self._actions.clear()
        return self.errors

    def __enter__(self) -> "RollbackContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None and not self._committed:
            self.rollback()
        return False  # Don't suppress the exception
