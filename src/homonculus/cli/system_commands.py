#!/usr/bin/env python3
"""
Host inspection commands for Homonculus CLI.
"""

from typing import List, Tuple

from homonculus.backends.subprocess_runner import LocalExecutor
from homonculus.errors import ExecutionError
from homonculus.interfaces.process import CommandExecutor, run_and_capture
from homonculus.logging import get_logger
from homonculus.cli.utils import console

log = get_logger(__name__)


def _indent(text: str) -> str:
    return "\n".join(f"  {line}" for line in text.splitlines() if line.strip())


def system_report(executor: CommandExecutor) -> List[Tuple[str, str]]:
    """NUMA topology and CPU layout of the hypervisor host.

    Falls back to ``lscpu`` when ``numactl`` is missing or fails, so hosts
    without numactl installed still show their node/CPU mapping.
    """
    try:
        numa = run_and_capture(executor, "numactl", "--hardware")
    except ExecutionError as e:
        log.warning("numactl not available, falling back to lscpu", error=str(e))
        numa = run_and_capture(executor, "lscpu")
    cpu = run_and_capture(executor, "lscpu")
    return [("NUMA Topology", numa.stdout), ("CPU Information", cpu.stdout)]


def cmd_system_info(args):
    """Show the host topology used to pick vCPU pins and NUMA nodesets."""
    with LocalExecutor() as executor:
        sections = system_report(executor)

    console.print("[bold]=== System Information ===[/]")
    for title, body in sections:
        console.print(f"\n[bold cyan]{title}:[/]")
        console.print(_indent(body), markup=False, highlight=False)
