#!/usr/bin/env python3
"""
Shared utilities for Homonculus CLI.
"""

from typing import Iterable, List

from rich.console import Console
from rich.table import Table

from homonculus.backends.libvirt_backend import LibvirtManager
from homonculus.backends.qemu_disk import QemuDiskManager
from homonculus.cloud_init import BootMediaManager
from homonculus.config import Settings
from homonculus.connection import ConnectionManager
from homonculus.models import VMInfo
from homonculus.orchestrator import VMOperationResult, VMOperationState, VMOrchestrator
from homonculus.templates import create_default_engine

console = Console()

_STATE_STYLES = {
    VMOperationState.SUCCEEDED: "green",
    VMOperationState.SKIPPED: "yellow",
    VMOperationState.FAILED: "red",
    VMOperationState.CANCELLED: "dim",
}


def build_orchestrator(settings: Settings) -> VMOrchestrator:
    """Wire the orchestrator and its collaborators from settings."""
    engine = create_default_engine(
        meta_data=settings.cloudinit_meta_data,
        network_config=settings.cloudinit_network_config,
    )
    return VMOrchestrator(
        ConnectionManager(settings.libvirt_uri),
        QemuDiskManager(),
        BootMediaManager(engine),
        LibvirtManager(engine),
    )


def print_results(title: str, results: Iterable[VMOperationResult]) -> None:
    table = Table(title=title)
    table.add_column("Name", style="cyan")
    table.add_column("Result")
    table.add_column("UUID", style="dim")
    table.add_column("Error", style="red")

    for result in results:
        style = _STATE_STYLES[result.state]
        table.add_row(
            result.name,
            f"[{style}]{result.state.value}[/{style}]",
            result.uuid or "-",
            result.error or "",
        )
    console.print(table)


def print_vm_table(infos: List[VMInfo]) -> None:
    table = Table(title="Virtual Machines")
    table.add_column("Name", style="cyan")
    table.add_column("State", style="green")
    table.add_column("IP", style="yellow")
    table.add_column("Memory", style="blue")
    table.add_column("vCPUs", style="magenta")
    table.add_column("Disks")

    for vm in infos:
        state_style = "green" if vm.state.value == "running" else "red"
        table.add_row(
            vm.name,
            f"[{state_style}]{vm.state.value}[/{state_style}]",
            vm.ip_address or "-",
            f"{vm.memory_mb} MB",
            str(vm.vcpu_count),
            ", ".join(d.path for d in vm.disks) or "-",
        )
    console.print(table)
