#!/usr/bin/env python3
"""
VM cluster commands for Homonculus CLI.
"""

import json
from contextlib import contextmanager
from pathlib import Path

from homonculus.errors import PartialBatchFailure
from homonculus.models import (
    CloneClusterRequest,
    CreateClusterRequest,
    DeleteClusterRequest,
    QueryClusterRequest,
    StartClusterRequest,
    load_model_file,
)
from homonculus.cli.utils import build_orchestrator, console, print_results, print_vm_table


@contextmanager
def _orchestrator(args):
    orchestrator = build_orchestrator(args.settings)
    try:
        yield orchestrator
    finally:
        orchestrator.conn_manager.close()


def _run_batch(title: str, run) -> None:
    try:
        results = run()
    except PartialBatchFailure as e:
        print_results(title, e.results)
        raise
    print_results(title, results)


def cmd_vm_create(args):
    """Create VMs from a definition file."""
    request = load_model_file(Path(args.file), CreateClusterRequest)
    with _orchestrator(args) as orch:
        _run_batch(
            "Create",
            lambda: orch.create_cluster(request.virtual_machines, start=args.start),
        )
    console.print(f"[green]✅ Created virtual machine cluster ({len(request.virtual_machines)} VMs)[/]")


def cmd_vm_delete(args):
    """Delete VMs and their disks."""
    request = load_model_file(Path(args.file), DeleteClusterRequest)
    with _orchestrator(args) as orch:
        _run_batch("Delete", lambda: orch.delete_cluster(request.virtual_machines))
    console.print("[green]✅ Deleted virtual machine cluster[/]")


def cmd_vm_start(args):
    """Start defined VMs."""
    request = load_model_file(Path(args.file), StartClusterRequest)
    with _orchestrator(args) as orch:
        _run_batch("Start", lambda: orch.start_cluster(request.virtual_machines))
    console.print("[green]✅ Started virtual machine cluster[/]")


def cmd_vm_query(args):
    """Show VM state; every VM when no file is given."""
    if args.file:
        request = load_model_file(Path(args.file), QueryClusterRequest)
    else:
        request = QueryClusterRequest()

    with _orchestrator(args) as orch:
        try:
            infos = orch.query_cluster(request.virtual_machines)
        except PartialBatchFailure as e:
            _print_infos(args, e.results)
            raise
    _print_infos(args, infos)


def _print_infos(args, infos):
    if args.json:
        print(json.dumps([i.model_dump(mode="json") for i in infos], indent=2))
    elif not infos:
        console.print("[dim]No VMs found.[/]")
    else:
        print_vm_table(infos)


def cmd_vm_clone(args):
    """Clone a base VM into new targets."""
    request = load_model_file(Path(args.file), CloneClusterRequest)
    with _orchestrator(args) as orch:
        _run_batch(
            "Clone",
            lambda: orch.clone_cluster(
                request.base_virtual_machine.name, request.target_virtual_machines
            ),
        )
    console.print(
        f"[green]✅ Cloned {request.base_virtual_machine.name} "
        f"into {len(request.target_virtual_machines)} VMs[/]"
    )
