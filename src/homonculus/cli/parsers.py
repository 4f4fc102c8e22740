#!/usr/bin/env python3
"""
Argument parsers for Homonculus CLI.
"""

import argparse
import sys

from homonculus import __version__
from homonculus.config import load_settings
from homonculus.errors import HomonculusError
from homonculus.logging import configure_logging
from homonculus.cli.utils import console
from homonculus.cli.vm_commands import (
    cmd_vm_clone,
    cmd_vm_create,
    cmd_vm_delete,
    cmd_vm_query,
    cmd_vm_start,
)
from homonculus.cli.k3s_commands import cmd_k3s_master, cmd_k3s_token, cmd_k3s_worker
from homonculus.cli.system_commands import cmd_system_info


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homonculus", description="Provision libvirt VM clusters and bootstrap K3s on them"
    )
    parser.add_argument("--version", action="version", version=f"homonculus {__version__}")
    parser.add_argument("--config", "-c", help="Settings file (default: ~/.config/homonculus/config.yaml)")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Override the configured log level",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # VM commands
    vm_parser = subparsers.add_parser("vm", help="Manage virtual machine clusters")
    vm_sub = vm_parser.add_subparsers(dest="vm_command", help="VM commands")

    vm_create = vm_sub.add_parser("create", help="Create VMs from a definition file")
    vm_create.add_argument("file", help="YAML/JSON file with virtual_machines")
    vm_create.add_argument("--start", "-s", action="store_true", help="Start VMs after creation")
    vm_create.set_defaults(func=cmd_vm_create)

    vm_delete = vm_sub.add_parser("delete", aliases=["rm"], help="Delete VMs and their disks")
    vm_delete.add_argument("file", help="YAML/JSON file with virtual_machines")
    vm_delete.set_defaults(func=cmd_vm_delete)

    vm_start = vm_sub.add_parser("start", help="Start defined VMs")
    vm_start.add_argument("file", help="YAML/JSON file with virtual_machines")
    vm_start.set_defaults(func=cmd_vm_start)

    vm_query = vm_sub.add_parser("query", aliases=["ls"], help="Show VM state")
    vm_query.add_argument("file", nargs="?", default=None, help="Optional file naming the VMs")
    vm_query.add_argument("--json", action="store_true", help="Output JSON")
    vm_query.set_defaults(func=cmd_vm_query)

    vm_clone = vm_sub.add_parser("clone", help="Clone a base VM")
    vm_clone.add_argument("file", help="YAML/JSON file with base and target VMs")
    vm_clone.set_defaults(func=cmd_vm_clone)

    # K3s commands
    k3s_parser = subparsers.add_parser("k3s", help="Bootstrap K3s on provisioned nodes")
    k3s_sub = k3s_parser.add_subparsers(dest="k3s_command", help="K3s commands")

    bootstrap_parser = k3s_sub.add_parser("bootstrap", help="Install K3s over SSH")
    bootstrap_sub = bootstrap_parser.add_subparsers(dest="role", help="Node role")

    master = bootstrap_sub.add_parser("master", help="Install K3s servers sequentially")
    master.add_argument("file", help="YAML/JSON file with nodes and token")
    master.set_defaults(func=cmd_k3s_master)

    worker = bootstrap_sub.add_parser("worker", help="Install K3s agents in parallel")
    worker.add_argument("file", help="YAML/JSON file with nodes, token and master_url")
    worker.set_defaults(func=cmd_k3s_worker)

    token = k3s_sub.add_parser("token", help="Generate a cluster token")
    token.set_defaults(func=cmd_k3s_token)

    # System commands
    system_parser = subparsers.add_parser("system", help="Inspect the hypervisor host")
    system_sub = system_parser.add_subparsers(dest="system_command", help="System commands")

    info = system_sub.add_parser("info", help="Show NUMA topology and CPU layout")
    info.set_defaults(func=cmd_system_info)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(2)

    try:
        args.settings = load_settings(args.config)
        if args.log_level:
            args.settings.log_level = args.log_level
        if args.json_logs:
            args.settings.log_format = "json"
        configure_logging(
            level=args.settings.log_level.upper(),
            json_output=args.settings.log_format == "json",
            log_file=args.settings.log_file,
        )
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        sys.exit(1)
    except HomonculusError as e:
        console.print(f"[red]Error: {e}[/]")
        sys.exit(1)
