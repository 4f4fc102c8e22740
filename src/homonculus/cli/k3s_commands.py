#!/usr/bin/env python3
"""
K3s bootstrap commands for Homonculus CLI.
"""

from pathlib import Path

from homonculus.k3s import BootstrapService, generate_token
from homonculus.models import K3sMasterBootstrapConfig, K3sWorkerBootstrapConfig, load_model_file
from homonculus.cli.utils import console


def _service(args) -> BootstrapService:
    settings = args.settings
    return BootstrapService(
        host_key_policy=settings.ssh_host_key_policy,
        connect_timeout=settings.ssh_connect_timeout,
        max_parallel=settings.bootstrap_max_parallel,
    )


def cmd_k3s_master(args):
    """Install K3s servers, one node after another."""
    config = load_model_file(Path(args.file), K3sMasterBootstrapConfig)
    _service(args).bootstrap_masters(config.nodes, config.token)
    console.print(f"[green]✅ Bootstrapped {len(config.nodes)} K3s master(s)[/]")


def cmd_k3s_worker(args):
    """Install K3s agents on all nodes in parallel."""
    config = load_model_file(Path(args.file), K3sWorkerBootstrapConfig)
    _service(args).bootstrap_workers(config.nodes, config.token, config.master_url)
    console.print(f"[green]✅ Bootstrapped {len(config.nodes)} K3s worker(s)[/]")


def cmd_k3s_token(args):
    """Print a fresh cluster token."""
    print(generate_token())
