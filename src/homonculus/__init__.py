"""
Homonculus - provision libvirt virtual machines and bootstrap K3s clusters.

Turns declarative VM definitions into disks, cloud-init media and libvirt
domains against a single shared hypervisor connection, and rolls K3s out
to the resulting nodes over SSH.
"""

__version__ = "0.3.0"
__author__ = "Terabiome"

from homonculus.connection import ConnectionManager
from homonculus.orchestrator import VMOrchestrator

__all__ = ["ConnectionManager", "VMOrchestrator", "__version__"]
