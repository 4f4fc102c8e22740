"""
Pydantic models for Homonculus VM and cluster definitions.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional, Type, TypeVar

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from homonculus.errors import ValidationError

M = TypeVar("M", bound=BaseModel)

NUMA_MODES = ("strict", "preferred", "interleave")
DEFAULT_NUMA_MODE = "preferred"


class KubernetesRole(str, Enum):
    MASTER = "master"
    WORKER = "worker"


class DomainState(str, Enum):
    """Stable vocabulary for libvirt domain states."""

    NO_STATE = "no-state"
    RUNNING = "running"
    BLOCKED = "blocked"
    PAUSED = "paused"
    SHUTDOWN = "shutdown"
    SHUTOFF = "shutoff"
    CRASHED = "crashed"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class UserConfig(BaseModel):
    """A cloud-init user account."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    ssh_authorized_keys: List[str] = Field(default_factory=list)
    password_hash: Optional[str] = Field(
        default=None, alias="passwd", description="Pre-hashed password (crypt format)"
    )


class HostBindMount(BaseModel):
    """Host directory shared into the guest with virtiofs."""

    source_dir: str
    target_dir: str


class NUMAMemory(BaseModel):
    nodeset: str
    # Validated (and defaulted) when the domain is defined
    mode: Optional[str] = None


class Tuning(BaseModel):
    """CPU pinning and NUMA placement for a domain."""

    vcpu_pins: List[str] = Field(
        default_factory=list, description="Host cpuset per vCPU, indexed by vCPU number"
    )
    emulator_cpuset: Optional[str] = None
    numa_memory: Optional[NUMAMemory] = None


class VMCreateSpec(BaseModel):
    """Everything needed to create one virtual machine."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(description="VM name, unique per hypervisor")
    vcpu_count: int = Field(alias="vcpu", ge=1, le=512)
    memory_mb: int = Field(ge=1)
    disk_path: str
    disk_size_gb: int = Field(ge=1)
    base_image_path: str
    bridge_network_interface: str = "br0"
    cloud_init_iso_path: Optional[str] = None
    host_bind_mounts: List[HostBindMount] = Field(default_factory=list)
    role: Optional[KubernetesRole] = None
    do_package_update: bool = False
    do_package_upgrade: bool = False
    runcmds: List[str] = Field(default_factory=list)
    user_configs: List[UserConfig] = Field(default_factory=list)
    tuning: Optional[Tuning] = None
    ipv4_address: Optional[str] = None
    ipv4_gateway_address: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_must_be_valid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("VM name cannot be empty")
        return v.strip()


class TargetVMSpec(BaseModel):
    """A clone target. ``base_image_path`` is filled in from the base VM."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    vcpu_count: int = Field(alias="vcpu", ge=1, le=512)
    memory_mb: int = Field(ge=1)
    disk_path: str
    disk_size_gb: int = Field(ge=1)
    base_image_path: Optional[str] = Field(default=None, exclude=True)


class VMName(BaseModel):
    name: str


class DiskInfo(BaseModel):
    path: str
    type: Optional[str] = Field(default=None, description="Driver format, e.g. qcow2 or raw")
    device: Optional[str] = Field(default=None, description="disk, cdrom, ...")
    size_bytes: Optional[int] = None


class VMInfo(BaseModel):
    """Point-in-time view of a domain. Never cached."""

    name: str
    uuid: str
    state: DomainState
    vcpu_count: int
    memory_mb: int
    disks: List[DiskInfo] = Field(default_factory=list)
    autostart: bool = False
    persistent: bool = False
    hostname: Optional[str] = None
    ip_address: Optional[str] = None


class CreateClusterRequest(BaseModel):
    virtual_machines: List[VMCreateSpec]


class DeleteClusterRequest(BaseModel):
    virtual_machines: List[VMName]


class StartClusterRequest(BaseModel):
    virtual_machines: List[VMName]


class QueryClusterRequest(BaseModel):
    virtual_machines: List[VMName] = Field(default_factory=list)


class CloneClusterRequest(BaseModel):
    base_virtual_machine: VMName
    target_virtual_machines: List[TargetVMSpec]


class K3sNodeConfig(BaseModel):
    """SSH coordinates of a node."""

    host: str
    ssh_user: str
    ssh_key: str = Field(description="Path to the private key, '~' allowed")
    ssh_port: int = 22

    @field_validator("ssh_port")
    @classmethod
    def default_port(cls, v: int) -> int:
        return v or 22


class K3sMasterBootstrapConfig(BaseModel):
    nodes: List[K3sNodeConfig]
    token: str


class K3sWorkerBootstrapConfig(BaseModel):
    nodes: List[K3sNodeConfig]
    token: str
    master_url: str = Field(description="e.g. https://192.168.122.100:6443")


def load_model_file(path: Path, model: Type[M]) -> M:
    """Load a YAML or JSON definition file into ``model``."""
    path = Path(path).expanduser()
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping")

    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid definition in {path}: {e}") from e
