"""
Pytest fixtures and configuration for Homonculus tests.
"""
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, TextIO, Tuple
from unittest.mock import MagicMock, patch

import pytest

from homonculus.errors import ExecutionError
from homonculus.interfaces.hypervisor import HypervisorContext
from homonculus.interfaces.process import CommandExecutor, format_command


class FakeLibvirtError(Exception):
    """Stand-in for libvirt.libvirtError carrying an error code."""

    def __init__(self, msg: str, code: int = 1):
        super().__init__(msg)
        self.code = code

    def get_error_code(self) -> int:
        return self.code


def make_fake_libvirt():
    """Namespace with the libvirt constants and error class the code uses."""
    return SimpleNamespace(
        libvirtError=FakeLibvirtError,
        VIR_ERR_NO_DOMAIN=42,
        VIR_DOMAIN_XML_INACTIVE=2,
        VIR_DOMAIN_NOSTATE=0,
        VIR_DOMAIN_RUNNING=1,
        VIR_DOMAIN_BLOCKED=2,
        VIR_DOMAIN_PAUSED=3,
        VIR_DOMAIN_SHUTDOWN=4,
        VIR_DOMAIN_SHUTOFF=5,
        VIR_DOMAIN_CRASHED=6,
        VIR_DOMAIN_PMSUSPENDED=7,
        VIR_CONNECT_LIST_DOMAINS_ACTIVE=1,
        VIR_CONNECT_LIST_DOMAINS_INACTIVE=2,
        VIR_DOMAIN_GET_HOSTNAME_LEASE=1,
        VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE=0,
        VIR_IP_ADDR_TYPE_IPV4=0,
        VIR_IP_ADDR_TYPE_IPV6=1,
        open=MagicMock(),
    )


class FakeExecutor(CommandExecutor):
    """Records every command; fails commands whose name is in ``fail``."""

    def __init__(self, fail: Optional[Dict[str, int]] = None, output: str = ""):
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.fail = dict(fail or {})
        self.output = output
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ) -> int:
        self.calls.append((command, tuple(args)))
        if self.output and stdout is not None:
            stdout.write(self.output)
        program = command.split(" ", 1)[0]
        if program in self.fail:
            if stderr is not None:
                stderr.write(f"{program} failed\n")
            raise ExecutionError(format_command(command, args), exit_code=self.fail[program])
        return 0

    def close(self) -> None:
        self.closed = True

    def commands(self) -> List[str]:
        return [c for c, _ in self.calls]

    def removed_paths(self) -> List[str]:
        return [args[-1] for c, args in self.calls if c == "rm"]


BASE_DOMAIN_XML = """<domain type='kvm'>
  <name>base</name>
  <uuid>11111111-2222-3333-4444-555555555555</uuid>
  <memory unit='KiB'>2097152</memory>
  <currentMemory unit='KiB'>2097152</currentMemory>
  <vcpu placement='static'>2</vcpu>
  <os><type arch='x86_64' machine='q35'>hvm</type></os>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='/var/lib/libvirt/images/base.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='/var/lib/libvirt/images/base-cidata.iso'/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>
    <interface type='bridge'>
      <source bridge='br0'/>
      <model type='virtio'/>
    </interface>
  </devices>
</domain>
"""


def make_domain(
    name: str = "base",
    state: int = 1,
    xml: str = BASE_DOMAIN_XML,
    uuid: str = "11111111-2222-3333-4444-555555555555",
) -> MagicMock:
    domain = MagicMock()
    domain.name.return_value = name
    domain.UUIDString.return_value = uuid
    domain.state.return_value = (state, 1)
    domain.XMLDesc.return_value = xml
    domain.autostart.return_value = 0
    domain.isPersistent.return_value = 1
    domain.blockInfo.return_value = [10 * 1024 ** 3, 1024, 1024]
    return domain


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_libvirt():
    """Patch the libvirt module used by the backend and the connection manager."""
    fake = make_fake_libvirt()
    with patch("homonculus.backends.libvirt_backend.libvirt", fake), patch(
        "homonculus.connection.libvirt", fake
    ):
        yield fake


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def conn():
    """Mock libvirt connection with no domains defined."""
    connection = MagicMock()
    connection.lookupByName.side_effect = FakeLibvirtError("Domain not found", code=42)
    connection.isAlive.return_value = 1
    connection.listAllDomains.return_value = []
    return connection


@pytest.fixture
def hypervisor(conn, executor):
    return HypervisorContext(conn=conn, executor=executor, uri="qemu:///system")


@pytest.fixture
def vm_spec_data():
    """Raw definition of a VM as it appears in a request file."""
    return {
        "name": "k3s-master-1",
        "vcpu": 2,
        "memory_mb": 2048,
        "disk_path": "/var/lib/libvirt/images/k3s-master-1.qcow2",
        "disk_size_gb": 20,
        "base_image_path": "/var/lib/libvirt/images/ubuntu-24.04.qcow2",
        "cloud_init_iso_path": "/var/lib/libvirt/images/k3s-master-1-cidata.iso",
        "role": "master",
        "user_configs": [
            {
                "username": "ubuntu",
                "ssh_authorized_keys": ["ssh-ed25519 AAAAC3Nza test@host"],
                "passwd": "$6$salt$hash",
            }
        ],
        "runcmds": ["systemctl enable --now qemu-guest-agent"],
    }


@pytest.fixture
def vm_spec(vm_spec_data):
    from homonculus.models import VMCreateSpec

    return VMCreateSpec.model_validate(vm_spec_data)


# Markers for test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "integration: Integration tests")
