"""libvirt hypervisor backend implementation."""

import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

try:
    import libvirt
except ImportError:
    libvirt = None

from ..errors import ExecutionError, HypervisorError, NotFoundError, ValidationError
from ..interfaces.hypervisor import HypervisorContext
from ..logging import get_logger
from ..models import (
    DEFAULT_NUMA_MODE,
    NUMA_MODES,
    DomainState,
    TargetVMSpec,
    VMCreateSpec,
    VMInfo,
)
from ..templates import TEMPLATE_LIBVIRT, TemplateEngine
from ..vm_xml import (
    clone_domain,
    domain_memory_mb,
    domain_vcpu_count,
    file_disks,
    parse_domain,
    to_xml_string,
)
from .fileops import remove_file

log = get_logger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"


def domain_state_to_string(state: int) -> DomainState:
    """Map a libvirt domain state to the stable vocabulary."""
    state_map = {
        libvirt.VIR_DOMAIN_NOSTATE: DomainState.NO_STATE,
        libvirt.VIR_DOMAIN_RUNNING: DomainState.RUNNING,
        libvirt.VIR_DOMAIN_BLOCKED: DomainState.BLOCKED,
        libvirt.VIR_DOMAIN_PAUSED: DomainState.PAUSED,
        libvirt.VIR_DOMAIN_SHUTDOWN: DomainState.SHUTDOWN,
        libvirt.VIR_DOMAIN_SHUTOFF: DomainState.SHUTOFF,
        libvirt.VIR_DOMAIN_CRASHED: DomainState.CRASHED,
        libvirt.VIR_DOMAIN_PMSUSPENDED: DomainState.SUSPENDED,
    }
    return state_map.get(state, DomainState.UNKNOWN)


@dataclass
class ResolvedTuning:
    """Tuning block after validation, ready for the domain template."""

    vcpu_pins: List[Tuple[int, str]] = field(default_factory=list)
    emulator_cpuset: Optional[str] = None
    numa_memory: Optional[Dict[str, str]] = None
    warnings: List[str] = field(default_factory=list)


def resolve_tuning(spec: VMCreateSpec) -> ResolvedTuning:
    """Validate CPU pinning and NUMA placement.

    More pins than vCPUs or an unknown NUMA mode is an error; fewer pins than
    vCPUs leaves the rest unpinned and only produces a warning.
    """
    resolved = ResolvedTuning()
    tuning = spec.tuning
    if tuning is None:
        return resolved

    pins = tuning.vcpu_pins
    if len(pins) > spec.vcpu_count:
        raise ValidationError(
            f"vcpu_pins length ({len(pins)}) exceeds vcpu_count ({spec.vcpu_count})"
        )
    if pins and len(pins) < spec.vcpu_count:
        resolved.warnings.append(
            f"partial CPU pinning: {len(pins)} of {spec.vcpu_count} vCPUs pinned, "
            "remaining vCPUs will not be pinned"
        )
    resolved.vcpu_pins = [(idx, cpuset) for idx, cpuset in enumerate(pins)]
    resolved.emulator_cpuset = tuning.emulator_cpuset or None

    if tuning.numa_memory is not None:
        mode = tuning.numa_memory.mode or DEFAULT_NUMA_MODE
        if mode not in NUMA_MODES:
            raise ValidationError(
                f"invalid NUMA memory mode '{mode}': must be one of {', '.join(NUMA_MODES)}"
            )
        resolved.numa_memory = {"nodeset": tuning.numa_memory.nodeset, "mode": mode}

    return resolved


class LibvirtManager:
    """Domain operations against the connection held in a HypervisorContext."""

    def __init__(self, engine: TemplateEngine):
        self.engine = engine
        self.log = log.bind(component="libvirt")

    # ── lookup ───────────────────────────────────────────────────────────

    def find(self, hypervisor: HypervisorContext, name: str) -> Any:
        """Look up a domain by name."""
        try:
            domain = hypervisor.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise NotFoundError(name) from e
            raise HypervisorError(f"could not look up VM '{name}': {e}") from e
        self.log.debug("found VM", vm=name)
        return domain

    def check_exists(self, hypervisor: HypervisorContext, name: str) -> bool:
        """True if defined, False if libvirt reports no such domain.

        Any other lookup failure propagates.
        """
        try:
            self.find(hypervisor, name)
        except NotFoundError:
            return False
        return True

    def read_descriptor(self, domain: Any) -> ET.Element:
        """Parse the persistent (inactive) XML of a domain."""
        try:
            xml_desc = domain.XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not read domain XML: {e}") from e
        return parse_domain(xml_desc)

    # ── define / start ──────────────────────────────────────────────────

    def define(self, hypervisor: HypervisorContext, spec: VMCreateSpec, vm_uuid: uuid.UUID) -> None:
        """Define (but do not start) a domain for ``spec``."""
        tuning = resolve_tuning(spec)
        for warning in tuning.warnings:
            self.log.warning(
                "partial CPU pinning detected",
                vm=spec.name,
                vcpu_count=spec.vcpu_count,
                vcpu_pins=len(tuning.vcpu_pins),
                note=warning,
            )

        xml_desc = self.engine.render(
            TEMPLATE_LIBVIRT,
            {
                "name": spec.name,
                "uuid": str(vm_uuid),
                "vcpu_count": spec.vcpu_count,
                "memory_kib": spec.memory_mb * 1024,
                "disk_path": spec.disk_path,
                "cloud_init_iso_path": spec.cloud_init_iso_path,
                "bridge_network_interface": spec.bridge_network_interface,
                "vcpu_pins": tuning.vcpu_pins,
                "emulator_cpuset": tuning.emulator_cpuset,
                "numa_memory": tuning.numa_memory,
                "host_bind_mounts": [m.model_dump() for m in spec.host_bind_mounts],
            },
        )
        self.log.debug("rendered libvirt XML", vm=spec.name)

        try:
            hypervisor.conn.defineXML(xml_desc)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not define VM '{spec.name}': {e}") from e
        self.log.info("defined VM in libvirt", vm=spec.name, uuid=str(vm_uuid))

    def start(self, hypervisor: HypervisorContext, name: str) -> None:
        domain = self.find(hypervisor, name)
        try:
            domain.create()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not start VM '{name}': {e}") from e
        self.log.info("started VM", vm=name)

    # ── query ───────────────────────────────────────────────────────────

    def get_info(self, hypervisor: HypervisorContext, name: str) -> VMInfo:
        """Build a fresh VMInfo for ``name``.

        Autostart/persistence and DHCP lease lookups degrade to empty values
        with a warning instead of failing the query.
        """
        domain = self.find(hypervisor, name)

        try:
            vm_uuid = domain.UUIDString()
            state, _reason = domain.state()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not read state of VM '{name}': {e}") from e

        root = self.read_descriptor(domain)

        disks = file_disks(root)
        for disk in disks:
            try:
                disk.size_bytes = domain.blockInfo(disk.path)[0]
            except libvirt.libvirtError as e:
                self.log.debug("could not get disk size", vm=name, path=disk.path, error=str(e))

        try:
            autostart = bool(domain.autostart())
        except libvirt.libvirtError as e:
            self.log.warning("could not get autostart status", vm=name, error=str(e))
            autostart = False

        try:
            persistent = bool(domain.isPersistent())
        except libvirt.libvirtError as e:
            self.log.warning("could not get persistent status", vm=name, error=str(e))
            persistent = False

        info = VMInfo(
            name=name,
            uuid=vm_uuid,
            state=domain_state_to_string(state),
            vcpu_count=domain_vcpu_count(root),
            memory_mb=domain_memory_mb(root),
            disks=disks,
            autostart=autostart,
            persistent=persistent,
        )

        # Leases only exist while the guest runs and has asked for one
        if state == libvirt.VIR_DOMAIN_RUNNING:
            info.hostname = self._lease_hostname(domain, name)
            info.ip_address = self._lease_ipv4(domain, name)

        self.log.debug("retrieved VM info", vm=name, state=info.state.value)
        return info

    def _lease_hostname(self, domain: Any, name: str) -> Optional[str]:
        try:
            hostname = domain.hostname(libvirt.VIR_DOMAIN_GET_HOSTNAME_LEASE)
        except libvirt.libvirtError as e:
            self.log.warning("could not get hostname", vm=name, error=str(e))
            return None
        if not hostname:
            self.log.warning("retrieved empty hostname", vm=name)
            return None
        return hostname

    def _lease_ipv4(self, domain: Any, name: str) -> Optional[str]:
        try:
            ifaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        except libvirt.libvirtError as e:
            self.log.warning("could not get network interface(s)", vm=name, error=str(e))
            return None
        if not ifaces:
            self.log.warning("retrieved no interface", vm=name)
            return None

        for iface in ifaces.values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr") != LOOPBACK_ADDRESS:
                    return addr["addr"]
        return None

    def list_all(self, hypervisor: HypervisorContext) -> List[VMInfo]:
        """Info for every active and inactive domain; unresolvable ones are skipped."""
        flags = libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE | libvirt.VIR_CONNECT_LIST_DOMAINS_INACTIVE
        try:
            domains = hypervisor.conn.listAllDomains(flags)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not list domains: {e}") from e

        infos = []
        for domain in domains:
            try:
                name = domain.name()
            except libvirt.libvirtError as e:
                self.log.warning("could not get domain name", error=str(e))
                continue
            try:
                infos.append(self.get_info(hypervisor, name))
            except (HypervisorError, NotFoundError, ValidationError) as e:
                self.log.warning("could not get VM info", vm=name, error=str(e))

        self.log.debug("listed all VMs", count=len(infos))
        return infos

    # ── delete ──────────────────────────────────────────────────────────

    def delete(self, hypervisor: HypervisorContext, name: str) -> str:
        """Remove disks, stop if needed and undefine. Returns the domain UUID.

        Disk removal is best effort; a failed ``rm`` is logged, not raised.
        """
        domain = self.find(hypervisor, name)
        root = self.read_descriptor(domain)
        try:
            vm_uuid = domain.UUIDString()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not get UUID of VM '{name}': {e}") from e

        for disk in file_disks(root):
            self.log.debug("deleting disk", vm=name, uuid=vm_uuid, type=disk.type, path=disk.path)
            try:
                remove_file(hypervisor.executor, disk.path)
            except ExecutionError as e:
                self.log.warning("failed to delete disk", vm=name, path=disk.path, error=str(e))

        try:
            state, _reason = domain.state()
            if state != libvirt.VIR_DOMAIN_SHUTOFF:
                domain.destroy()
                self.log.debug("destroyed running VM", vm=name, uuid=vm_uuid)
            domain.undefine()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not remove VM '{name}' ({vm_uuid}): {e}", uuid=vm_uuid) from e

        self.log.info("undefined VM from libvirt", vm=name, uuid=vm_uuid)
        return vm_uuid

    # ── clone ───────────────────────────────────────────────────────────

    def clone(
        self,
        hypervisor: HypervisorContext,
        base: ET.Element,
        target: TargetVMSpec,
        vm_uuid: uuid.UUID,
    ) -> None:
        """Define (but do not start) a copy of ``base`` retargeted at ``target``."""
        new_root = clone_domain(
            base,
            name=target.name,
            uuid=str(vm_uuid),
            vcpu_count=target.vcpu_count,
            memory_mb=target.memory_mb,
            disk_path=target.disk_path,
        )
        try:
            hypervisor.conn.defineXML(to_xml_string(new_root))
        except libvirt.libvirtError as e:
            raise HypervisorError(f"could not define cloned VM '{target.name}': {e}") from e
        self.log.info("defined cloned VM in libvirt", vm=target.name, uuid=str(vm_uuid))
