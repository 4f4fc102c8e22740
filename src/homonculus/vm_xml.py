"""
Libvirt domain XML: rendering, parsing and clone mutation.
"""

import copy
import xml.etree.ElementTree as ET
from typing import Any, List, Mapping, Optional

from homonculus.errors import ValidationError
from homonculus.models import DiskInfo

# Multipliers to KiB for the memory units libvirt accepts
_UNIT_TO_KIB = {
    "b": 1 / 1024,
    "bytes": 1 / 1024,
    "kb": 1000 / 1024,
    "k": 1,
    "kib": 1,
    "mb": 1000 * 1000 / 1024,
    "m": 1024,
    "mib": 1024,
    "gb": 1000 * 1000 * 1000 / 1024,
    "g": 1024 * 1024,
    "gib": 1024 * 1024,
}


def render_domain_xml(variables: Mapping[str, Any]) -> str:
    """Generate libvirt domain XML from a variable bag.

    Expected keys: name, uuid, memory_kib, vcpu_count, disk_path,
    bridge_network_interface and optionally cloud_init_iso_path, vcpu_pins
    (list of (vcpu, cpuset)), emulator_cpuset, numa_memory ({nodeset, mode})
    and host_bind_mounts (list of {source_dir, target_dir}).
    """
    vcpu_pins = variables.get("vcpu_pins") or []
    emulator_cpuset = variables.get("emulator_cpuset")
    numa_memory = variables.get("numa_memory")
    bind_mounts = variables.get("host_bind_mounts") or []
    cdrom_path = variables.get("cloud_init_iso_path")

    domain = ET.Element("domain", type="kvm")
    ET.SubElement(domain, "name").text = variables["name"]
    ET.SubElement(domain, "uuid").text = str(variables["uuid"])

    memory_kib = str(variables["memory_kib"])
    ET.SubElement(domain, "memory", unit="KiB").text = memory_kib
    ET.SubElement(domain, "currentMemory", unit="KiB").text = memory_kib

    # virtiofs needs shared guest memory
    if bind_mounts:
        backing = ET.SubElement(domain, "memoryBacking")
        ET.SubElement(backing, "source", type="memfd")
        ET.SubElement(backing, "access", mode="shared")

    ET.SubElement(domain, "vcpu", placement="static").text = str(variables["vcpu_count"])

    if vcpu_pins or emulator_cpuset:
        cputune = ET.SubElement(domain, "cputune")
        for vcpu, cpuset in vcpu_pins:
            ET.SubElement(cputune, "vcpupin", vcpu=str(vcpu), cpuset=cpuset)
        if emulator_cpuset:
            ET.SubElement(cputune, "emulatorpin", cpuset=emulator_cpuset)

    if numa_memory:
        numatune = ET.SubElement(domain, "numatune")
        ET.SubElement(
            numatune, "memory", mode=numa_memory["mode"], nodeset=numa_memory["nodeset"]
        )

    os_elem = ET.SubElement(domain, "os")
    ET.SubElement(os_elem, "type", arch="x86_64", machine="q35").text = "hvm"
    ET.SubElement(os_elem, "boot", dev="hd")

    features = ET.SubElement(domain, "features")
    ET.SubElement(features, "acpi")
    ET.SubElement(features, "apic")

    ET.SubElement(domain, "cpu", mode="host-passthrough", check="none", migratable="on")

    clock = ET.SubElement(domain, "clock", offset="utc")
    ET.SubElement(clock, "timer", name="rtc", tickpolicy="catchup")
    ET.SubElement(clock, "timer", name="pit", tickpolicy="delay")
    ET.SubElement(clock, "timer", name="hpet", present="no")

    ET.SubElement(domain, "on_poweroff").text = "destroy"
    ET.SubElement(domain, "on_reboot").text = "restart"
    ET.SubElement(domain, "on_crash").text = "destroy"

    devices = ET.SubElement(domain, "devices")

    disk = ET.SubElement(devices, "disk", type="file", device="disk")
    ET.SubElement(disk, "driver", name="qemu", type="qcow2", discard="unmap")
    ET.SubElement(disk, "source", file=variables["disk_path"])
    ET.SubElement(disk, "target", dev="vda", bus="virtio")

    if cdrom_path:
        cdrom = ET.SubElement(devices, "disk", type="file", device="cdrom")
        ET.SubElement(cdrom, "driver", name="qemu", type="raw")
        ET.SubElement(cdrom, "source", file=cdrom_path)
        ET.SubElement(cdrom, "target", dev="sda", bus="sata")
        ET.SubElement(cdrom, "readonly")

    interface = ET.SubElement(devices, "interface", type="bridge")
    ET.SubElement(interface, "source", bridge=variables["bridge_network_interface"])
    ET.SubElement(interface, "model", type="virtio")

    for idx, mount in enumerate(bind_mounts):
        fs = ET.SubElement(devices, "filesystem", type="mount", accessmode="passthrough")
        ET.SubElement(fs, "driver", type="virtiofs")
        ET.SubElement(fs, "source", dir=mount["source_dir"])
        ET.SubElement(fs, "target", dir=mount_tag(idx))

    serial = ET.SubElement(devices, "serial", type="pty")
    ET.SubElement(serial, "target", type="isa-serial", port="0")
    console = ET.SubElement(devices, "console", type="pty")
    ET.SubElement(console, "target", type="serial", port="0")

    channel = ET.SubElement(devices, "channel", type="unix")
    ET.SubElement(channel, "target", type="virtio", name="org.qemu.guest_agent.0")

    ET.SubElement(devices, "memballoon", model="virtio")
    rng = ET.SubElement(devices, "rng", model="virtio")
    ET.SubElement(rng, "backend", model="random").text = "/dev/urandom"

    ET.indent(domain, space="  ")
    return ET.tostring(domain, encoding="unicode")


def mount_tag(idx: int) -> str:
    """virtiofs tag shared between the domain XML and cloud-init mounts."""
    return f"mount{idx}"


def parse_domain(xml_desc: str) -> ET.Element:
    try:
        root = ET.fromstring(xml_desc)
    except ET.ParseError as e:
        raise ValidationError(f"could not parse domain XML: {e}") from e
    if root.tag != "domain":
        raise ValidationError(f"not a domain document: <{root.tag}>")
    return root


def to_xml_string(root: ET.Element) -> str:
    return ET.tostring(root, encoding="unicode")


def memory_to_kib(value: str, unit: Optional[str] = None) -> int:
    factor = _UNIT_TO_KIB.get((unit or "KiB").lower())
    if factor is None:
        raise ValidationError(f"unknown memory unit: {unit}")
    return int(int(value) * factor)


def domain_memory_mb(root: ET.Element) -> int:
    """Current memory in MiB, falling back to max memory."""
    elem = root.find("currentMemory")
    if elem is None:
        elem = root.find("memory")
    if elem is None or not elem.text:
        return 0
    return memory_to_kib(elem.text.strip(), elem.get("unit")) // 1024


def domain_vcpu_count(root: ET.Element) -> int:
    elem = root.find("vcpu")
    if elem is None or not elem.text:
        return 0
    return int(elem.text.strip())


def file_disks(root: ET.Element) -> List[DiskInfo]:
    """Disks backed by a plain file, in device order."""
    disks = []
    for disk in root.findall("./devices/disk"):
        source = disk.find("source")
        if source is None or not source.get("file"):
            continue
        driver = disk.find("driver")
        disks.append(
            DiskInfo(
                path=source.get("file"),
                device=disk.get("device"),
                type=driver.get("type") if driver is not None else None,
            )
        )
    return disks


def _first_qcow2_disk(root: ET.Element) -> Optional[ET.Element]:
    for disk in root.findall("./devices/disk"):
        driver = disk.find("driver")
        if driver is not None and driver.get("type") == "qcow2":
            return disk
    return None


def qcow2_backing_path(root: ET.Element) -> Optional[str]:
    """Source file of the first qcow2 disk."""
    disk = _first_qcow2_disk(root)
    if disk is None:
        return None
    source = disk.find("source")
    return source.get("file") if source is not None else None


def _set_memory(root: ET.Element, tag: str, kib: int) -> None:
    elem = root.find(tag)
    if elem is None:
        elem = ET.SubElement(root, tag)
    elem.text = str(kib)
    elem.set("unit", "KiB")


def clone_domain(
    base: ET.Element, name: str, uuid: str, vcpu_count: int, memory_mb: int, disk_path: str
) -> ET.Element:
    """Copy ``base`` and retarget it.

    Only name, uuid, vcpu, both memory fields and the first qcow2 disk's
    source file change; everything else is kept as-is.
    """
    root = copy.deepcopy(base)

    for tag, value in (("name", name), ("uuid", uuid)):
        elem = root.find(tag)
        if elem is None:
            elem = ET.SubElement(root, tag)
        elem.text = value

    vcpu = root.find("vcpu")
    if vcpu is None:
        vcpu = ET.SubElement(root, "vcpu")
    vcpu.text = str(vcpu_count)

    kib = memory_mb * 1024
    _set_memory(root, "memory", kib)
    _set_memory(root, "currentMemory", kib)

    disk = _first_qcow2_disk(root)
    if disk is None:
        raise ValidationError(f"base domain has no qcow2 disk to retarget for '{name}'")
    source = disk.find("source")
    if source is None:
        source = ET.SubElement(disk, "source")
    source.set("file", disk_path)

    return root
