"""Tests for the libvirt domain manager."""
import uuid
import xml.etree.ElementTree as ET

import pytest
from structlog.testing import capture_logs

from homonculus.backends.libvirt_backend import (
    LibvirtManager,
    domain_state_to_string,
    resolve_tuning,
)
from homonculus.errors import HypervisorError, NotFoundError, ValidationError
from homonculus.models import DomainState, TargetVMSpec
from homonculus.templates import create_default_engine
from homonculus.vm_xml import parse_domain

from conftest import BASE_DOMAIN_XML, FakeLibvirtError, make_domain


@pytest.fixture
def manager(fake_libvirt):
    return LibvirtManager(create_default_engine())


def _defined_xml(conn):
    return ET.fromstring(conn.defineXML.call_args[0][0])


class TestDomainState:
    @pytest.mark.parametrize(
        "state,expected",
        [
            (0, DomainState.NO_STATE),
            (1, DomainState.RUNNING),
            (3, DomainState.PAUSED),
            (5, DomainState.SHUTOFF),
            (7, DomainState.SUSPENDED),
            (99, DomainState.UNKNOWN),
        ],
    )
    def test_mapping(self, fake_libvirt, state, expected):
        assert domain_state_to_string(state) == expected


class TestResolveTuning:
    def _spec(self, vm_spec, **tuning):
        return vm_spec.model_validate({**vm_spec.model_dump(by_alias=True), "tuning": tuning})

    def test_no_tuning(self, vm_spec):
        resolved = resolve_tuning(vm_spec)
        assert resolved.vcpu_pins == []
        assert resolved.numa_memory is None

    def test_numa_mode_defaults_to_preferred(self, vm_spec):
        resolved = resolve_tuning(self._spec(vm_spec, numa_memory={"nodeset": "0"}))
        assert resolved.numa_memory == {"nodeset": "0", "mode": "preferred"}

    def test_invalid_numa_mode(self, vm_spec):
        with pytest.raises(ValidationError, match="invalid NUMA memory mode 'bogus'"):
            resolve_tuning(self._spec(vm_spec, numa_memory={"nodeset": "0", "mode": "bogus"}))

    def test_too_many_pins(self, vm_spec):
        with pytest.raises(ValidationError, match="exceeds vcpu_count"):
            resolve_tuning(self._spec(vm_spec, vcpu_pins=["0", "1", "2"]))

    def test_fewer_pins_warns(self, vm_spec):
        resolved = resolve_tuning(self._spec(vm_spec, vcpu_pins=["4"]))
        assert resolved.vcpu_pins == [(0, "4")]
        assert len(resolved.warnings) == 1
        assert "1 of 2" in resolved.warnings[0]


class TestDefine:
    def test_define_renders_and_defines(self, manager, hypervisor, conn, vm_spec):
        vm_uuid = uuid.uuid4()
        manager.define(hypervisor, vm_spec, vm_uuid)

        root = _defined_xml(conn)
        assert root.find("name").text == vm_spec.name
        assert root.find("uuid").text == str(vm_uuid)
        assert root.find("memory").text == str(2048 * 1024)
        assert root.find("vcpu").text == "2"
        conn.lookupByName.assert_not_called()

    def test_define_does_not_start(self, manager, hypervisor, conn, vm_spec):
        manager.define(hypervisor, vm_spec, uuid.uuid4())
        conn.createXML.assert_not_called()
        conn.defineXML.return_value.create.assert_not_called()

    def test_partial_pinning_logs_warning(self, manager, hypervisor, conn, vm_spec):
        spec = vm_spec.model_validate({**vm_spec.model_dump(by_alias=True), "tuning": {"vcpu_pins": ["3"]}})
        with capture_logs() as logs:
            manager.define(hypervisor, spec, uuid.uuid4())
        assert any(e["event"] == "partial CPU pinning detected" for e in logs)
        conn.defineXML.assert_called_once()

    def test_invalid_tuning_defines_nothing(self, manager, hypervisor, conn, vm_spec):
        spec = vm_spec.model_validate(
            {**vm_spec.model_dump(by_alias=True), "tuning": {"vcpu_pins": ["0", "1", "2", "3"]}}
        )
        with pytest.raises(ValidationError):
            manager.define(hypervisor, spec, uuid.uuid4())
        conn.defineXML.assert_not_called()

    def test_define_failure(self, manager, hypervisor, conn, vm_spec):
        conn.defineXML.side_effect = FakeLibvirtError("XML error")
        with pytest.raises(HypervisorError, match="could not define VM"):
            manager.define(hypervisor, vm_spec, uuid.uuid4())


class TestLookup:
    def test_check_exists_missing(self, manager, hypervisor):
        assert manager.check_exists(hypervisor, "ghost") is False

    def test_check_exists_present(self, manager, hypervisor, conn):
        conn.lookupByName.side_effect = None
        conn.lookupByName.return_value = make_domain()
        assert manager.check_exists(hypervisor, "base") is True

    def test_check_exists_other_error(self, manager, hypervisor, conn):
        conn.lookupByName.side_effect = FakeLibvirtError("permission denied", code=38)
        with pytest.raises(HypervisorError):
            manager.check_exists(hypervisor, "base")

    def test_find_missing_raises_not_found(self, manager, hypervisor):
        with pytest.raises(NotFoundError) as exc_info:
            manager.find(hypervisor, "ghost")
        assert exc_info.value.name == "ghost"

    def test_start(self, manager, hypervisor, conn):
        domain = make_domain(state=5)
        conn.lookupByName.side_effect = None
        conn.lookupByName.return_value = domain
        manager.start(hypervisor, "base")
        domain.create.assert_called_once()

    def test_start_failure(self, manager, hypervisor, conn):
        domain = make_domain(state=5)
        domain.create.side_effect = FakeLibvirtError("already running")
        conn.lookupByName.side_effect = None
        conn.lookupByName.return_value = domain
        with pytest.raises(HypervisorError, match="could not start"):
            manager.start(hypervisor, "base")


class TestGetInfo:
    @pytest.fixture
    def domain(self, conn):
        domain = make_domain()
        domain.hostname.return_value = "base"
        domain.interfaceAddresses.return_value = {
            "lo": {"addrs": [{"type": 0, "addr": "127.0.0.1", "prefix": 8}]},
            "eth0": {
                "addrs": [
                    {"type": 1, "addr": "fe80::1", "prefix": 64},
                    {"type": 0, "addr": "192.168.122.50", "prefix": 24},
                    {"type": 0, "addr": "192.168.122.51", "prefix": 24},
                ]
            },
        }
        conn.lookupByName.side_effect = None
        conn.lookupByName.return_value = domain
        return domain

    def test_running_vm(self, manager, hypervisor, domain):
        info = manager.get_info(hypervisor, "base")
        assert info.state == DomainState.RUNNING
        assert info.uuid == "11111111-2222-3333-4444-555555555555"
        assert info.vcpu_count == 2
        assert info.memory_mb == 2048
        assert info.persistent is True
        assert info.autostart is False
        assert info.hostname == "base"
        assert info.ip_address == "192.168.122.50"
        assert [d.path for d in info.disks] == [
            "/var/lib/libvirt/images/base.qcow2",
            "/var/lib/libvirt/images/base-cidata.iso",
        ]
        assert info.disks[0].size_bytes == 10 * 1024 ** 3

    def test_shutoff_vm_skips_leases(self, manager, hypervisor, domain):
        domain.state.return_value = (5, 1)
        info = manager.get_info(hypervisor, "base")
        assert info.state == DomainState.SHUTOFF
        assert info.hostname is None
        assert info.ip_address is None
        domain.hostname.assert_not_called()
        domain.interfaceAddresses.assert_not_called()

    def test_flag_failures_degrade(self, manager, hypervisor, domain):
        domain.autostart.side_effect = FakeLibvirtError("nope")
        domain.isPersistent.side_effect = FakeLibvirtError("nope")
        info = manager.get_info(hypervisor, "base")
        assert info.autostart is False
        assert info.persistent is False

    def test_lease_failures_degrade(self, manager, hypervisor, domain):
        domain.hostname.side_effect = FakeLibvirtError("no lease")
        domain.interfaceAddresses.side_effect = FakeLibvirtError("no lease")
        info = manager.get_info(hypervisor, "base")
        assert info.state == DomainState.RUNNING
        assert info.hostname is None
        assert info.ip_address is None

    def test_only_loopback(self, manager, hypervisor, domain):
        domain.interfaceAddresses.return_value = {
            "lo": {"addrs": [{"type": 0, "addr": "127.0.0.1", "prefix": 8}]}
        }
        assert manager.get_info(hypervisor, "base").ip_address is None

    def test_missing_vm(self, manager, hypervisor, conn):
        with pytest.raises(NotFoundError):
            manager.get_info(hypervisor, "ghost")


class TestListAll:
    def test_skips_unresolvable(self, manager, hypervisor, conn):
        good = make_domain(name="good", state=5)
        broken = make_domain(name="broken", state=5)
        broken.XMLDesc.side_effect = FakeLibvirtError("gone")

        conn.listAllDomains.return_value = [good, broken]
        conn.lookupByName.side_effect = lambda name: {"good": good, "broken": broken}[name]

        infos = manager.list_all(hypervisor)
        assert [i.name for i in infos] == ["good"]
        assert conn.listAllDomains.call_args[0][0] == 1 | 2

    def test_listing_failure(self, manager, hypervisor, conn):
        conn.listAllDomains.side_effect = FakeLibvirtError("down")
        with pytest.raises(HypervisorError):
            manager.list_all(hypervisor)


class TestDelete:
    def _with_domain(self, conn, state):
        domain = make_domain(state=state)
        conn.lookupByName.side_effect = None
        conn.lookupByName.return_value = domain
        return domain

    def test_running_vm_destroyed_before_undefine(self, manager, hypervisor, conn, executor):
        domain = self._with_domain(conn, state=1)
        vm_uuid = manager.delete(hypervisor, "base")

        assert vm_uuid == "11111111-2222-3333-4444-555555555555"
        assert [c[0] for c in domain.method_calls if c[0] in ("destroy", "undefine")] == [
            "destroy",
            "undefine",
        ]
        assert executor.removed_paths() == [
            "/var/lib/libvirt/images/base.qcow2",
            "/var/lib/libvirt/images/base-cidata.iso",
        ]

    def test_shutoff_vm_not_destroyed(self, manager, hypervisor, conn, executor):
        domain = self._with_domain(conn, state=5)
        manager.delete(hypervisor, "base")
        domain.destroy.assert_not_called()
        domain.undefine.assert_called_once()
        assert len(executor.removed_paths()) == 2

    def test_disk_removal_failure_is_not_fatal(self, manager, hypervisor, conn, executor):
        domain = self._with_domain(conn, state=5)
        executor.fail["rm"] = 1
        assert manager.delete(hypervisor, "base") == "11111111-2222-3333-4444-555555555555"
        domain.undefine.assert_called_once()

    def test_undefine_failure(self, manager, hypervisor, conn):
        domain = self._with_domain(conn, state=5)
        domain.undefine.side_effect = FakeLibvirtError("busy")
        with pytest.raises(HypervisorError, match="11111111") as exc_info:
            manager.delete(hypervisor, "base")
        assert exc_info.value.uuid == "11111111-2222-3333-4444-555555555555"

    def test_missing_vm(self, manager, hypervisor, executor):
        with pytest.raises(NotFoundError):
            manager.delete(hypervisor, "ghost")
        assert executor.calls == []


class TestClone:
    def test_defines_mutated_copy(self, manager, hypervisor, conn):
        base = parse_domain(BASE_DOMAIN_XML)
        target = TargetVMSpec(
            name="worker-1", vcpu=4, memory_mb=4096, disk_path="/img/worker-1.qcow2", disk_size_gb=20
        )
        vm_uuid = uuid.uuid4()
        manager.clone(hypervisor, base, target, vm_uuid)

        root = _defined_xml(conn)
        assert root.find("name").text == "worker-1"
        assert root.find("uuid").text == str(vm_uuid)
        assert root.find("./devices/disk/source").get("file") == "/img/worker-1.qcow2"
        # Base descriptor is reusable for the next target
        assert base.find("name").text == "base"
