"""
Cluster-level VM orchestration for Homonculus.
Runs create/delete/start/query/clone over a batch of VMs while holding the
hypervisor exclusively, isolating per-VM failures.
"""
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from homonculus.backends.libvirt_backend import LibvirtManager
from homonculus.backends.qemu_disk import QemuDiskManager, backing_format_for
from homonculus.cloud_init import BootMediaManager
from homonculus.connection import ConnectionManager
from homonculus.errors import HomonculusError, PartialBatchFailure, ValidationError
from homonculus.interfaces.hypervisor import HypervisorContext
from homonculus.logging import get_logger, log_operation
from homonculus.models import TargetVMSpec, VMCreateSpec, VMInfo, VMName
from homonculus.rollback import RollbackContext
from homonculus.vm_xml import qcow2_backing_path

log = get_logger(__name__)


class VMOperationState(Enum):
    """Outcome of one VM within a batch."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class VMOperationResult:
    """Result of a batch operation for a single VM."""
    name: str
    state: VMOperationState
    uuid: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state in (VMOperationState.FAILED, VMOperationState.CANCELLED)


def _raise_for_failures(operation: str, results: Sequence[VMOperationResult], partial: Optional[list] = None) -> None:
    failed = [r.name for r in results if r.failed]
    if failed:
        raise PartialBatchFailure(operation, failed, results=results if partial is None else partial)


class VMOrchestrator:
    """
    Batch VM lifecycle against a single hypervisor.

    Items run sequentially in submission order. A failing VM never aborts its
    siblings; the batch raises ``PartialBatchFailure`` naming every failed VM
    once all items have been attempted. Successful items are not rolled back.

    Usage:
        orch = VMOrchestrator(manager, QemuDiskManager(), BootMediaManager(engine),
                              LibvirtManager(engine))
        orch.create_cluster(specs)
        orch.start_cluster([VMName(name="vm-1")])
    """

    def __init__(
        self,
        conn_manager: ConnectionManager,
        disk_manager: QemuDiskManager,
        boot_media: BootMediaManager,
        libvirt_manager: LibvirtManager,
    ):
        self.conn_manager = conn_manager
        self.disk_manager = disk_manager
        self.boot_media = boot_media
        self.libvirt_manager = libvirt_manager
        self.log = log.bind(component="orchestrator")

    def _run_batch(
        self,
        names: Sequence[str],
        step: Callable[[HypervisorContext, int], VMOperationResult],
        hv: HypervisorContext,
        cancel: Optional[threading.Event],
    ) -> List[VMOperationResult]:
        results: List[VMOperationResult] = []
        for idx, name in enumerate(names):
            # Cancellation only stops new items; a running command is never interrupted
            if cancel is not None and cancel.is_set():
                self.log.warning("operation cancelled, skipping VM", vm=name)
                results.append(
                    VMOperationResult(name=name, state=VMOperationState.CANCELLED, error="cancelled")
                )
                continue
            results.append(step(hv, idx))
        return results

    # ── create ──────────────────────────────────────────────────────────

    def create_cluster(
        self,
        specs: Sequence[VMCreateSpec],
        start: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> List[VMOperationResult]:
        """Create (and optionally start) every VM in ``specs``.

        Existing VMs are skipped with a warning. A VM whose creation fails has
        its disk and ISO removed again before the next VM is attempted.
        """
        with log_operation(self.log, "create_cluster", count=len(specs)):
            with self.conn_manager.hypervisor() as hv:
                results = self._run_batch(
                    [s.name for s in specs],
                    lambda ctx, idx: self._create_one(ctx, specs[idx], start),
                    hv,
                    cancel,
                )
            _raise_for_failures("create", results)
            return results

    def _create_one(self, hv: HypervisorContext, spec: VMCreateSpec, start: bool) -> VMOperationResult:
        vm_uuid = uuid.uuid4()
        vm_log = self.log.bind(vm=spec.name, uuid=str(vm_uuid))

        try:
            exists = self.libvirt_manager.check_exists(hv, spec.name)
        except HomonculusError as e:
            vm_log.error("failed to check if VM exists", error=str(e))
            return VMOperationResult(name=spec.name, state=VMOperationState.FAILED, error=str(e))
        if exists:
            vm_log.warning("VM already exists, skipping")
            return VMOperationResult(name=spec.name, state=VMOperationState.SKIPPED)

        vm_log.info("creating VM")
        try:
            backing_format_for(spec.base_image_path)
            with RollbackContext(f"create {spec.name}") as rb:
                # Registered up front so a half-written file is removed too
                rb.add_file(hv.executor, spec.disk_path)
                self.disk_manager.create_disk(hv, spec)

                if spec.cloud_init_iso_path:
                    rb.add_file(hv.executor, spec.cloud_init_iso_path)
                    self.boot_media.create_iso(hv, spec, vm_uuid)

                self.libvirt_manager.define(hv, spec, vm_uuid)
                rb.commit()
        except HomonculusError as e:
            vm_log.error("failed to create VM", error=str(e))
            return VMOperationResult(
                name=spec.name, state=VMOperationState.FAILED, uuid=str(vm_uuid), error=str(e)
            )

        vm_log.info("created VM")

        if start:
            # A defined VM that fails to boot keeps its artifacts
            try:
                self.libvirt_manager.start(hv, spec.name)
            except HomonculusError as e:
                vm_log.error("failed to start VM", error=str(e))
                return VMOperationResult(
                    name=spec.name, state=VMOperationState.FAILED, uuid=str(vm_uuid), error=str(e)
                )

        return VMOperationResult(name=spec.name, state=VMOperationState.SUCCEEDED, uuid=str(vm_uuid))

    # ── delete / start ──────────────────────────────────────────────────

    def delete_cluster(
        self, vms: Sequence[VMName], cancel: Optional[threading.Event] = None
    ) -> List[VMOperationResult]:
        with log_operation(self.log, "delete_cluster", count=len(vms)):
            with self.conn_manager.hypervisor() as hv:
                results = self._run_batch(
                    [v.name for v in vms],
                    lambda ctx, idx: self._delete_one(ctx, vms[idx].name),
                    hv,
                    cancel,
                )
            _raise_for_failures("delete", results)
            return results

    def _delete_one(self, hv: HypervisorContext, name: str) -> VMOperationResult:
        try:
            vm_uuid = self.libvirt_manager.delete(hv, name)
        except HomonculusError as e:
            vm_uuid = getattr(e, "uuid", None)
            self.log.error("failed to delete VM", vm=name, uuid=vm_uuid, error=str(e))
            return VMOperationResult(name=name, state=VMOperationState.FAILED, uuid=vm_uuid, error=str(e))
        self.log.info("deleted VM", vm=name, uuid=vm_uuid)
        return VMOperationResult(name=name, state=VMOperationState.SUCCEEDED, uuid=vm_uuid)

    def start_cluster(
        self, vms: Sequence[VMName], cancel: Optional[threading.Event] = None
    ) -> List[VMOperationResult]:
        with log_operation(self.log, "start_cluster", count=len(vms)):
            with self.conn_manager.hypervisor() as hv:
                results = self._run_batch(
                    [v.name for v in vms],
                    lambda ctx, idx: self._start_one(ctx, vms[idx].name),
                    hv,
                    cancel,
                )
            _raise_for_failures("start", results)
            return results

    def _start_one(self, hv: HypervisorContext, name: str) -> VMOperationResult:
        try:
            self.libvirt_manager.start(hv, name)
        except HomonculusError as e:
            self.log.error("failed to start VM", vm=name, error=str(e))
            return VMOperationResult(name=name, state=VMOperationState.FAILED, error=str(e))
        return VMOperationResult(name=name, state=VMOperationState.SUCCEEDED)

    # ── query ───────────────────────────────────────────────────────────

    def query_cluster(
        self, vms: Sequence[VMName], cancel: Optional[threading.Event] = None
    ) -> List[VMInfo]:
        """Info for the named VMs, or for every VM when ``vms`` is empty.

        On partial failure the raised ``PartialBatchFailure`` carries the infos
        that did resolve in ``results``.
        """
        with log_operation(self.log, "query_cluster", count=len(vms)):
            with self.conn_manager.hypervisor() as hv:
                if not vms:
                    return self.libvirt_manager.list_all(hv)

                infos: List[VMInfo] = []

                def query_one(ctx: HypervisorContext, idx: int) -> VMOperationResult:
                    name = vms[idx].name
                    try:
                        infos.append(self.libvirt_manager.get_info(ctx, name))
                    except HomonculusError as e:
                        self.log.error("failed to query VM", vm=name, error=str(e))
                        return VMOperationResult(name=name, state=VMOperationState.FAILED, error=str(e))
                    return VMOperationResult(name=name, state=VMOperationState.SUCCEEDED)

                results = self._run_batch([v.name for v in vms], query_one, hv, cancel)

            _raise_for_failures("query", results, partial=infos)
            return infos

    # ── clone ───────────────────────────────────────────────────────────

    def clone_cluster(
        self,
        base_name: str,
        targets: Sequence[TargetVMSpec],
        cancel: Optional[threading.Event] = None,
    ) -> List[VMOperationResult]:
        """Clone ``base_name`` into every target.

        The base VM is resolved once; if it cannot be found or has no qcow2
        disk the whole operation fails before any target is touched.
        """
        with log_operation(self.log, "clone_cluster", base_vm=base_name, count=len(targets)):
            with self.conn_manager.hypervisor() as hv:
                self.log.info("finding base VM for cloning", base_vm=base_name)
                base_domain = self.libvirt_manager.find(hv, base_name)
                base_root = self.libvirt_manager.read_descriptor(base_domain)
                base_image_path = qcow2_backing_path(base_root)
                if not base_image_path:
                    raise ValidationError(f"base virtual machine '{base_name}' has no qcow2 disk")
                self.log.debug("found base image", path=base_image_path)

                def clone_one(ctx: HypervisorContext, idx: int) -> VMOperationResult:
                    target = targets[idx].model_copy(update={"base_image_path": base_image_path})
                    return self._clone_one(ctx, base_name, base_root, target)

                results = self._run_batch([t.name for t in targets], clone_one, hv, cancel)

            _raise_for_failures("clone", results)
            return results

    def _clone_one(self, hv: HypervisorContext, base_name: str, base_root, target: TargetVMSpec) -> VMOperationResult:
        vm_uuid = uuid.uuid4()
        vm_log = self.log.bind(vm=target.name, uuid=str(vm_uuid), base_vm=base_name)

        try:
            exists = self.libvirt_manager.check_exists(hv, target.name)
        except HomonculusError as e:
            vm_log.error("failed to check if VM exists", error=str(e))
            return VMOperationResult(name=target.name, state=VMOperationState.FAILED, error=str(e))
        if exists:
            vm_log.warning("VM already exists, skipping")
            return VMOperationResult(name=target.name, state=VMOperationState.SKIPPED)

        vm_log.info("cloning VM")
        try:
            with RollbackContext(f"clone {target.name}") as rb:
                rb.add_file(hv.executor, target.disk_path)
                self.disk_manager.create_disk_for_clone(hv, target)
                self.libvirt_manager.clone(hv, base_root, target, vm_uuid)
                rb.commit()
        except HomonculusError as e:
            vm_log.error("failed to clone VM", error=str(e))
            return VMOperationResult(
                name=target.name, state=VMOperationState.FAILED, uuid=str(vm_uuid), error=str(e)
            )

        vm_log.info("cloned VM")
        return VMOperationResult(name=target.name, state=VMOperationState.SUCCEEDED, uuid=str(vm_uuid))
