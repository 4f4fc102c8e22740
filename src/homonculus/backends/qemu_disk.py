"""QEMU disk manager implementation."""

from pathlib import PurePosixPath

from ..errors import ValidationError
from ..interfaces.hypervisor import HypervisorContext
from ..interfaces.process import CommandExecutor, run_and_capture
from ..logging import get_logger
from ..models import TargetVMSpec, VMCreateSpec

log = get_logger(__name__)

OUTPUT_FORMAT = "qcow2"
SUPPORTED_BACKING_FORMATS = {".qcow2": "qcow2"}


def backing_format_for(base_image_path: str) -> str:
    """Derive the backing image format from its file extension."""
    ext = PurePosixPath(base_image_path).suffix.lower()
    try:
        return SUPPORTED_BACKING_FORMATS[ext]
    except KeyError:
        raise ValidationError(f"unsupported backing file format: {ext or '(none)'}") from None


def create_backing_image(
    executor: CommandExecutor,
    backing_file: str,
    backing_format: str,
    output_path: str,
    size_gb: int,
    output_format: str = OUTPUT_FORMAT,
) -> None:
    """Create a copy-on-write image on top of ``backing_file`` with qemu-img."""
    run_and_capture(
        executor,
        "qemu-img",
        "create",
        "-b", backing_file,
        "-F", backing_format,
        "-f", output_format,
        output_path,
        f"{size_gb}G",
    )


class QemuDiskManager:
    """Create VM disks as qcow2 overlays of a base image."""

    def __init__(self):
        self.log = log.bind(component="disk")

    def _create(self, hypervisor: HypervisorContext, disk_path: str, base: str, size_gb: int) -> None:
        backing_format = backing_format_for(base)
        self.log.debug("creating qcow2 disk", path=disk_path, base=base, size_gb=size_gb)
        create_backing_image(hypervisor.executor, base, backing_format, disk_path, size_gb)
        self.log.info("created qcow2 disk", path=disk_path, size_gb=size_gb)

    def create_disk(self, hypervisor: HypervisorContext, spec: VMCreateSpec) -> None:
        """Create the root disk of a fresh VM."""
        self._create(hypervisor, spec.disk_path, spec.base_image_path, spec.disk_size_gb)

    def create_disk_for_clone(self, hypervisor: HypervisorContext, target: TargetVMSpec) -> None:
        """Create the root disk of a clone, backed by the base VM's own disk."""
        if not target.base_image_path:
            raise ValidationError(f"no base image resolved for clone '{target.name}'")
        self._create(hypervisor, target.disk_path, target.base_image_path, target.disk_size_gb)
