"""
Cloud-init (NoCloud) documents and the cidata ISO that carries them.
"""

import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

from homonculus.errors import BootMediaError, HomonculusError
from homonculus.interfaces.hypervisor import HypervisorContext
from homonculus.interfaces.process import CommandExecutor, run_and_capture
from homonculus.logging import get_logger
from homonculus.models import VMCreateSpec
from homonculus.templates import (
    TEMPLATE_CLOUDINIT_META_DATA,
    TEMPLATE_CLOUDINIT_NETWORK_CONFIG,
    TEMPLATE_CLOUDINIT_USER_DATA,
    TemplateEngine,
)
from homonculus.vm_xml import mount_tag

log = get_logger(__name__)

VOLUME_ID = "cidata"
ROLE_FILE = "/etc/homonculus/role"


def _dump(document: Dict[str, Any]) -> str:
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def render_user_data(variables: Mapping[str, Any]) -> str:
    """#cloud-config with users, package flags, mounts and runcmd."""
    users: List[Dict[str, Any]] = []
    any_password = False
    for user in variables.get("user_configs") or []:
        entry: Dict[str, Any] = {
            "name": user["username"],
            "groups": "sudo",
            "shell": "/bin/bash",
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
        }
        if user.get("ssh_authorized_keys"):
            entry["ssh_authorized_keys"] = list(user["ssh_authorized_keys"])
        if user.get("password_hash"):
            entry["passwd"] = user["password_hash"]
            entry["lock_passwd"] = False
            any_password = True
        users.append(entry)

    config: Dict[str, Any] = {
        "hostname": variables["hostname"],
        "manage_etc_hosts": True,
        "users": users,
        "ssh_pwauth": any_password,
        "package_update": bool(variables.get("do_package_update")),
        "package_upgrade": bool(variables.get("do_package_upgrade")),
    }

    mounts = []
    for idx, mount in enumerate(variables.get("host_bind_mounts") or []):
        mounts.append([mount_tag(idx), mount["target_dir"], "virtiofs", "defaults,nofail", "0", "0"])
    if mounts:
        config["mounts"] = mounts

    if variables.get("role"):
        config["write_files"] = [
            {"path": ROLE_FILE, "content": f"{variables['role']}\n", "permissions": "0644"}
        ]

    runcmds = list(variables.get("runcmds") or [])
    if runcmds:
        config["runcmd"] = runcmds

    return "#cloud-config\n" + _dump(config)


def render_meta_data(variables: Mapping[str, Any]) -> str:
    return _dump(
        {
            "instance-id": str(variables["instance_id"]),
            "local-hostname": variables["hostname"],
        }
    )


def render_network_config(variables: Mapping[str, Any]) -> str:
    """Netplan v2: static address when one is given, DHCP otherwise."""
    ethernet: Dict[str, Any] = {"match": {"name": "en*"}, "set-name": "eth0"}
    address = variables.get("ipv4_address")
    if address:
        ethernet["dhcp4"] = False
        ethernet["addresses"] = [address]
        gateway = variables.get("ipv4_gateway_address")
        if gateway:
            ethernet["routes"] = [{"to": "default", "via": gateway}]
    else:
        ethernet["dhcp4"] = True
        ethernet["dhcp4-overrides"] = {"hostname": variables["hostname"]}
    return _dump({"version": 2, "ethernets": {"eth0": ethernet}})


def create_iso(executor: CommandExecutor, output_path: str, files: List[str], volume_id: str = VOLUME_ID) -> None:
    """Pack ``files`` into an ISO9660 image with Joliet and Rock Ridge."""
    run_and_capture(
        executor,
        "mkisofs",
        "-output", output_path,
        "-volid", volume_id,
        "-joliet",
        "-r",
        *files,
    )


class BootMediaManager:
    """Render cloud-init documents and pack them into a cidata ISO."""

    def __init__(self, engine: TemplateEngine):
        self.engine = engine
        self.log = log.bind(component="cloudinit")

    def create_iso(self, hypervisor: HypervisorContext, spec: VMCreateSpec, instance_id: uuid.UUID) -> None:
        """Write the ISO to ``spec.cloud_init_iso_path``.

        user-data is always included; meta-data and network-config only when
        their templates are loaded. File order on the ISO follows that order.
        """
        try:
            with tempfile.TemporaryDirectory(prefix=f"cloud-init-{spec.name}-") as tmp:
                tmp_dir = Path(tmp)

                user_data = self.engine.render_to_file(
                    TEMPLATE_CLOUDINIT_USER_DATA,
                    tmp_dir / "user-data",
                    {
                        "hostname": spec.name,
                        "user_configs": [u.model_dump() for u in spec.user_configs],
                        "role": spec.role.value if spec.role else None,
                        "do_package_update": spec.do_package_update,
                        "do_package_upgrade": spec.do_package_upgrade,
                        "runcmds": spec.runcmds,
                        "host_bind_mounts": [m.model_dump() for m in spec.host_bind_mounts],
                    },
                )
                self.log.debug("rendered user-data", vm=spec.name)
                iso_files = [str(user_data)]

                if self.engine.has_template(TEMPLATE_CLOUDINIT_META_DATA):
                    meta_data = self.engine.render_to_file(
                        TEMPLATE_CLOUDINIT_META_DATA,
                        tmp_dir / "meta-data",
                        {"instance_id": str(instance_id), "hostname": spec.name},
                    )
                    iso_files.append(str(meta_data))
                    self.log.debug("rendered meta-data", vm=spec.name)

                if self.engine.has_template(TEMPLATE_CLOUDINIT_NETWORK_CONFIG):
                    network_config = self.engine.render_to_file(
                        TEMPLATE_CLOUDINIT_NETWORK_CONFIG,
                        tmp_dir / "network-config",
                        {
                            "hostname": spec.name,
                            "ipv4_address": spec.ipv4_address,
                            "ipv4_gateway_address": spec.ipv4_gateway_address,
                        },
                    )
                    iso_files.append(str(network_config))
                    self.log.debug("rendered network-config", vm=spec.name)

                create_iso(hypervisor.executor, spec.cloud_init_iso_path, iso_files)
        except HomonculusError:
            raise
        except OSError as e:
            raise BootMediaError(f"could not prepare cloud-init files for '{spec.name}': {e}") from e

        self.log.info(
            "created cloud-init ISO",
            vm=spec.name,
            path=spec.cloud_init_iso_path,
            files=len(iso_files),
        )
