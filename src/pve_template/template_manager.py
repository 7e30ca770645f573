#!/usr/bin/env python3
"""
Turn a customized disk image into a Proxmox VM template with ``qm``.

The VM id is the template identity: any VM already at that id is destroyed
first, then the VM is recreated, given the imported disk and a cloud-init
drive, and finally converted to a template.

A failure after the VM shell exists leaves a partially configured VM behind;
it is reported with the vm_id and is not rolled back.
"""

import logging
import shlex
from datetime import datetime
from typing import List, Optional

from pve_template.config import EnvironmentConfig
from pve_template.distro import DistroProfile
from pve_template.exceptions import CommandError, VMCreationFailed
from pve_template.executor import Executor
from pve_template.storage_manager import StorageBackend, StorageKind

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

DEVICE_PATH_FORMATS = {
    StorageKind.DIRECTORY: "{storage}:{vmid}/vm-{vmid}-disk-0.{ext}",
    StorageKind.LVM: "{storage}:vm-{vmid}-disk-0",
    StorageKind.LVM_THIN: "{storage}:vm-{vmid}-disk-0",
    StorageKind.ZFS_POOL: "{storage}:vm-{vmid}-disk-0",
}
FALLBACK_DEVICE_PATH_FORMAT = "{storage}:vm-{vmid}-disk-0"


def device_path(storage: str, kind: StorageKind, vm_id: int, ext: str = "raw") -> str:
    """
    Volume id of the first imported disk for ``vm_id`` on ``storage``.

    Directory storages keep disks under a per-VM subdirectory with a file
    extension; block storages use a flat volume name.
    """
    fmt = DEVICE_PATH_FORMATS.get(kind)
    if fmt is None:
        logger.warning(f"Unknown storage kind {kind.value} for {storage}, assuming flat volume naming")
        fmt = FALLBACK_DEVICE_PATH_FORMAT
    return fmt.format(storage=storage, vmid=vm_id, ext=ext)


class TemplateMaterializer:
    """Creates and configures the template VM on the node."""

    def __init__(self, executor: Executor) -> None:
        self.executor = executor

    def _qm(self, step: str, vm_id: int, *args: str) -> None:
        try:
            self.executor.run(["qm", *args])
        except CommandError as e:
            raise VMCreationFailed(step, vm_id, str(e)) from e

    def destroy_existing(self, vm_id: int) -> bool:
        """
        Destroy and purge any VM at ``vm_id``.

        Returns:
            True if a VM was destroyed, False if none existed or removal failed.
        """
        result = self.executor.run(
            ["qm", "destroy", str(vm_id), "--destroy-unreferenced-disks", "1", "--purge", "1"],
            check=False,
        )
        if result.ok:
            logger.info(f"🗑️  Destroyed existing VM {vm_id}")
            return True
        logger.info(f"ℹ️  No VM removed at {vm_id} ({result.stderr or 'does not exist'})")
        return False

    def materialize(
        self,
        vm_id: int,
        vm_name: str,
        image_path: str,
        storage: StorageBackend,
        profile: DistroProfile,
        env: EnvironmentConfig,
        timestamp: Optional[str] = None,
    ) -> str:
        """
        Build the template VM from ``image_path``.

        Returns:
            The volume id attached as the boot disk.

        Raises:
            VMCreationFailed: Tagged with the failing step and the vm_id.
        """
        timestamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)
        vmid = str(vm_id)

        self.destroy_existing(vm_id)

        memory = profile.memory_mb(env)
        logger.info(f"🆕 Creating VM {vm_name!r} (vmid={vm_id}, {memory}MB)")
        self._qm(
            "create", vm_id, "create", vmid, "--name", vm_name, "--memory", str(memory),
            *shlex.split(env.vm_settings),
        )
        self._qm("create", vm_id, "set", vmid, "--description", f"Template date: {timestamp}")
        self._qm("create", vm_id, "set", vmid, "--cpu", "host")

        fmt = storage.import_format
        logger.info(f"💾 Importing {image_path} → {storage.name} ({fmt})")
        self._qm("import-disk", vm_id, "importdisk", vmid, image_path, storage.name, "--format", fmt)

        disk = device_path(storage.name, storage.kind, vm_id, ext=fmt)
        self._qm("attach-disk", vm_id, "set", vmid, "--scsihw", "virtio-scsi-pci", "--scsi0", disk)

        self._qm("attach-cloudinit", vm_id, "set", vmid, "--ide2", f"{storage.name}:cloudinit")
        self._qm("attach-cloudinit", vm_id, "set", vmid, "--boot", "c", "--bootdisk", "scsi0")

        self._qm("cloudinit-identity", vm_id, *self._identity_args(vmid, profile, env))
        self._qm("cloudinit-identity", vm_id, "set", vmid, "--ipconfig0", "ip=dhcp")
        self._qm("cloudinit-identity", vm_id, "set", vmid, "--agent", "1")
        self._qm("cloudinit-identity", vm_id, "set", vmid, "--serial0", "socket", "--vga", "std")

        self._qm("cloudinit-update", vm_id, "cloudinit", "update", vmid)

        self._qm("template", vm_id, "template", vmid)
        logger.info(f"✅ VM {vm_id} converted to template")
        return disk

    @staticmethod
    def _identity_args(vmid: str, profile: DistroProfile, env: EnvironmentConfig) -> List[str]:
        args = ["set", vmid, "--ciuser", profile.cloudinit_user(env)]
        if env.cloudinit_password:
            args += ["--cipassword", env.cloudinit_password]
        return args
