#!/usr/bin/env python3
"""
Storage backend selection for template disks.

Handles:
- Querying the node's storage backends (REST API or pvesh)
- Falling back to /etc/pve/storage.cfg when the query yields nothing usable
- Mapping Proxmox storage types to disk addressing conventions

Selection is deterministic: the first active, image-capable backend in
listing order wins unless an explicit override is configured.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pve_template.exceptions import NoStorageAvailable
from pve_template.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)


class StorageKind(Enum):
    """Storage families that differ in how VM disks are addressed."""

    DIRECTORY = "directory"
    LVM = "lvm"
    LVM_THIN = "lvm_thin"
    ZFS_POOL = "zfs_pool"
    UNKNOWN = "unknown"


# File-backed storages keep disks in per-VM subdirectories like plain directories.
KIND_BY_TYPE = {
    "dir": StorageKind.DIRECTORY,
    "nfs": StorageKind.DIRECTORY,
    "cifs": StorageKind.DIRECTORY,
    "glusterfs": StorageKind.DIRECTORY,
    "cephfs": StorageKind.DIRECTORY,
    "lvm": StorageKind.LVM,
    "lvmthin": StorageKind.LVM_THIN,
    "zfspool": StorageKind.ZFS_POOL,
}

IMPORT_FORMAT = {
    StorageKind.DIRECTORY: "qcow2",
    StorageKind.LVM: "raw",
    StorageKind.LVM_THIN: "raw",
    StorageKind.ZFS_POOL: "raw",
    StorageKind.UNKNOWN: "raw",
}


def kind_for_type(storage_type: str) -> StorageKind:
    """Map a Proxmox storage type (``dir``, ``lvmthin``, ...) to its kind."""
    return KIND_BY_TYPE.get(storage_type.strip().lower(), StorageKind.UNKNOWN)


@dataclass(frozen=True)
class StorageBackend:
    """A storage pool on the node that may receive the template disk."""

    name: str
    kind: StorageKind
    active: bool
    accepts_images: bool = True
    storage_type: str = ""

    @property
    def usable(self) -> bool:
        return self.active and self.accepts_images

    @property
    def import_format(self) -> str:
        return IMPORT_FORMAT[self.kind]

    @classmethod
    def from_listing(cls, entry: Dict[str, Any]) -> "StorageBackend":
        """Build a backend from one API/pvesh storage listing entry."""
        storage_type = str(entry.get("type", ""))
        content = entry.get("content")
        accepts_images = True if content is None else "images" in _content_types(str(content))
        active = bool(int(entry.get("active", 0))) and bool(int(entry.get("enabled", 1)))
        return cls(
            name=str(entry["storage"]),
            kind=kind_for_type(storage_type),
            active=active,
            accepts_images=accepts_images,
            storage_type=storage_type,
        )


def _content_types(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


SECTION_RE = re.compile(r"^(?P<type>[A-Za-z0-9_-]+):\s*(?P<name>\S+)\s*$")


class StorageConfigAccumulator:
    """
    Two-state reader for storage.cfg text.

    A section header opens a new candidate; property lines update it; the
    candidate is committed when the next header arrives or input ends. The
    ``accepts_images`` flag is therefore only final at commit time.
    """

    def __init__(self) -> None:
        self.backends: List[StorageBackend] = []
        self._candidate: Optional[Dict[str, Any]] = None

    def feed(self, line: str) -> None:
        line = line.split("#", 1)[0].rstrip()
        if not line.strip():
            return

        header = SECTION_RE.match(line)
        if header:
            self._commit()
            self._candidate = {
                "name": header.group("name"),
                "storage_type": header.group("type"),
                "accepts_images": False,
                "active": True,
            }
            return

        if self._candidate is None:
            return
        key, _, value = line.strip().partition(" ")
        if key == "content":
            self._candidate["accepts_images"] = "images" in _content_types(value)
        elif key == "disable":
            self._candidate["active"] = False

    def finish(self) -> List[StorageBackend]:
        self._commit()
        return self.backends

    def _commit(self) -> None:
        if self._candidate is None:
            return
        candidate = self._candidate
        self.backends.append(
            StorageBackend(
                name=candidate["name"],
                kind=kind_for_type(candidate["storage_type"]),
                active=candidate["active"],
                accepts_images=candidate["accepts_images"],
                storage_type=candidate["storage_type"],
            )
        )
        self._candidate = None


def parse_storage_config(text: str) -> List[StorageBackend]:
    """Parse storage.cfg text into backends, preserving file order."""
    accumulator = StorageConfigAccumulator()
    for line in text.splitlines():
        accumulator.feed(line)
    return accumulator.finish()


class StorageResolver:
    """Selects the storage backend that receives the template disk."""

    def __init__(self, client: ProxmoxClient) -> None:
        self.client = client
        self.logger = logger

    def list_backends(self) -> List[StorageBackend]:
        """Query image-capable backends; an unreachable listing counts as empty."""
        try:
            entries = self.client.list_storage(content="images")
        except Exception as e:
            self.logger.warning(f"Storage listing failed ({e}), falling back to storage.cfg")
            return []
        return [StorageBackend.from_listing(entry) for entry in entries if entry.get("storage")]

    def resolve(self, preferred: Optional[str] = None) -> StorageBackend:
        """
        Pick the storage for the template disk.

        Args:
            preferred: Explicit storage name; must be active and accept images.

        Returns:
            The selected backend.

        Raises:
            NoStorageAvailable: If no active image-capable backend is found.
        """
        backends = self.list_backends()
        if not any(backend.usable for backend in backends):
            self.logger.info("No usable storage from listing, parsing storage.cfg")
            backends = parse_storage_config(self.client.read_storage_config())

        if preferred:
            backend = next((b for b in backends if b.name == preferred), None)
            if backend is None:
                raise NoStorageAvailable(f"Storage {preferred!r} not found on {self.client.node}")
            if not backend.usable:
                raise NoStorageAvailable(
                    f"Storage {preferred!r} is not usable (active={backend.active}, "
                    f"accepts_images={backend.accepts_images})"
                )
            selected = backend
        else:
            selected = next((b for b in backends if b.usable), None)
            if selected is None:
                raise NoStorageAvailable(f"No active storage accepting disk images on {self.client.node}")

        if selected.kind is StorageKind.UNKNOWN:
            self.logger.warning(
                f"Storage {selected.name} has unrecognised type {selected.storage_type!r}, "
                "using flat disk naming"
            )
        self.logger.info(f"Using storage {selected.name} ({selected.kind.value})")
        return selected
