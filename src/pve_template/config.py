"""Build configuration loaded from a ``.env`` file."""

import logging
import os
import shlex
import socket
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

from pve_template.exceptions import PreconditionFailed

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env"
DEFAULT_VM_MEMORY_MB = 2048
DEFAULT_VM_SETTINGS = "--net0 virtio,bridge=vmbr0"
DEFAULT_CLOUDINIT_USER = "ubuntu"
DEFAULT_DOWNLOAD_CONNECTIONS = 6

ENV_KEYS = (
    "USERS",
    "KEYS",
    "ROUTES",
    "VMMEM",
    "VMSETTINGS",
    "STORAGE",
    "CIUSER",
    "CIPASSWORD",
    "PVE_NODE",
    "PVE_HOST",
    "SSH_USER",
    "SSH_KEY_PATH",
    "API_TOKEN",
    "PVE_VERIFY_SSL",
    "NTFY_URL",
    "DOWNLOAD_CONNECTIONS",
    "WORK_DIR",
    "KEY_DIR",
    "CONSUL_URL",
)


@dataclass(frozen=True)
class Route:
    """A static route pushed into every guest built from the template."""

    destination: str
    gateway: str

    def render(self) -> str:
        """Return the route the way ``ip route show`` prints it."""
        return f"{self.destination} via {self.gateway}"


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for item in items:
        if item and item not in seen:
            seen[item] = None
    return tuple(seen)


def _split_route_entries(raw: str) -> List[str]:
    raw = raw.strip()
    if raw.startswith("(") and raw.endswith(")"):
        # Bash array syntax: ("10.0.0.0/8 via 192.168.1.1" "...")
        return shlex.split(raw[1:-1])
    entries: List[str] = []
    for line in raw.splitlines():
        entries.extend(part.strip() for part in line.split(";"))
    return [entry for entry in entries if entry]


def parse_route(entry: str) -> Route:
    """Parse ``<destination> via <gateway>``, tolerating an ``ip route add`` prefix."""
    tokens = entry.split()
    try:
        via = tokens.index("via")
    except ValueError:
        raise PreconditionFailed(f"Route {entry!r} has no 'via <gateway>' part")
    if via == 0 or via + 1 >= len(tokens):
        raise PreconditionFailed(f"Route {entry!r} must look like '<destination> via <gateway>'")
    return Route(destination=tokens[via - 1], gateway=tokens[via + 1])


def parse_routes(raw: Optional[str]) -> Tuple[Route, ...]:
    """Parse the ROUTES value into an ordered sequence of routes."""
    if not raw or not raw.strip():
        return ()
    return tuple(parse_route(entry) for entry in _split_route_entries(raw))


def _positive_int(key: str, value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        number = int(value.strip())
    except ValueError:
        raise PreconditionFailed(f"{key} must be an integer, got {value!r}")
    if number <= 0:
        raise PreconditionFailed(f"{key} must be positive, got {number}")
    return number


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EnvironmentConfig:
    """Read-only settings shared by every stage of a build."""

    users: Tuple[str, ...] = ()
    keys: Tuple[str, ...] = ()
    routes: Tuple[Route, ...] = ()
    vm_memory_mb: int = DEFAULT_VM_MEMORY_MB
    vm_settings: str = DEFAULT_VM_SETTINGS
    storage_override: Optional[str] = None
    cloudinit_user: str = DEFAULT_CLOUDINIT_USER
    cloudinit_password: str = ""

    # Host access and integrations
    pve_node: str = ""
    pve_host: Optional[str] = None
    ssh_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"
    api_token: Optional[str] = None
    verify_ssl: bool = False
    ntfy_url: Optional[str] = None
    download_connections: int = DEFAULT_DOWNLOAD_CONNECTIONS
    work_dir: str = "."
    key_dir: str = "."
    consul_url: Optional[str] = None

    @property
    def node_name(self) -> str:
        """Node name used for API and pvesh queries."""
        if self.pve_node:
            return self.pve_node
        if self.pve_host:
            return self.pve_host.split(".")[0]
        return socket.gethostname().split(".")[0]

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[str]]) -> "EnvironmentConfig":
        """Build the configuration from already-loaded key/value pairs."""

        def get(key: str, default: Optional[str] = None) -> Optional[str]:
            value = values.get(key)
            if value is None or value == "":
                return default
            return value

        return cls(
            users=_unique((get("USERS") or "").split()),
            keys=_unique((get("KEYS") or "").split()),
            routes=parse_routes(get("ROUTES")),
            vm_memory_mb=_positive_int("VMMEM", get("VMMEM"), DEFAULT_VM_MEMORY_MB),
            vm_settings=get("VMSETTINGS", DEFAULT_VM_SETTINGS) or "",
            storage_override=get("STORAGE"),
            cloudinit_user=get("CIUSER", DEFAULT_CLOUDINIT_USER) or DEFAULT_CLOUDINIT_USER,
            cloudinit_password=get("CIPASSWORD", "") or "",
            pve_node=get("PVE_NODE", "") or "",
            pve_host=get("PVE_HOST"),
            ssh_user=get("SSH_USER", "root") or "root",
            ssh_key_path=get("SSH_KEY_PATH", "~/.ssh/id_rsa") or "~/.ssh/id_rsa",
            api_token=get("API_TOKEN"),
            verify_ssl=_truthy(get("PVE_VERIFY_SSL")),
            ntfy_url=get("NTFY_URL"),
            download_connections=_positive_int(
                "DOWNLOAD_CONNECTIONS", get("DOWNLOAD_CONNECTIONS"), DEFAULT_DOWNLOAD_CONNECTIONS
            ),
            work_dir=get("WORK_DIR", ".") or ".",
            key_dir=get("KEY_DIR", ".") or ".",
            consul_url=get("CONSUL_URL"),
        )

    @classmethod
    def from_env_file(cls, path: str = DEFAULT_ENV_FILE) -> "EnvironmentConfig":
        """
        Load configuration from a dotenv file.

        Variables already exported in the process environment win over the
        file, matching ``load_dotenv`` semantics.

        Raises:
            PreconditionFailed: If the file does not exist or a value is invalid.
        """
        if not os.path.isfile(path):
            raise PreconditionFailed(f"Environment file {path} not found")

        values: Dict[str, Optional[str]] = dict(dotenv_values(path))
        for key in ENV_KEYS:
            if key in os.environ:
                values[key] = os.environ[key]

        config = cls.from_mapping(values)
        logger.debug(
            f"Loaded {path}: users={list(config.users)}, routes={len(config.routes)}, "
            f"storage={config.storage_override or 'auto'}"
        )
        return config
