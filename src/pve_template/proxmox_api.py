import json
import logging
from typing import Any, Dict, List, Optional

from proxmoxer import ProxmoxAPI

from pve_template.config import EnvironmentConfig
from pve_template.executor import Executor

logger = logging.getLogger(__name__)

STORAGE_CONFIG_PATH = "/etc/pve/storage.cfg"


class ProxmoxClient:
    """Storage queries against a Proxmox node, via the REST API or pvesh."""

    def __init__(self, env: EnvironmentConfig, executor: Executor) -> None:
        self.node = env.node_name
        self.executor = executor
        self.proxmox: Optional[ProxmoxAPI] = None

        if env.api_token:
            try:
                user_token, token_value = env.api_token.split("=", 1)
                user, token_name = user_token.split("!", 1)
            except ValueError:
                raise ValueError("API_TOKEN must look like user@realm!tokenid=secret")
            host = env.pve_host or self.node
            self.proxmox = ProxmoxAPI(
                host, user=user, token_name=token_name, token_value=token_value, verify_ssl=env.verify_ssl
            )

    @property
    def cli_mode(self) -> bool:
        """True when queries go through pvesh instead of the REST API."""
        return self.proxmox is None

    def list_storage(self, content: str = "images") -> List[Dict[str, Any]]:
        """List the node's storage backends that accept ``content``, in listing order."""
        if self.proxmox is not None:
            return self.proxmox.nodes(self.node).storage.get(content=content)  # type: ignore[no-any-return]

        result = self.executor.run(
            [
                "pvesh",
                "get",
                f"/nodes/{self.node}/storage",
                "--content",
                content,
                "--output-format",
                "json",
            ]
        )
        if not result.stdout:
            return []
        return json.loads(result.stdout)  # type: ignore[no-any-return]

    def read_storage_config(self) -> str:
        """Return the raw storage configuration, or an empty string if unreadable."""
        text = self.executor.read_text(STORAGE_CONFIG_PATH)
        if text is None:
            logger.warning(f"{STORAGE_CONFIG_PATH} not found on {self.node}")
            return ""
        return text
