"""Distro-aware customization profiles chosen from the image name or URL."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from pve_template.config import EnvironmentConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistroProfile:
    """Packages and account policy applied to one guest OS family."""

    name: str
    packages: Tuple[str, ...]
    sudo_group: str
    memory_override: Optional[int] = None
    default_user_override: Optional[str] = None

    def memory_mb(self, env: EnvironmentConfig) -> int:
        """Memory for the template VM; the profile wins only when it sets one."""
        return self.memory_override if self.memory_override is not None else env.vm_memory_mb

    def cloudinit_user(self, env: EnvironmentConfig) -> str:
        """Cloud-init login user; the profile wins only when it sets one."""
        return self.default_user_override or env.cloudinit_user


DEBIAN_FAMILY = DistroProfile(
    name="debian",
    packages=("qemu-guest-agent", "mc", "cron", "avahi-daemon", "htop"),
    sudo_group="sudo",
)

REDHAT_FAMILY = DistroProfile(
    name="redhat",
    packages=("qemu-guest-agent", "mc", "avahi-tools"),
    sudo_group="wheel",
    memory_override=1024,
    default_user_override="almalinux",
)


@dataclass(frozen=True)
class ProfileRule:
    """Replaces the current profile when ``matches(image_name, image_url)`` holds."""

    description: str
    matches: Callable[[str, str], bool]
    profile: DistroProfile


def _is_debian_family(image_name: str, image_url: str) -> bool:
    return any(marker in image_name for marker in ("ubuntu", "debian")) or any(
        marker in image_url for marker in ("ubuntu", "debian")
    )


def _is_redhat_family(image_name: str, image_url: str) -> bool:
    return any(marker in image_name for marker in ("alma", "red")) or any(
        marker in image_url for marker in ("almalinux", "redhat", "rhel")
    )


# Order matters: a later matching rule replaces the profile chosen so far.
RULES: List[ProfileRule] = [
    ProfileRule("Ubuntu/Debian", _is_debian_family, DEBIAN_FAMILY),
    ProfileRule("AlmaLinux/Red Hat", _is_redhat_family, REDHAT_FAMILY),
]


class DistroProfileSelector:
    """Resolves the customization profile for an image."""

    def __init__(self, baseline: DistroProfile = DEBIAN_FAMILY, rules: Optional[List[ProfileRule]] = None) -> None:
        self.baseline = baseline
        self.rules = RULES if rules is None else rules

    def select(self, image_name: str, image_url: str = "") -> DistroProfile:
        """Apply every matching rule in order, starting from the baseline."""
        name = image_name.lower()
        url = image_url.lower()

        profile = self.baseline
        for rule in self.rules:
            if rule.matches(name, url):
                logger.debug(f"{image_name}: {rule.description} rule matched")
                profile = rule.profile

        logger.info(f"Distro profile for {image_name}: {profile.name} (sudo group {profile.sudo_group})")
        return profile
