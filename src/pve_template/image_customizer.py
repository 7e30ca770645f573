#!/usr/bin/env python3
"""
In-image customization of a staged cloud image with virt-customize.

Handles:
- Package installation and guest-agent enablement
- Per-user accounts with SSH keys and passwordless sudo
- SSH hardening
- Static-route enforcement job
- Machine-id reset so every clone gets its own identity

Every step is idempotent and runs as one virt-customize invocation, so a
failed build can simply be re-run. Generated files are written straight
into the image with ``--write``; nothing is staged on the build host.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from pve_template.config import Route
from pve_template.distro import DistroProfile
from pve_template.exceptions import CommandError, CustomizationStepFailed
from pve_template.executor import Executor

logger = logging.getLogger(__name__)

GUEST_AGENT_SERVICE = "qemu-guest-agent"
ROUTE_SCRIPT_PATH = "/usr/local/sbin/enforce-static-routes"
ROUTE_CRON_PATH = "/etc/cron.d/static-routes"
CONSUL_SCRIPT_PATH = "/usr/local/bin/register_service.sh"
CONSUL_CRON_PATH = "/etc/cron.d/register-service"
SSHD_CONFIG_FILES = "/etc/ssh/sshd_config /etc/ssh/sshd_config.d/*.conf"


@dataclass
class CustomizationStep:
    """A named group of virt-customize operations that succeed or fail together."""

    name: str
    operations: List[str] = field(default_factory=list)


def pending_routes(routes: Iterable[Route], routing_state: str) -> List[Route]:
    """
    Return the routes that still need adding given ``ip route show`` output.

    A route counts as present when a routing-table line starts with its
    ``<destination> via <gateway>`` text. The generated enforcement script
    applies the same test, so repeated runs never re-add a present route.
    """
    lines = [line.strip() for line in routing_state.splitlines() if line.strip()]
    missing = []
    for route in routes:
        text = route.render()
        if not any(line == text or line.startswith(text + " ") for line in lines):
            missing.append(route)
    return missing


def render_route_script(routes: Sequence[Route]) -> str:
    """Shell script that adds each configured route only if it is absent."""
    lines = [
        "#!/bin/sh",
        "# Re-adds static routes missing from the routing table.",
        "route_present() {",
        "    ip route show | {",
        "        while read -r line; do",
        '            case "$line" in',
        '                "$1 via $2" | "$1 via $2 "*) exit 0 ;;',
        "            esac",
        "        done",
        "        exit 1",
        "    }",
        "}",
        "",
        "add_route() {",
        '    route_present "$1" "$2" || ip route add "$1" via "$2"',
        "}",
        "",
    ]
    lines.extend(f"add_route {route.destination} {route.gateway}" for route in routes)
    return "\n".join(lines) + "\n"


def render_route_cron() -> str:
    return (
        f"*/5 * * * * root {ROUTE_SCRIPT_PATH}\n"
        f"@reboot root {ROUTE_SCRIPT_PATH}\n"
    )


def render_consul_script(consul_url: str) -> str:
    endpoint = f"{consul_url.rstrip('/')}/v1/agent/service/register"
    return (
        "#!/bin/bash\n"
        "LOCAL_IP=$(hostname -I | awk '{print $1}')\n"
        "XHOSTNAME=$(hostname)\n"
        'curl -s -H "Content-Type: application/json" -X PUT '
        '-d "{\\"ID\\": \\"$XHOSTNAME\\", \\"Name\\": \\"$XHOSTNAME\\", \\"Address\\": \\"$LOCAL_IP\\"}" '
        f"{endpoint}\n"
    )


class ImageCustomizer:
    """Applies the ordered customization steps to a staged image."""

    def __init__(self, executor: Executor, key_dir: str = ".", consul_url: Optional[str] = None) -> None:
        self.executor = executor
        self.key_dir = key_dir
        self.consul_url = consul_url

    def read_user_keys(self, user: str) -> List[str]:
        """
        Return public keys from ``<key_dir>/<user>.pub``.

        A missing file means no key for that user, which is not an error.
        """
        path = os.path.join(self.key_dir, f"{user}.pub")
        if not os.path.isfile(path):
            logger.info(f"No {user}.pub found, skipping key injection for {user}")
            return []
        try:
            with open(path, encoding="utf-8") as f:
                return [line.strip() for line in f if line.strip() and not line.startswith("#")]
        except (OSError, UnicodeDecodeError) as e:
            raise CustomizationStepFailed(f"user:{user}", f"Cannot read {path}: {e}") from e

    def user_step(self, user: str, profile: DistroProfile) -> CustomizationStep:
        home = f"/home/{user}"
        operations = [
            "--run-command",
            f"id -u {user} >/dev/null 2>&1 || useradd -m -d {home} -s /bin/bash {user}",
            "--run-command",
            f"usermod -aG {profile.sudo_group} {user}",
            "--mkdir",
            f"{home}/.ssh",
        ]
        for key in self.read_user_keys(user):
            operations += ["--ssh-inject", f"{user}:string:{key}"]
        operations += ["--run-command", f"chown -R {user}:{user} {home}"]
        return CustomizationStep(f"user:{user}", operations)

    def plan(
        self,
        profile: DistroProfile,
        users: Sequence[str] = (),
        routes: Sequence[Route] = (),
    ) -> List[CustomizationStep]:
        """Build the ordered list of steps for a profile, users and routes."""
        steps = [
            CustomizationStep("install-packages", ["--install", ",".join(profile.packages)]),
            CustomizationStep(
                "enable-guest-agent", ["--run-command", f"systemctl enable {GUEST_AGENT_SERVICE}"]
            ),
        ]

        if self.consul_url:
            steps.append(
                CustomizationStep(
                    "service-registration",
                    [
                        "--write",
                        f"{CONSUL_SCRIPT_PATH}:{render_consul_script(self.consul_url)}",
                        "--chmod",
                        f"0755:{CONSUL_SCRIPT_PATH}",
                        "--write",
                        f"{CONSUL_CRON_PATH}:* * * * * root {CONSUL_SCRIPT_PATH}\n",
                    ],
                )
            )

        steps.extend(self.user_step(user, profile) for user in users)

        sudoers_path = f"/etc/sudoers.d/90-nopasswd-{profile.sudo_group}"
        steps.append(
            CustomizationStep(
                "passwordless-sudo",
                [
                    "--write",
                    f"{sudoers_path}:%{profile.sudo_group} ALL=(ALL) NOPASSWD:ALL\n",
                    "--chmod",
                    f"0440:{sudoers_path}",
                ],
            )
        )

        steps.append(
            CustomizationStep(
                "ssh-hardening",
                [
                    "--run-command",
                    f"for f in {SSHD_CONFIG_FILES}; do [ -f \"$f\" ] || continue; "
                    "sed -i "
                    "-e 's/^#\\?\\s*PasswordAuthentication\\s.*/PasswordAuthentication no/' "
                    "-e 's/^#\\?\\s*PermitRootLogin\\s.*/PermitRootLogin prohibit-password/' "
                    "\"$f\"; done",
                ],
            )
        )

        if routes:
            steps.append(
                CustomizationStep(
                    "static-routes",
                    [
                        "--write",
                        f"{ROUTE_SCRIPT_PATH}:{render_route_script(routes)}",
                        "--chmod",
                        f"0755:{ROUTE_SCRIPT_PATH}",
                        "--write",
                        f"{ROUTE_CRON_PATH}:{render_route_cron()}",
                    ],
                )
            )
        else:
            logger.info("No ROUTES configured, skipping static route job")

        steps.append(CustomizationStep("reset-machine-id", ["--truncate", "/etc/machine-id"]))
        return steps

    def customize(
        self,
        image_path: str,
        profile: DistroProfile,
        users: Sequence[str] = (),
        routes: Sequence[Route] = (),
    ) -> None:
        """
        Run every step against ``image_path`` in order.

        Raises:
            CustomizationStepFailed: On the first failing step; later steps are not run.
        """
        for step in self.plan(profile, users, routes):
            logger.info(f"🔧 {step.name}")
            try:
                self.executor.run(["virt-customize", "-a", image_path, *step.operations])
            except CommandError as e:
                raise CustomizationStepFailed(step.name, str(e)) from e
