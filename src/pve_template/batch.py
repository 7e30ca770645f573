"""Sequential builds of several templates described in a YAML file.

Example ``templates.yaml``::

    templates:
      - image_name: noble-server-cloudimg-amd64.img
        image_url: https://cloud-images.ubuntu.com/noble/current
        vm_name: ubuntu-2404-cloudinit-template
        vm_id: 9001
      - image_name: debian-12-generic-amd64.qcow2
        image_url: https://cdimage.debian.org/images/cloud/bookworm/latest
        vm_name: debian-bookworm-template
        vm_id: 9002
"""

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from pve_template.exceptions import PreconditionFailed
from pve_template.notifier import NtfyNotifier
from pve_template.pipeline import BuildRequest, BuildResult, TemplatePipeline

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("image_name", "image_url", "vm_name", "vm_id")


def _request_from_entry(index: int, entry: Dict[str, Any]) -> BuildRequest:
    if not isinstance(entry, dict):
        raise PreconditionFailed(f"templates[{index}] must be a mapping")
    missing = [key for key in REQUIRED_FIELDS if key not in entry]
    if missing:
        raise PreconditionFailed(f"templates[{index}] is missing {', '.join(missing)}")
    try:
        vm_id = int(entry["vm_id"])
    except (TypeError, ValueError):
        raise PreconditionFailed(f"templates[{index}].vm_id must be an integer")
    return BuildRequest(
        image_name=str(entry["image_name"]),
        image_url=str(entry["image_url"]),
        vm_name=str(entry["vm_name"]),
        vm_id=vm_id,
    )


def load_requests(path: Path) -> List[BuildRequest]:
    """
    Read build requests from a YAML file.

    Raises:
        PreconditionFailed: If the file is missing, malformed, or reuses a vm_id.
    """
    if not path.exists():
        raise PreconditionFailed(f"Template list {path} not found")

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise PreconditionFailed(f"Template list {path} is not valid YAML: {e}") from e
    entries = data.get("templates") if isinstance(data, dict) else None
    if not isinstance(entries, list) or not entries:
        raise PreconditionFailed(f"{path} must contain a non-empty 'templates' list")

    requests = [_request_from_entry(index, entry) for index, entry in enumerate(entries)]

    seen: Dict[int, str] = {}
    for request in requests:
        if request.vm_id in seen:
            raise PreconditionFailed(
                f"vm_id {request.vm_id} used by both {seen[request.vm_id]} and {request.vm_name}"
            )
        seen[request.vm_id] = request.vm_name
    return requests


def run_batch(
    pipeline: TemplatePipeline, requests: List[BuildRequest], notifier: NtfyNotifier
) -> List[BuildResult]:
    """Build each request in turn, notifying after each one; failures do not stop the batch."""
    results = []
    for request in requests:
        result = pipeline.run(request)
        notifier.send(result)
        results.append(result)

    failed = [r for r in results if not r.ok]
    logger.info(f"Batch finished: {len(results) - len(failed)} succeeded, {len(failed)} failed")
    return results
