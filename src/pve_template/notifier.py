"""ntfy notifications for finished template builds."""

import base64
import logging
from typing import Optional

import requests

from pve_template.exceptions import NotificationDeliveryFailed
from pve_template.pipeline import BuildResult

logger = logging.getLogger(__name__)

SUCCESS_TAG = "heavy_check_mark"
FAILURE_TAG = "x"


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Accept ``ntfy.sh/topic`` as shorthand for ``https://ntfy.sh/topic``."""
    if not url:
        return None
    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"
    return url


def header_value(text: str) -> str:
    """HTTP headers are latin-1 only; non-ASCII text goes out RFC 2047 encoded."""
    try:
        text.encode("ascii")
    except UnicodeEncodeError:
        encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
        return f"=?utf-8?b?{encoded}?="
    return text


class NtfyNotifier:
    """Posts one status message per build to an ntfy topic."""

    def __init__(self, url: Optional[str], timeout: float = 10.0) -> None:
        self.url = normalize_url(url)
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def build_message(self, result: BuildResult) -> str:
        vm_name = result.request.vm_name
        if result.ok:
            return f"Finished {vm_name} processing"
        return f"{vm_name} processing failed at stage {result.stage}: {result.cause}"

    def send(self, result: BuildResult) -> bool:
        """Send the status of ``result``. Delivery problems are logged, never raised."""
        if not self.enabled:
            logger.info("NTFY_URL not configured, skipping notification")
            return False

        tag = SUCCESS_TAG if result.ok else FAILURE_TAG
        title = f"Template {result.request.vm_name} ({result.request.vm_id})"
        try:
            self._post(self.build_message(result), tag, title)
        except NotificationDeliveryFailed as e:
            logger.warning(f"Notification not delivered: {e}")
            return False

        logger.info("Notification sent successfully")
        return True

    def _post(self, message: str, tag: str, title: str) -> None:
        try:
            response = requests.post(
                self.url,  # type: ignore[arg-type]
                data=message.encode("utf-8"),
                headers={"X-Tags": tag, "Title": header_value(title)},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except (requests.RequestException, UnicodeError) as e:
            raise NotificationDeliveryFailed(f"POST {self.url} failed: {e}") from e
