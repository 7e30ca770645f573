import logging
import os

from pve_template.exceptions import CommandError, DownloadFailed
from pve_template.executor import Executor

logger = logging.getLogger(__name__)


def image_source_url(image_url: str, image_name: str) -> str:
    """Join the image directory URL and the file name."""
    return f"{image_url.rstrip('/')}/{image_name}"


class ImageDownloader:
    """Fetches cloud images with aria2c using parallel segments."""

    def __init__(self, executor: Executor, connections: int = 6) -> None:
        self.executor = executor
        self.connections = connections

    def download(self, url: str, dest_dir: str, filename: str) -> str:
        """
        Download ``url`` to ``dest_dir/filename``, overwriting any previous copy.

        Raises:
            DownloadFailed: If aria2c fails or the file is missing afterwards.
        """
        dest = os.path.join(dest_dir, filename)
        logger.info(f"⬇️  Downloading {url} → {dest} ({self.connections} connections)")
        try:
            self.executor.run(
                [
                    "aria2c",
                    "--allow-overwrite=true",
                    "--auto-file-renaming=false",
                    "--summary-interval=360",
                    "-x",
                    str(self.connections),
                    "-d",
                    dest_dir,
                    "-o",
                    filename,
                    url,
                ]
            )
        except CommandError as e:
            raise DownloadFailed(f"Download of {url} failed: {e}") from e

        if not self.executor.exists(dest):
            raise DownloadFailed(f"aria2c finished but {dest} does not exist")
        return dest
