"""Download service with progress reporting and checksum validation."""

import hashlib
import os
from typing import Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from moodleupgrader.constants import DEFAULT_DOWNLOAD_TIMEOUT
from moodleupgrader.errors import FetchFailedError


class DownloadService:
    """Streams remote release archives to disk."""

    def __init__(
        self,
        validation_service,
        logger,
        console,
        requests_module,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    ):
        self.validation_service = validation_service
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.timeout = timeout

    def download_file(
        self,
        url: str,
        dest_path: str,
        description: str = "Downloading...",
        expected_sha256: Optional[str] = None,
    ):
        self.logger.info("Downloading %s to %s", url, dest_path)
        self.validation_service.enforce_https_policy(url, description, self.logger, self.console)

        hasher = hashlib.sha256() if expected_sha256 else None

        try:
            with self.requests.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total_size = int(response.headers.get("Content-Length", 0))

                os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    "•",
                    TimeElapsedColumn(),
                    console=self.console,
                ) as progress:
                    task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                    with open(dest_path, "wb") as file_obj:
                        for chunk in response.iter_content(chunk_size=8192):
                            if not chunk:
                                continue
                            file_obj.write(chunk)
                            if hasher:
                                hasher.update(chunk)
                            progress.update(task, advance=len(chunk))
        except self.requests.RequestException as exc:
            self._discard(dest_path)
            raise FetchFailedError(f"Download failed for {description}: {exc}") from exc
        except OSError as exc:
            self._discard(dest_path)
            raise FetchFailedError(f"Could not write {dest_path}: {exc}") from exc

        if hasher:
            downloaded_sha = hasher.hexdigest()
            if downloaded_sha != expected_sha256:
                self._discard(dest_path)
                raise FetchFailedError(
                    f"Checksum mismatch for {description}. Expected {expected_sha256}, "
                    f"but got {downloaded_sha}."
                )

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except OSError:
            pass
