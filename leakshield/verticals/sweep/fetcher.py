"""
Downloading package artifacts into scratch workspaces.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import requests

from leakshield.core.constants import DEFAULT_HTTP_TIMEOUT, DOWNLOAD_CHUNK_SIZE
from leakshield.verticals.sweep.registries import PackageReference


logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "leakshield-"


@dataclass
class DownloadedArtifact:
    """
    A downloaded package archive and the scratch directory holding it.

    The download and extraction locations are separate subdirectories of
    scratch_dir. Use as a context manager: the scratch directory is removed
    when the block exits, whatever the outcome.
    """

    reference: PackageReference
    scratch_dir: Path
    local_archive_path: Path
    _released: bool = field(default=False, repr=False)

    @property
    def download_dir(self) -> Path:
        return self.scratch_dir / "download"

    @property
    def extract_dir(self) -> Path:
        return self.scratch_dir / "extracted"

    def relative_path(self, path: Path) -> str:
        """Return path relative to the extraction root, for reporting."""
        return path.relative_to(self.extract_dir).as_posix()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        shutil.rmtree(self.scratch_dir, ignore_errors=True)

    def __enter__(self) -> "DownloadedArtifact":
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()


class ArchiveFetcher:
    """Streams package archives to disk."""

    def __init__(
        self,
        session: requests.Session,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        scratch_root: Optional[Path] = None,
    ):
        self.session = session
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.scratch_root = scratch_root

    def fetch(self, reference: PackageReference) -> DownloadedArtifact:
        """
        Download reference into a fresh scratch directory.

        The caller owns the returned artifact and must release it. If the
        download fails the scratch directory is removed before raising.

        Raises:
            requests.RequestException: transport failure or non-2xx response
            OSError: the archive could not be written
        """
        scratch_dir = Path(
            tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=self.scratch_root)
        )
        artifact = DownloadedArtifact(
            reference=reference,
            scratch_dir=scratch_dir,
            local_archive_path=scratch_dir / "download" / (reference.file_name or "archive"),
        )
        try:
            artifact.download_dir.mkdir()
            artifact.extract_dir.mkdir()
            self._download(reference.download_url, artifact.local_archive_path)
        except BaseException:
            artifact.release()
            raise
        return artifact

    def _download(self, url: str, destination: Path) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with destination.open("wb") as out:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    out.write(chunk)
        logger.debug("Downloaded %s (%d bytes)", url, destination.stat().st_size)
