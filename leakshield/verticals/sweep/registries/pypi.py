"""
PyPI registry cursor driven by the XML-RPC changelog.
"""

import concurrent.futures
import logging
import xmlrpc.client
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import quote
from xml.parsers.expat import ExpatError

from leakshield.core.errors import UpstreamProtocolError
from leakshield.core.text_utils import format_timestamp, parse_timestamp
from leakshield.verticals.sweep.registries import (
    PackageReference,
    PollResult,
    RegistryStats,
    RegistryType,
)
from leakshield.verticals.sweep.registries.base import PollContext, RegistryCursor


logger = logging.getLogger(__name__)

PYPI_XMLRPC_URL = "https://pypi.org/pypi"
PYPI_JSON_URL = "https://pypi.org/pypi/{name}/{version}/json"

# Per-version metadata lookups answering with these statuses have no files
_NO_FILES_STATUSES = frozenset({400, 404})

# Largest projects on https://pypi.org/stats/, not worth downloading
SKIP_PACKAGES = frozenset(
    {
        "tf-nightly",
        "tensorflow",
        "catboost-dev",
        "tensorflow-gpu",
        "tensorflow-io-nightly",
        "tf-nightly-gpu",
        "paddlepaddle-gpu",
        "frida",
        "tf-nightly-cpu",
        "openvisus",
        "tf-nightly-intel",
        "tensorflow-cpu",
        "torch",
        "tf-nightly-cpu-aws",
        "cupy-cuda92",
        "cupy-cuda100",
        "cupy-cuda90",
        "lalsuite",
        "tensorflow-rocm",
        "cupy-cuda91",
        "cupy-cuda101",
        "pyagrum-nightly",
        "catboost",
        "grpcio",
        "opencv-contrib-python",
        "grpcio-tools",
        "opencv-python",
        "opencv-contrib-python-headless",
        "scipy",
        "deepspeech-gpu",
        "cupy-cuda80",
        "pantsbuild.pants",
        "sickrage",
        "ovito",
        "ray",
        "pyqt5-tools",
        "cupy-cuda102",
        "panda3d",
        "opencv-python-headless",
        "paddlepaddle",
        "codeforlife-portal",
        "tensorflow-io-2.0-preview",
        "udata",
        "pulsar-client-sn",
        "cmake",
        "numpy",
        "pybullet",
        "tf-gpu",
        "codeintel",
        "ddtrace",
        "itk-core",
        "ccxt",
        "xpress",
        "itk-filtering",
        "tendenci",
        "apache-flink",
        "pyside2",
        "tensorflow-aarch64",
        "rasterio",
        "cupy-cuda111",
        "pygame",
        "taichi",
        "intel-tensorflow",
        "botocore",
        "matplotlib",
        "pulumi-azure-native",
        "megengine",
        "allennlp-pvt-nightly",
        "casadi",
        "monocdk",
        "kolibri",
        "cupy-cuda110",
        "jaxlib",
        "deepspeech",
        "ctranslate2",
        "azureml-dataprep-rslex",
        "tensorflow-rocm-enhanced",
        "spacy",
        "homeassistant",
        "pystan",
        "pyarrow",
        "cntk-gpu",
        "home-assistant-frontend",
        "aws-cdk-lib",
        "jiminy-py",
        "nimbusml",
        "simpleitk",
        "mindspore",
        "pandas",
        "h2o",
        "cityenergyanalyst",
        "mosek",
        "construct-hub",
        "aim",
        "mxnet-cu90",
        "open3d",
        "pyre-check-nightly",
        "tiledb",
        "mkl",
        "awscrt",
    }
)


@dataclass(frozen=True)
class ChangelogEntry:
    """One row of the PyPI changelog."""

    name: str
    version: Optional[str]
    timestamp: datetime
    action: str
    serial: int

    @property
    def file_name(self) -> str:
        """File added by an "add <python_version> file <name>" action."""
        return self.action.rsplit(" ", 1)[-1]

    def is_candidate(self, skip_packages: Set[str]) -> bool:
        return (
            self.version is not None
            and self.action.startswith("add ")
            and ".exe" not in self.action
            and self.name.lower() not in skip_packages
        )


def parse_changelog_row(row: Any) -> ChangelogEntry:
    """
    Parse a [name, version, timestamp, action, serial] changelog row.

    Raises:
        UpstreamProtocolError: the row does not have that shape
    """
    if not isinstance(row, (list, tuple)) or len(row) != 5:
        raise UpstreamProtocolError(f"Unexpected PyPI changelog row: {row!r}")
    name, version, timestamp, action, serial = row
    if (
        not isinstance(name, str)
        or not isinstance(action, str)
        or not isinstance(timestamp, int)
        or not isinstance(serial, int)
        or not (version is None or isinstance(version, str))
    ):
        raise UpstreamProtocolError(f"Unexpected PyPI changelog row: {row!r}")
    return ChangelogEntry(
        name=name,
        version=version,
        timestamp=datetime.fromtimestamp(timestamp, tz=timezone.utc),
        action=action,
        serial=serial,
    )


@dataclass(frozen=True)
class PyPiCursor(RegistryCursor):
    """Position in the PyPI changelog, as the last processed serial."""

    registry_type = RegistryType.PYPI

    serial: int = 0
    last_timestamp: Optional[datetime] = None
    stats: RegistryStats = field(default_factory=RegistryStats)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "PyPiCursor":
        if state is None:
            return cls()
        timestamp = state.get("last_package_timestamp")
        return cls(
            serial=int(state.get("changelog_serial", 0)),
            last_timestamp=parse_timestamp(timestamp) if timestamp else None,
            stats=RegistryStats.from_dict(state.get("stats")),
        )

    def to_state(self) -> Dict[str, Any]:
        return {
            "changelog_serial": self.serial,
            "last_package_timestamp": (
                format_timestamp(self.last_timestamp) if self.last_timestamp else None
            ),
            "stats": self.stats.to_dict(),
        }

    @property
    def position(self) -> int:
        return self.serial

    def describe(self) -> str:
        description = f"PyPI - packages changed since serial {self.serial}"
        if self.last_timestamp:
            description += f". Last timestamp: {format_timestamp(self.last_timestamp)}"
        return description

    def poll(self, ctx: PollContext, limit: int) -> PollResult:
        rows = self._fetch_changelog(ctx)
        skip_packages = SKIP_PACKAGES | {name.lower() for name in ctx.skip_packages}

        # Rows are scanned in serial order. Every scanned row moves the cursor,
        # including the ones filtered out, but nothing past the last scanned row.
        entries = sorted((parse_changelog_row(row) for row in rows), key=lambda e: e.serial)
        candidates: List[ChangelogEntry] = []
        scanned: List[ChangelogEntry] = []
        for entry in entries:
            if entry.serial <= self.serial:
                continue
            if len(candidates) >= limit:
                break
            scanned.append(entry)
            if entry.is_candidate(skip_packages):
                candidates.append(entry)

        if not scanned:
            logger.info("No new PyPI changelog entries since serial %d", self.serial)
            return PollResult(cursor=self)

        highest_timestamp = max(e.timestamp for e in scanned)
        if self.last_timestamp is not None:
            highest_timestamp = max(highest_timestamp, self.last_timestamp)
        new_cursor = replace(
            self,
            serial=max(e.serial for e in scanned),
            last_timestamp=highest_timestamp,
        )
        logger.debug(
            "PyPI changelog: %d rows scanned, %d candidate files, serial %d -> %d",
            len(scanned),
            len(candidates),
            self.serial,
            new_cursor.serial,
        )

        references = self._resolve_download_urls(ctx, candidates)
        return PollResult(cursor=new_cursor, references=references)

    def _fetch_changelog(self, ctx: PollContext) -> List[Any]:
        body = xmlrpc.client.dumps((self.serial,), methodname="changelog_since_serial")
        response = ctx.post(
            PYPI_XMLRPC_URL,
            data=body.encode("utf-8"),
            headers={"Content-Type": "text/xml"},
        )
        response.raise_for_status()
        try:
            params, _ = xmlrpc.client.loads(response.content)
        except (xmlrpc.client.Fault, xmlrpc.client.ResponseError, ExpatError) as e:
            raise UpstreamProtocolError(
                f"Cannot decode PyPI changelog since serial {self.serial}: {e}"
            ) from e
        if len(params) != 1 or not isinstance(params[0], list):
            raise UpstreamProtocolError(
                f"Unknown PyPI changelog response: {str(params)[:200]}"
            )
        return params[0]

    def _resolve_download_urls(
        self, ctx: PollContext, candidates: List[ChangelogEntry]
    ) -> List[PackageReference]:
        """
        Look up the files of each (name, version) and keep the ones the
        changelog reported as added.

        One metadata request is made per release, not per file.
        """
        files_by_release: Dict[Tuple[str, str], Set[str]] = {}
        for entry in candidates:
            if entry.version is None:
                continue
            files_by_release.setdefault((entry.name, entry.version), set()).add(
                entry.file_name
            )
        if not files_by_release:
            return []

        logger.debug("Fetching PyPI metadata for %d releases", len(files_by_release))
        references: Set[PackageReference] = set()
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=ctx.max_workers,
            thread_name_prefix="pypi_metadata",
        ) as executor:
            futures_to_release = {
                executor.submit(fetch_release_files, ctx, name, version, file_names): (
                    name,
                    version,
                )
                for (name, version), file_names in files_by_release.items()
            }
            try:
                for future in concurrent.futures.as_completed(futures_to_release):
                    references.update(future.result())
            except BaseException:
                for future in futures_to_release:
                    future.cancel()
                raise

        return sorted(references, key=lambda r: (r.name, r.version, r.download_url))


def fetch_release_files(
    ctx: PollContext, name: str, version: str, file_names: Set[str]
) -> List[PackageReference]:
    """
    Return references for the files of name==version listed in file_names.

    Raises:
        UpstreamProtocolError: the metadata is not the expected JSON document
        requests.HTTPError: any error status other than 400 and 404
    """
    url = PYPI_JSON_URL.format(name=quote(name, safe=""), version=quote(version, safe=""))
    response = ctx.get(url)
    # Some versions are not valid in a URL and answer 400, deleted ones 404
    if response.status_code in _NO_FILES_STATUSES:
        logger.debug("No PyPI metadata for %s %s (%d)", name, version, response.status_code)
        return []
    response.raise_for_status()

    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamProtocolError(
            f"Failed to read JSON for {url} - status {response.status_code}"
        ) from e
    urls = data.get("urls") if isinstance(data, dict) else None
    if not isinstance(urls, list):
        raise UpstreamProtocolError(f"Missing 'urls' in PyPI metadata for {url}")

    references = []
    for file_info in urls:
        if not isinstance(file_info, dict):
            continue
        download_url = file_info.get("url")
        if file_info.get("filename") in file_names and download_url:
            references.append(
                PackageReference(
                    registry=RegistryType.PYPI,
                    name=name,
                    version=version,
                    download_url=download_url,
                )
            )
    return references
