from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import requests

from leakshield.core.config import SweepConfig
from leakshield.core.errors import IdentityCheckError, InvariantViolationError
from leakshield.verticals.sweep.fetcher import ArchiveFetcher
from leakshield.verticals.sweep.pipeline import PipelineOrchestrator, Stage
from leakshield.verticals.sweep.registries import (
    PackageReference,
    PollResult,
    RegistryStats,
    RegistryType,
)
from leakshield.verticals.sweep.registries.base import PollContext, RegistryCursor
from leakshield.verticals.sweep.scanner import SecretScanner
from leakshield.verticals.sweep.search import RegexSearcher
from leakshield.verticals.sweep.validator import CredentialValidator, Identity
from tests.unit.conftest import (
    AWS_ACCESS_KEY,
    AWS_SECRET_KEY,
    BENIGN_SOURCE,
    LEAKY_SOURCE,
    OTHER_ACCESS_KEY,
    OTHER_SECRET_KEY,
    make_download_response,
    make_reference,
    tar_bytes,
)


@dataclass(frozen=True)
class FakeCursor(RegistryCursor):
    """Returns a fixed list of references, or raises error."""

    registry_type: ClassVar[RegistryType] = RegistryType.PYPI

    serial: int = 0
    references: Tuple[PackageReference, ...] = ()
    next_serial: Optional[int] = None
    error: Optional[Exception] = field(default=None, compare=False)
    stats: RegistryStats = field(default_factory=RegistryStats)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "FakeCursor":
        return cls()

    def to_state(self) -> Dict[str, Any]:
        return {"serial": self.serial, "stats": self.stats.to_dict()}

    def poll(self, ctx: PollContext, limit: int) -> PollResult:
        if self.error is not None:
            raise self.error
        next_serial = (
            self.next_serial
            if self.next_serial is not None
            else self.serial + len(self.references)
        )
        return PollResult(
            cursor=replace(self, serial=next_serial, references=()),
            references=list(self.references),
        )

    @property
    def position(self) -> int:
        return self.serial

    def describe(self) -> str:
        return f"serial {self.serial}"


@dataclass(frozen=True)
class FakeGemCursor(FakeCursor):
    registry_type: ClassVar[RegistryType] = RegistryType.RUBYGEMS


class FakeChecker:
    def __init__(self, accepted: Tuple[str, ...] = (AWS_ACCESS_KEY, OTHER_ACCESS_KEY)):
        self.accepted = accepted
        self.calls: List[str] = []

    def who_am_i(self, access_key: str, secret_key: str) -> Identity:
        self.calls.append(access_key)
        if access_key not in self.accepted:
            raise IdentityCheckError("InvalidClientTokenId")
        return Identity(arn="arn:aws:iam::123456789012:user/deploy")


def leaky_source(access_key: str, secret_key: str) -> bytes:
    return (
        LEAKY_SOURCE.replace(AWS_ACCESS_KEY, access_key).replace(AWS_SECRET_KEY, secret_key)
    ).encode()


class Harness:
    """Wires an orchestrator to a fake HTTP session serving archives by URL."""

    def __init__(self, tmp_path: Path, checker: Optional[FakeChecker] = None):
        self.scratch_root = tmp_path / "scratch"
        self.scratch_root.mkdir()
        self.downloads: Dict[str, MagicMock] = {}
        self.session = MagicMock(spec=requests.Session)
        self.session.get.side_effect = lambda url, **kwargs: self.downloads[url]
        self.checker = checker or FakeChecker()
        self.orchestrator = PipelineOrchestrator(
            SweepConfig(limit=10, max_workers=4),
            session=self.session,
            fetcher=ArchiveFetcher(self.session, scratch_root=self.scratch_root),
            scanner=SecretScanner(RegexSearcher()),
            validator=CredentialValidator(self.checker),
        )

    def serve(self, reference: PackageReference, files: Dict[str, bytes], status_code: int = 200) -> None:
        self.downloads[reference.download_url] = make_download_response(
            tar_bytes(files), status_code=status_code
        )


def test_run_finds_live_key(tmp_path: Path):
    """
    GIVEN a PyPI package whose archive holds a live key pair three lines apart
    WHEN running a sweep
    THEN one finding is produced with the pair, its file and its first line
    AND the scratch directory is cleaned up
    """
    harness = Harness(tmp_path)
    ref = make_reference()
    harness.serve(ref, {"pkgA-1.0.0/pkgA/conf.py": LEAKY_SOURCE.encode()})

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(serial=100, references=(ref,))}
    )

    assert result.packages_found == {RegistryType.PYPI: 1}
    assert result.packages_scanned == 1
    assert result.possible_matches == 1
    assert len(result.findings) == 1
    finding = result.findings[0]
    assert finding.reference == ref
    [credential] = finding.credentials
    assert credential.candidate.access_key == AWS_ACCESS_KEY
    assert credential.candidate.secret_key == AWS_SECRET_KEY
    assert credential.candidate.file_path == "pkgA-1.0.0/pkgA/conf.py"
    assert credential.candidate.line_number == 1
    assert credential.identity_label == "user/deploy"
    assert list(harness.scratch_root.iterdir()) == []


def test_run_rejected_key(tmp_path: Path):
    """
    GIVEN a package holding a key pair the identity endpoint rejects
    WHEN running a sweep
    THEN the pair is a candidate but produces no finding
    """
    harness = Harness(tmp_path, FakeChecker(accepted=()))
    ref = make_reference()
    harness.serve(ref, {"pkgA-1.0.0/pkgA/conf.py": LEAKY_SOURCE.encode()})

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(references=(ref,))}
    )

    assert len(result.candidates) == 1
    assert result.live_credentials == []
    assert result.findings == []


def test_run_benign_package(tmp_path: Path):
    harness = Harness(tmp_path)
    ref = make_reference()
    harness.serve(ref, {"pkgA-1.0.0/hello.py": BENIGN_SOURCE.encode()})

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(references=(ref,))}
    )

    assert result.packages_scanned == 1
    assert result.possible_matches == 0
    assert result.candidates == []
    assert harness.checker.calls == []


def test_run_validates_in_reference_order(tmp_path: Path):
    """
    GIVEN several leaky packages scanned in parallel
    WHEN running a sweep
    THEN candidates are validated in the order the registry listed the packages
    """
    harness = Harness(tmp_path)
    refs = [make_reference(f"pkg{i}") for i in range(6)]
    for i, ref in enumerate(refs):
        keys = (AWS_ACCESS_KEY, AWS_SECRET_KEY) if i % 2 else (OTHER_ACCESS_KEY, OTHER_SECRET_KEY)
        harness.serve(ref, {f"{ref.name}/conf.py": leaky_source(*keys)})

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(references=tuple(refs))}
    )

    assert harness.checker.calls == [
        OTHER_ACCESS_KEY if i % 2 == 0 else AWS_ACCESS_KEY for i in range(6)
    ]
    assert [f.reference for f in result.findings] == refs


def test_run_download_failure_is_isolated(tmp_path: Path):
    """
    GIVEN two packages, one of which returns 404 on download
    WHEN running a sweep
    THEN the failure is recorded against that package at the download stage
    AND the other package is still scanned
    """
    harness = Harness(tmp_path)
    missing = make_reference("missing")
    leaky = make_reference("pkgA")
    harness.serve(missing, {}, status_code=404)
    harness.serve(leaky, {"pkgA/conf.py": LEAKY_SOURCE.encode()})

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(references=(missing, leaky))}
    )

    assert result.packages_scanned == 2
    [failure] = result.package_failures
    assert failure.stage == Stage.FETCH
    assert failure.reference == missing
    assert isinstance(failure.error, requests.HTTPError)
    assert [f.reference for f in result.findings] == [leaky]
    assert list(harness.scratch_root.iterdir()) == []


def test_run_corrupt_archive_fails_quick_check(tmp_path: Path):
    harness = Harness(tmp_path)
    ref = make_reference()
    harness.downloads[ref.download_url] = make_download_response(b"not an archive")

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(references=(ref,))}
    )

    [failure] = result.package_failures
    assert failure.stage == Stage.QUICK_CHECK
    assert result.findings == []


def test_run_registry_failure_is_isolated(tmp_path: Path):
    """
    GIVEN a registry whose poll fails and another that succeeds
    WHEN running a sweep
    THEN the failing registry is recorded and keeps no cursor
    AND the other registry's packages are scanned and its cursor advanced
    """
    harness = Harness(tmp_path)
    ref = make_reference(
        registry=RegistryType.RUBYGEMS,
        download_url="https://rubygems.org/gems/pkgA-1.0.0.gem",
    )
    harness.downloads[ref.download_url] = make_download_response(b"")

    result = harness.orchestrator.run(
        {
            RegistryType.PYPI: FakeCursor(error=requests.ConnectionError("down")),
            RegistryType.RUBYGEMS: FakeGemCursor(serial=5, references=(ref,)),
        }
    )

    [failure] = result.registry_failures
    assert failure.registry == RegistryType.PYPI
    assert isinstance(failure.error, requests.ConnectionError)
    assert list(result.cursors) == [RegistryType.RUBYGEMS]
    assert result.cursors[RegistryType.RUBYGEMS].position == 6
    assert result.packages_found == {RegistryType.RUBYGEMS: 1}
    assert result.packages_scanned == 1


def test_run_counts_packages_searched(tmp_path: Path):
    harness = Harness(tmp_path)
    refs = [make_reference(f"pkg{i}") for i in range(3)]
    for ref in refs:
        harness.serve(ref, {"hello.py": BENIGN_SOURCE.encode()})

    result = harness.orchestrator.run(
        {
            RegistryType.PYPI: FakeCursor(
                references=tuple(refs), stats=RegistryStats(packages_searched=10)
            )
        }
    )

    assert result.cursors[RegistryType.PYPI].stats.packages_searched == 13


def test_run_empty_poll_keeps_cursor(tmp_path: Path):
    harness = Harness(tmp_path)
    cursor = FakeCursor(serial=42)

    result = harness.orchestrator.run({RegistryType.PYPI: cursor})

    assert result.cursors[RegistryType.PYPI] == cursor
    assert result.packages_scanned == 0
    harness.session.get.assert_not_called()


def test_run_rejects_cursor_moving_backwards(tmp_path: Path):
    """
    GIVEN a registry whose poll returns a cursor behind the current one
    WHEN running a sweep
    THEN the poll is treated as failed and nothing is scanned
    """
    harness = Harness(tmp_path)
    ref = make_reference()

    result = harness.orchestrator.run(
        {RegistryType.PYPI: FakeCursor(serial=10, next_serial=3, references=(ref,))}
    )

    [failure] = result.registry_failures
    assert isinstance(failure.error, InvariantViolationError)
    assert result.cursors == {}
    assert result.packages_scanned == 0


def test_run_without_registries(tmp_path: Path):
    result = Harness(tmp_path).orchestrator.run({})

    assert result.findings == []
    assert result.packages_found == {}
