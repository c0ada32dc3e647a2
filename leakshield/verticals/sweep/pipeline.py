"""
Runs a sweep: poll registries, scan new packages, validate what was found.
"""

import concurrent.futures
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

import requests

from leakshield.core import ui
from leakshield.core.config import SweepConfig
from leakshield.core.errors import InvariantViolationError
from leakshield.core.http import create_session
from leakshield.core.text_utils import pluralize
from leakshield.verticals.sweep.fetcher import ArchiveFetcher
from leakshield.verticals.sweep.findings import Finding, FindingAggregator
from leakshield.verticals.sweep.registries import (
    PackageReference,
    PollResult,
    RegistryType,
)
from leakshield.verticals.sweep.registries.base import PollContext, RegistryCursor
from leakshield.verticals.sweep.scanner import CredentialCandidate, SecretScanner
from leakshield.verticals.sweep.search import default_searcher
from leakshield.verticals.sweep.validator import (
    CredentialValidator,
    LiveCredential,
    StsIdentityChecker,
)


logger = logging.getLogger(__name__)


class Stage(Enum):
    FETCH = "download"
    QUICK_CHECK = "quick check"
    FULL_CHECK = "full check"


class StageError(Exception):
    """Wraps the error raised while processing one package."""

    def __init__(self, stage: Stage, error: BaseException):
        super().__init__(f"{stage.value} failed: {error}")
        self.stage = stage
        self.error = error


@dataclass
class PackageFailure:
    stage: Stage
    reference: PackageReference
    error: BaseException

    def describe(self) -> str:
        return f"{self.stage.value} failed for {self.reference.describe()}: {self.error}"


@dataclass
class RegistryFailure:
    registry: RegistryType
    error: BaseException

    def describe(self) -> str:
        return f"Failed to get packages from {self.registry.label}: {self.error}"


@dataclass
class RunResult:
    """Everything a run produced, including what went wrong."""

    # Advanced cursors, only for registries whose poll succeeded
    cursors: Dict[RegistryType, RegistryCursor] = field(default_factory=dict)
    packages_found: Dict[RegistryType, int] = field(default_factory=dict)
    registry_failures: List[RegistryFailure] = field(default_factory=list)
    package_failures: List[PackageFailure] = field(default_factory=list)
    packages_scanned: int = 0
    possible_matches: int = 0
    candidates: List[CredentialCandidate] = field(default_factory=list)
    live_credentials: List[LiveCredential] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)


class PipelineOrchestrator:
    """
    Drives one sweep over a set of registry cursors.

    Registry polls and package scans run on thread pools; a failure in one
    registry or package is recorded on the RunResult and does not affect
    the others. Validation runs sequentially on its own worker.
    """

    def __init__(
        self,
        config: SweepConfig,
        session: Optional[requests.Session] = None,
        fetcher: Optional[ArchiveFetcher] = None,
        scanner: Optional[SecretScanner] = None,
        validator: Optional[CredentialValidator] = None,
    ):
        self.config = config
        self.session = (
            session
            if session is not None
            else create_session(user_agent=config.user_agent, pool_size=config.max_workers)
        )
        self.fetcher = (
            fetcher
            if fetcher is not None
            else ArchiveFetcher(
                self.session,
                timeout=config.http_timeout,
                chunk_size=config.download_chunk_size,
            )
        )
        self.scanner = (
            scanner
            if scanner is not None
            else SecretScanner(default_searcher(config.tool_timeout))
        )
        self.validator = (
            validator
            if validator is not None
            else CredentialValidator(
                StsIdentityChecker(region=config.region, timeout=config.http_timeout)
            )
        )

    def run(self, cursors: Mapping[RegistryType, RegistryCursor]) -> RunResult:
        result = RunResult()
        with self.validator:
            references = self._poll_registries(cursors, result)
            result.candidates = self._scan_packages(references, result)
            if result.candidates:
                ui.display_info(
                    f"Checking {len(result.candidates)} candidate "
                    f"{pluralize('key', len(result.candidates))}..."
                )
            result.live_credentials = self.validator.validate(result.candidates)
        result.findings = FindingAggregator.aggregate(result.live_credentials)
        return result

    def _poll_registries(
        self, cursors: Mapping[RegistryType, RegistryCursor], result: RunResult
    ) -> List[PackageReference]:
        if not cursors:
            return []
        ctx = PollContext(
            session=self.session,
            timeout=self.config.http_timeout,
            skip_packages=self.config.skip_packages,
            max_workers=self.config.max_workers,
        )
        polled: Dict[RegistryType, List[PackageReference]] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(cursors),
            thread_name_prefix="poll",
        ) as executor:
            futures_to_registry = {
                executor.submit(self._poll_registry, cursor, ctx): registry
                for registry, cursor in cursors.items()
            }
            for future in concurrent.futures.as_completed(futures_to_registry):
                registry = futures_to_registry[future]
                try:
                    poll_result = future.result()
                except Exception as e:
                    logger.exception("Polling %s failed", registry.value)
                    failure = RegistryFailure(registry=registry, error=e)
                    result.registry_failures.append(failure)
                    ui.display_error(failure.describe())
                    continue
                count = len(poll_result.references)
                result.cursors[registry] = poll_result.cursor
                result.packages_found[registry] = count
                polled[registry] = poll_result.references
                ui.display_info(
                    f"{registry.label} found {count} {pluralize('package', count)}"
                )

        # Keep the order registries were requested in
        return [ref for registry in cursors if registry in polled for ref in polled[registry]]

    def _poll_registry(self, cursor: RegistryCursor, ctx: PollContext) -> PollResult:
        poll_result = cursor.poll(ctx, self.config.limit)
        new_cursor = poll_result.cursor
        if new_cursor.position < cursor.position:
            raise InvariantViolationError(
                f"{cursor.registry_type.label} cursor moved backwards: "
                f"{cursor.position} -> {new_cursor.position}"
            )
        return PollResult(
            cursor=new_cursor.with_packages_searched(len(poll_result.references)),
            references=poll_result.references,
        )

    def _scan_packages(
        self, references: List[PackageReference], result: RunResult
    ) -> List[CredentialCandidate]:
        if not references:
            return []
        found: Dict[int, List[CredentialCandidate]] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="scan",
        ) as executor:
            futures_to_index = {
                executor.submit(self._process_package, reference): index
                for index, reference in enumerate(references)
            }
            for future in concurrent.futures.as_completed(futures_to_index):
                index = futures_to_index[future]
                reference = references[index]
                result.packages_scanned += 1
                try:
                    candidates = future.result()
                except StageError as e:
                    logger.debug("Failed to process %s", reference, exc_info=e.error)
                    failure = PackageFailure(
                        stage=e.stage, reference=reference, error=e.error
                    )
                    result.package_failures.append(failure)
                    ui.display_warning(failure.describe())
                    continue
                if candidates is None:
                    continue
                result.possible_matches += 1
                found[index] = candidates

        # Flatten in reference order so validation order does not depend on timing
        return [c for index in sorted(found) for c in found[index]]

    def _process_package(
        self, reference: PackageReference
    ) -> Optional[List[CredentialCandidate]]:
        """
        Download, quick check then full check one package.

        Returns None when the quick check found nothing.

        Raises:
            StageError: a stage failed, wrapping the original error
        """
        stage = Stage.FETCH
        try:
            with self.fetcher.fetch(reference) as artifact:
                stage = Stage.QUICK_CHECK
                possible = self.scanner.quick_check(artifact)
                ui.display_verbose(f"Finished quick check on {reference.describe()}")
                if possible is None:
                    return None
                logger.info(
                    "Running full check on %s, previous match:\n%s",
                    reference.describe(),
                    possible.preview(),
                )
                stage = Stage.FULL_CHECK
                return self.scanner.full_check(possible)
        except Exception as e:
            raise StageError(stage, e) from e
