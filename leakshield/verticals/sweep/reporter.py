"""
Output for sweep results: one Markdown report per finding, and a run summary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

import click

from leakshield.core import ui
from leakshield.core.text_utils import pluralize
from leakshield.verticals.sweep.findings import Finding


if TYPE_CHECKING:
    from leakshield.verticals.sweep.pipeline import RunResult


logger = logging.getLogger(__name__)

REPORT_SUFFIX = ".md"


def render_finding(finding: Finding) -> str:
    """Render finding as Markdown. Keys are shown in full, they are already public."""
    ref = finding.reference
    count = len(finding.credentials)
    lines = [
        f"# {count} live AWS {pluralize('key', count)} in {ref.name} {ref.version}",
        "",
        f"- Registry: {ref.registry.label}",
        f"- Package: `{ref.name}`",
        f"- Version: `{ref.version}`",
        f"- Release file: [{finding.file_name}]({ref.download_url})",
        "",
        "## Keys",
    ]
    for credential in finding.credentials:
        candidate = credential.candidate
        lines += [
            "",
            f"### `{candidate.access_key}`",
            "",
            f"- Identity: `{credential.identity_label}`",
            f"- Secret key: `{candidate.secret_key}`",
            f"- Location: `{candidate.file_path}` line {candidate.line_number}",
        ]
        url = finding.public_url(credential)
        if url:
            lines.append(f"- Source: {url}")
    lines.append("")
    return "\n".join(lines)


class ReportWriter:
    """Writes findings under report_root/<registry segment>/<package>/."""

    def __init__(self, report_root: Path):
        self.report_root = report_root

    def report_path(self, finding: Finding) -> Path:
        ref = finding.reference
        return (
            self.report_root
            / ref.registry.report_path_segment
            / ref.name
            / f"{finding.file_name}{REPORT_SUFFIX}"
        )

    def write(self, finding: Finding) -> Path:
        path = self.report_path(finding)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_finding(finding), encoding="utf-8")
        logger.debug("Wrote %s", path)
        return path

    def write_all(self, findings: List[Finding]) -> List[Path]:
        paths = []
        for finding in findings:
            path = self.write(finding)
            ui.display_info(f"Created file {path}")
            paths.append(path)
        return paths


def display_run_summary(result: RunResult, json_output: bool = False) -> None:
    if json_output:
        click.echo(json.dumps(_build_summary_json(result), indent=2))
    else:
        _display_text_summary(result)


def _build_summary_json(result: RunResult) -> Dict[str, Any]:
    return {
        "packages_found": {
            registry.value: count for registry, count in result.packages_found.items()
        },
        "packages_scanned": result.packages_scanned,
        "possible_matches": result.possible_matches,
        "candidates": len(result.candidates),
        "registry_errors": [
            {"registry": f.registry.value, "error": str(f.error)}
            for f in result.registry_failures
        ],
        "package_errors": [
            {
                "stage": f.stage.value,
                "registry": f.reference.registry.value,
                "name": f.reference.name,
                "version": f.reference.version,
                "error": str(f.error),
            }
            for f in result.package_failures
        ],
        "findings": [finding.to_dict() for finding in result.findings],
    }


def _display_text_summary(result: RunResult) -> None:
    ui.display_info("")
    ui.display_info("── Summary ──")
    for registry, count in result.packages_found.items():
        ui.display_info(f"  {registry.label}: {count} {pluralize('package', count)}")
    for failure in result.registry_failures:
        ui.display_warning(f"  {failure.registry.label}: poll failed ({failure.error})")

    failures = len(result.package_failures)
    ui.display_info(
        f"  Scanned {result.packages_scanned} {pluralize('package', result.packages_scanned)}, "
        f"{result.possible_matches} {pluralize('possible match', result.possible_matches, 'possible matches')}, "
        f"{len(result.candidates)} {pluralize('candidate', len(result.candidates))}"
    )
    if failures:
        ui.display_warning(
            f"  {failures} {pluralize('package', failures)} could not be processed"
        )

    ui.display_info("")
    findings = len(result.findings)
    if findings:
        keys = sum(len(f.credentials) for f in result.findings)
        ui.display_warning(
            f"Found {keys} live {pluralize('key', keys)} "
            f"in {findings} {pluralize('package', findings)}"
        )
        for finding in result.findings:
            ui.display_info(f"  {finding.reference.describe()} ({finding.file_name})")
    else:
        ui.display_heading("No live keys found.")
