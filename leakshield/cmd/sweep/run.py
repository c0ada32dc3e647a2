"""
Sweep run command: scan new packages and report live keys.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from leakshield.cmd.sweep.common_options import json_option, sweep_run_options
from leakshield.cmd.utils.context_obj import ContextObj
from leakshield.core import ui
from leakshield.core.constants import DEFAULT_STATE_FILE
from leakshield.core.errors import ExitCode, StateError
from leakshield.core.state import CheckpointStore
from leakshield.verticals.sweep.pipeline import PipelineOrchestrator, RunResult
from leakshield.verticals.sweep.registries import RegistryType
from leakshield.verticals.sweep.registries.base import RegistryCursor
from leakshield.verticals.sweep.registries.factory import create_cursor
from leakshield.verticals.sweep.reporter import ReportWriter, display_run_summary


logger = logging.getLogger(__name__)


def load_cursors(
    store: CheckpointStore, registries: List[RegistryType]
) -> Dict[RegistryType, RegistryCursor]:
    """
    Raises:
        StateError: the stored state of a registry is invalid
    """
    return {
        registry: create_cursor(registry, store.get(registry.value))
        for registry in registries
    }


def save_cursors(store: CheckpointStore, result: RunResult, path: Path) -> None:
    """Persist the cursors of the registries that were polled successfully."""
    for registry, cursor in result.cursors.items():
        store.update(registry.value, cursor.to_state())
    store.save(path)
    ui.display_verbose(
        f"Saved state for {', '.join(r.value for r in result.cursors)} to {path}"
    )


def _exit_code(result: RunResult) -> ExitCode:
    if result.findings:
        return ExitCode.FINDINGS_FOUND
    if result.registry_failures and not result.cursors:
        return ExitCode.UNEXPECTED_ERROR
    return ExitCode.SUCCESS


@click.command()
@click.pass_context
@click.argument(
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
)
@sweep_run_options
@json_option
def run_cmd(
    ctx: click.Context,
    state_file: Path,
    limit: int,
    registries: List[RegistryType],
    save: bool,
    workers: Optional[int],
    skip_package: Tuple[str, ...],
    report_root: Optional[Path],
    **kwargs: Any,
) -> int:
    """
    Sweep registries for new packages containing live AWS keys.

    Each registry is polled from the position stored in STATE_FILE
    (default: state.json). New packages are downloaded and searched for
    access key / secret key pairs, and pairs accepted by AWS STS are
    written as Markdown reports under the report root.

    \b
    Examples:
      leakshield sweep run --limit 100 --registries pypi
      leakshield sweep run state.json -l 500 --registries pypi,rubygems,hexpm --save
      leakshield sweep run --limit 50 --registries hexpm --json
    """
    ctx_obj = ContextObj.get(ctx)
    config = ctx_obj.config.with_overrides(
        limit=limit,
        max_workers=workers,
        report_root=report_root,
        save=save,
        skip_packages=frozenset(skip_package) if skip_package else None,
    )

    try:
        store = CheckpointStore.load(state_file)
        cursors = load_cursors(store, registries)
    except StateError as e:
        ui.display_error(f"Error: {e}")
        return ExitCode.UNEXPECTED_ERROR

    for cursor in cursors.values():
        ui.display_info(f"Fetching data for {cursor.describe()}")

    result = PipelineOrchestrator(config).run(cursors)

    try:
        ReportWriter(config.report_root).write_all(result.findings)
    except OSError as e:
        ui.display_error(f"Error writing reports: {e}")
        return ExitCode.UNEXPECTED_ERROR

    display_run_summary(result, json_output=ctx_obj.use_json)

    if config.save:
        try:
            save_cursors(store, result, state_file)
        except StateError as e:
            ui.display_error(f"Error: {e}")
            return ExitCode.UNEXPECTED_ERROR

    return _exit_code(result)
