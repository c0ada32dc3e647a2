"""
Sweep setup-state command: write a state file with every registry's cursor.
"""

from pathlib import Path
from typing import Any

import click

from leakshield.cmd.sweep.run import load_cursors
from leakshield.core import ui
from leakshield.core.constants import DEFAULT_STATE_FILE
from leakshield.core.errors import ExitCode, StateError
from leakshield.core.state import CheckpointStore
from leakshield.verticals.sweep.registries import RegistryType


@click.command()
@click.argument(
    "path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
)
def setup_state_cmd(path: Path, **kwargs: Any) -> int:
    """
    Create or complete the state file at PATH (default: state.json).

    Registries missing from the file get their default starting position.
    Existing positions are kept.
    """
    try:
        store = CheckpointStore.load(path)
        cursors = load_cursors(store, list(RegistryType))
        for registry, cursor in cursors.items():
            store.update(registry.value, cursor.to_state())
            ui.display_info(f"{registry.label}: {cursor.describe()}")
        store.save(path)
    except StateError as e:
        ui.display_error(f"Error: {e}")
        return ExitCode.UNEXPECTED_ERROR

    ui.display_info(f"State written to {path}")
    return ExitCode.SUCCESS
