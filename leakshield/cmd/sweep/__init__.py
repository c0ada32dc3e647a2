"""
Sweep command group for scanning package registries.
"""

from typing import Any

import click

from leakshield.cmd.sweep.run import run_cmd
from leakshield.cmd.sweep.setup_state import setup_state_cmd


@click.group(
    commands={
        "run": run_cmd,
        "setup-state": setup_state_cmd,
    },
)
def sweep_group(**kwargs: Any) -> None:
    """
    Commands for sweeping package registries for leaked AWS keys.

    \b
    Supported registries:
      pypi      - PyPI changelog
      rubygems  - RubyGems versions API
      hexpm     - Hex.pm package listing
    """
