#!/usr/bin/env python3
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import click

from leakshield import __version__
from leakshield.cmd.sweep import sweep_group
from leakshield.cmd.utils.context_obj import ContextObj
from leakshield.core import ui
from leakshield.core.config import SweepConfig
from leakshield.core.errors import ExitCode
from leakshield.core.log_utils import setup_logging


logger = logging.getLogger(__name__)


@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
    commands={
        "sweep": sweep_group,
    },
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=False,
    help="Verbose display mode.",
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Send log output to stderr. Equivalent to `--log-file -`.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, allow_dash=True, path_type=Path),
    default=None,
    help="Send log output to LOG_FILE. Use '-' to redirect to stderr.",
)
@click.version_option(version=__version__, prog_name="leakshield")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    debug: bool,
    log_file: Optional[Path],
    **kwargs: Any,
) -> None:
    """Find live AWS keys published in open source package registries."""
    if log_file is not None and str(log_file) == "-":
        debug = True
        log_file = None
    setup_logging(debug=debug, log_file=log_file)
    ui.set_verbose(verbose or debug)
    ctx.obj = ContextObj(config=SweepConfig.from_env())


@cli.result_callback()
@click.pass_context
def before_exit(ctx: click.Context, exit_code: Optional[int], *args: Any, **kwargs: Any) -> None:
    """Turn the value returned by the subcommand into the process exit code."""
    sys.exit(ExitCode.SUCCESS if exit_code is None else exit_code)


def main(args: Optional[List[str]] = None) -> Any:
    return cli.main(args, prog_name="leakshield")


if __name__ == "__main__":
    sys.exit(main())
