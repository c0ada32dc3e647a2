"""
Common options for sweep commands.
"""

from functools import wraps
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

import click

from leakshield.cmd.utils.context_obj import ContextObj
from leakshield.verticals.sweep.registries import RegistryType


F = TypeVar("F", bound=Callable[..., Any])


def _parse_registries(
    ctx: click.Context, param: click.Parameter, value: Optional[str]
) -> List[RegistryType]:
    """Parse a comma separated list of registries, dropping duplicates."""
    if value is None:
        return []
    registries: List[RegistryType] = []
    for name in value.split(","):
        name = name.strip().lower()
        if not name:
            continue
        try:
            registry = RegistryType(name)
        except ValueError:
            choices = ", ".join(r.value for r in RegistryType)
            raise click.BadParameter(f"unknown registry {name!r} (choose from {choices})") from None
        if registry not in registries:
            registries.append(registry)
    if not registries:
        raise click.BadParameter("at least one registry is required")
    return registries


def sweep_run_options(f: F) -> F:
    """Options controlling what a sweep run covers."""

    @click.option(
        "-l",
        "--limit",
        type=click.IntRange(min=1),
        required=True,
        help="Maximum number of new packages to fetch from each registry.",
    )
    @click.option(
        "--registries",
        "--sources",
        "registries",
        required=True,
        callback=_parse_registries,
        metavar="NAMES",
        help=(
            "Comma separated registries to sweep: "
            + ", ".join(r.value for r in RegistryType)
            + "."
        ),
    )
    @click.option(
        "-s",
        "--save",
        is_flag=True,
        default=False,
        help="Save the advanced registry positions to the state file.",
    )
    @click.option(
        "--workers",
        type=click.IntRange(min=1),
        default=None,
        help="Number of packages downloaded and scanned in parallel.",
    )
    @click.option(
        "--skip-package",
        multiple=True,
        metavar="NAME",
        help="Do not download this package. Can be specified multiple times.",
    )
    @click.option(
        "--report-root",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Directory where finding reports are written.",
    )
    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return f(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


def _set_json_output(ctx: click.Context, param: click.Parameter, value: bool) -> bool:
    if value:
        ContextObj.get(ctx).use_json = True
    return value


def json_option(f: F) -> F:
    """Print results as JSON on stdout."""

    return click.option(
        "--json",
        "json_output",
        is_flag=True,
        default=False,
        expose_value=False,
        callback=_set_json_output,
        help="Print the run summary as JSON.",
    )(f)
