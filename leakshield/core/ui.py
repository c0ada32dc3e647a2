"""
User-facing output helpers.

Everything here writes to stderr so that JSON written to stdout stays
machine-readable.
"""

import click


_verbose = False


def set_verbose(verbose: bool) -> None:
    global _verbose
    _verbose = verbose


def display_info(message: str) -> None:
    click.echo(message, err=True)


def display_verbose(message: str) -> None:
    """Display a message only when --verbose is set."""
    if _verbose:
        click.echo(message, err=True)


def display_heading(message: str) -> None:
    click.echo(click.style(message, bold=True), err=True)


def display_warning(message: str) -> None:
    click.echo(click.style(message, fg="yellow"), err=True)


def display_error(message: str) -> None:
    click.echo(click.style(message, fg="red"), err=True)
