from dataclasses import dataclass

import click

from leakshield.core.config import SweepConfig


@dataclass
class ContextObj:
    """State shared by the root command with its subcommands."""

    config: SweepConfig
    use_json: bool = False

    @staticmethod
    def get(ctx: click.Context) -> "ContextObj":
        obj = ctx.find_object(ContextObj)
        if obj is None:
            raise click.UsageError("Missing context object, run through the root command")
        return obj
