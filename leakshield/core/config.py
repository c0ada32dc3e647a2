"""
Run configuration for a sweep.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, FrozenSet, Mapping, Optional

from leakshield.core.constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_REGION,
    DEFAULT_REPORT_ROOT,
    DEFAULT_TOOL_TIMEOUT,
    DOWNLOAD_CHUNK_SIZE,
    MAX_WORKERS,
    USER_AGENT,
)


logger = logging.getLogger(__name__)

ENV_PREFIX = "LEAKSHIELD_"


@dataclass(frozen=True)
class SweepConfig:
    """Configuration for one sweep run."""

    limit: int = 1000
    max_workers: int = MAX_WORKERS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    download_chunk_size: int = DOWNLOAD_CHUNK_SIZE
    region: str = DEFAULT_REGION
    user_agent: str = USER_AGENT
    report_root: Path = Path(DEFAULT_REPORT_ROOT)
    # Added on top of each registry's built-in denylist
    skip_packages: FrozenSet[str] = field(default_factory=frozenset)
    save: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SweepConfig":
        """
        Build a config from LEAKSHIELD_* environment variables.

        Unparseable values are ignored with a warning.
        """
        environ = os.environ if environ is None else environ
        values: dict = {}
        for name, convert in (
            ("MAX_WORKERS", int),
            ("HTTP_TIMEOUT", float),
            ("TOOL_TIMEOUT", float),
            ("REPORT_ROOT", Path),
        ):
            raw = environ.get(ENV_PREFIX + name)
            if not raw:
                continue
            try:
                values[name.lower()] = convert(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, name, raw)
        if "max_workers" in values and values["max_workers"] < 1:
            logger.warning("Ignoring %sMAX_WORKERS < 1", ENV_PREFIX)
            del values["max_workers"]
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "SweepConfig":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
