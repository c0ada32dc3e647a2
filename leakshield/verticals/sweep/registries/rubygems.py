"""
RubyGems registry cursor over the timeframe_versions API.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from leakshield.core.errors import UpstreamProtocolError
from leakshield.core.text_utils import format_timestamp, parse_timestamp
from leakshield.verticals.sweep.registries import (
    PackageReference,
    PollResult,
    RegistryStats,
    RegistryType,
)
from leakshield.verticals.sweep.registries.base import (
    PollContext,
    RegistryCursor,
    take_whole_groups,
)


logger = logging.getLogger(__name__)

TIMEFRAME_VERSIONS_URL = "https://rubygems.org/api/v1/timeframe_versions.json"

DEFAULT_START = parse_timestamp("2019-01-18T21:24:29Z")

# The API refuses ranges longer than 7 days
WINDOW = timedelta(days=5)

MAX_PAGES = 50


@dataclass(frozen=True)
class GemRelease:
    name: str
    version: str
    gem_uri: str
    created_at: datetime


def parse_gem_release(item: Any) -> GemRelease:
    """
    Parse one entry of a timeframe_versions page.

    Raises:
        UpstreamProtocolError: a required field is missing or malformed
    """
    if not isinstance(item, dict):
        raise UpstreamProtocolError(f"Unexpected RubyGems entry: {item!r}")
    try:
        return GemRelease(
            name=item["name"],
            version=item.get("version") or item["number"],
            gem_uri=item["gem_uri"],
            created_at=parse_timestamp(item["version_created_at"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise UpstreamProtocolError(f"Malformed RubyGems entry {item!r}: {e}") from e


@dataclass(frozen=True)
class RubyGemsCursor(RegistryCursor):
    """Position in RubyGems as the creation time of the last processed gem."""

    registry_type = RegistryType.RUBYGEMS

    last_timestamp: datetime = DEFAULT_START
    stats: RegistryStats = field(default_factory=RegistryStats)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "RubyGemsCursor":
        if state is None:
            return cls()
        return cls(
            last_timestamp=parse_timestamp(state["last_package_timestamp"]),
            stats=RegistryStats.from_dict(state.get("stats")),
        )

    def to_state(self) -> Dict[str, Any]:
        return {
            "last_package_timestamp": format_timestamp(self.last_timestamp),
            "stats": self.stats.to_dict(),
        }

    @property
    def position(self) -> datetime:
        return self.last_timestamp

    def describe(self) -> str:
        return f"RubyGems - gems updated after {format_timestamp(self.last_timestamp)}"

    def poll(self, ctx: PollContext, limit: int) -> PollResult:
        window_end = self.last_timestamp + WINDOW
        params = {
            # Whole seconds; "from" is inclusive so truncation only widens the range
            "from": self.last_timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "to": window_end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

        releases: List[GemRelease] = []
        fresh_count = 0
        fresh_timestamps: Set[datetime] = set()
        complete = False
        for page in range(1, MAX_PAGES + 1):
            # The last timestamp may continue on the next page and is dropped
            # below, so stop only once an earlier one is complete
            if fresh_count >= limit and len(fresh_timestamps) > 1:
                break
            response = ctx.get(TIMEFRAME_VERSIONS_URL, params={**params, "page": page})
            response.raise_for_status()
            try:
                payload = response.json()
            except ValueError as e:
                raise UpstreamProtocolError(
                    f"Failed to parse JSON from {response.url}"
                ) from e
            if not isinstance(payload, list):
                raise UpstreamProtocolError(
                    f"Expected a list from {response.url}, got {type(payload).__name__}"
                )
            if not payload:
                complete = True
                break
            page_releases = [parse_gem_release(item) for item in payload]
            page_fresh = [r for r in page_releases if r.created_at > self.last_timestamp]
            fresh_count += len(page_fresh)
            fresh_timestamps.update(r.created_at for r in page_fresh)
            releases.extend(page_releases)
        else:
            logger.warning(
                "RubyGems: read %d pages without reaching the end of the window",
                MAX_PAGES,
            )

        fresh = sorted(
            {
                (r.name, r.version, r.gem_uri): r
                for r in releases
                if r.created_at > self.last_timestamp
            }.values(),
            key=lambda r: (r.created_at, r.name, r.version),
        )

        if not fresh:
            if complete and window_end < datetime.now(timezone.utc):
                logger.info(
                    "No gems between %s and %s, moving past the window",
                    format_timestamp(self.last_timestamp),
                    format_timestamp(window_end),
                )
                return PollResult(cursor=replace(self, last_timestamp=window_end))
            return PollResult(cursor=self)

        batch = take_whole_groups(
            fresh, limit, key=lambda r: r.created_at, complete=complete
        )
        new_cursor = replace(self, last_timestamp=max(r.created_at for r in batch))
        references = [
            PackageReference(
                registry=RegistryType.RUBYGEMS,
                name=r.name,
                version=r.version,
                download_url=r.gem_uri,
            )
            for r in batch
            if not ctx.is_skipped(r.name)
        ]
        return PollResult(cursor=new_cursor, references=references)
