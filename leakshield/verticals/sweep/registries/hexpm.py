"""
Hex.pm registry cursor over the package listing sorted by update time.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

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

PACKAGES_URL = "https://hex.pm/api/packages"
TARBALL_URL = "https://repo.hex.pm/tarballs/{name}-{version}.tar"

DEFAULT_START = parse_timestamp("2018-01-01T00:00:00Z")

# Hex pages start at 1
MAX_PAGES = 20


@dataclass(frozen=True)
class HexRelease:
    name: str
    version: str
    inserted_at: datetime

    @property
    def tarball_url(self) -> str:
        return TARBALL_URL.format(name=quote(self.name), version=quote(self.version))


@dataclass(frozen=True)
class HexPmCursor(RegistryCursor):
    """
    Position in Hex.pm as the insertion time of the last processed release.

    The listing is sorted newest first, so a poll pages backwards until it
    sees a package not updated since the cursor, then emits releases
    oldest first.
    """

    registry_type = RegistryType.HEXPM

    last_timestamp: datetime = DEFAULT_START
    stats: RegistryStats = field(default_factory=RegistryStats)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "HexPmCursor":
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
        return f"Hex.pm - packages updated from {format_timestamp(self.last_timestamp)}"

    def poll(self, ctx: PollContext, limit: int) -> PollResult:
        releases: List[HexRelease] = []
        reached_cursor = False
        for page in range(1, MAX_PAGES + 1):
            response = ctx.get(
                PACKAGES_URL,
                params={"sort": "updated_at", "search": "", "page": page},
            )
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
                reached_cursor = True
                break
            for package in payload:
                new_releases, is_older = self._parse_package(package)
                releases.extend(new_releases)
                reached_cursor = reached_cursor or is_older
            if reached_cursor:
                break
        else:
            logger.warning(
                "Hex.pm: read %d pages without reaching %s, older releases may be missed",
                MAX_PAGES,
                format_timestamp(self.last_timestamp),
            )

        fresh = sorted(
            {(r.name, r.version): r for r in releases}.values(),
            key=lambda r: (r.inserted_at, r.name, r.version),
        )
        if not fresh:
            return PollResult(cursor=self)

        batch = take_whole_groups(fresh, limit, key=lambda r: r.inserted_at)
        new_cursor = replace(self, last_timestamp=max(r.inserted_at for r in batch))
        references = [
            PackageReference(
                registry=RegistryType.HEXPM,
                name=r.name,
                version=r.version,
                download_url=r.tarball_url,
            )
            for r in batch
            if not ctx.is_skipped(r.name)
        ]
        return PollResult(cursor=new_cursor, references=references)

    def _parse_package(self, package: Any) -> Tuple[List[HexRelease], bool]:
        """
        Return the releases of package inserted after the cursor, and whether
        the package itself was last updated at or before the cursor.
        """
        try:
            name = package["name"]
            updated_at = parse_timestamp(package["updated_at"])
            releases = [
                HexRelease(
                    name=name,
                    version=release["version"],
                    inserted_at=parse_timestamp(release["inserted_at"]),
                )
                for release in package.get("releases") or []
            ]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise UpstreamProtocolError(f"Malformed Hex.pm package entry: {e}") from e

        new_releases = [r for r in releases if r.inserted_at > self.last_timestamp]
        return new_releases, updated_at <= self.last_timestamp
