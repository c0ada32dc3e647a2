"""
Abstract base class for registry cursors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Dict, FrozenSet, List, Optional, Sequence, TypeVar

import requests

from leakshield.core.constants import DEFAULT_HTTP_TIMEOUT, MAX_WORKERS
from leakshield.verticals.sweep.registries import PollResult, RegistryStats, RegistryType


T = TypeVar("T")


@dataclass
class PollContext:
    """HTTP session and knobs shared by every poll of a run."""

    session: requests.Session
    timeout: float = DEFAULT_HTTP_TIMEOUT
    skip_packages: FrozenSet[str] = field(default_factory=frozenset)
    max_workers: int = MAX_WORKERS

    def is_skipped(self, name: str) -> bool:
        """Whether the caller asked not to download package name."""
        return name.lower() in {n.lower() for n in self.skip_packages}

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.session.get(url, timeout=self.timeout, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.session.post(url, timeout=self.timeout, **kwargs)


class RegistryCursor(ABC):
    """
    Abstract base class for registry cursors.

    A cursor is an immutable position in a registry's feed of new releases.
    poll() returns a new cursor alongside the references discovered since
    this one; the receiver is never modified. Polling again with a stale
    cursor may re-emit packages but never skips any.
    """

    registry_type: ClassVar[RegistryType]

    stats: RegistryStats

    @classmethod
    @abstractmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "RegistryCursor":
        """Build a cursor from its persisted state, or the default cursor for None."""

    @abstractmethod
    def to_state(self) -> Dict[str, Any]:
        """Serialize the cursor, including its stats, for the checkpoint store."""

    @abstractmethod
    def poll(self, ctx: PollContext, limit: int) -> PollResult:
        """
        Fetch up to limit new package references.

        Raises:
            UpstreamProtocolError: the registry response could not be parsed
            requests.RequestException: the registry could not be reached
        """

    @property
    @abstractmethod
    def position(self) -> Any:
        """Comparable position, never lower after a poll than before it."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description of the cursor position."""

    def with_packages_searched(self, count: int) -> "RegistryCursor":
        """Return a copy whose stats account for count more packages."""
        stats = RegistryStats(packages_searched=self.stats.packages_searched + count)
        return replace(self, stats=stats)  # type: ignore[type-var]


def take_whole_groups(
    items: Sequence[T],
    limit: int,
    key: Callable[[T], Any],
    complete: bool = True,
) -> List[T]:
    """
    Truncate items (sorted ascending by key) to at most limit entries
    without splitting a run of entries that share the same key.

    When the cut falls inside a run, that run is dropped so the next poll
    picks it up in full. A single run longer than limit is kept whole.

    complete=False means the upstream listing was not read to the end, so
    the last run may continue past what was fetched and is dropped too,
    unless it is the only run. Callers keep reading until a second key shows
    up, so that only happens once their page cap is reached.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    if not items:
        return []
    if not complete:
        last_key = key(items[-1])
        items = [item for item in items if key(item) != last_key] or list(items)
    if len(items) <= limit:
        return list(items)

    boundary = key(items[limit - 1])
    if key(items[limit]) != boundary:
        return list(items[:limit])

    kept = [item for item in items[:limit] if key(item) != boundary]
    if kept:
        return kept
    return [item for item in items if key(item) == boundary]
