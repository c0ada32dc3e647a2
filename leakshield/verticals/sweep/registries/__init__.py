"""
Registry definitions and shared types for package discovery.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List
from urllib.parse import unquote, urlparse


class RegistryType(Enum):
    """Package registries that can be swept."""

    PYPI = "pypi"
    RUBYGEMS = "rubygems"
    HEXPM = "hexpm"

    @property
    def report_path_segment(self) -> str:
        """Directory under the report root holding this registry's findings."""
        return _REPORT_SEGMENTS[self]

    @property
    def label(self) -> str:
        return _LABELS[self]


_REPORT_SEGMENTS = {
    RegistryType.PYPI: "pypi",
    RegistryType.RUBYGEMS: "rubygems",
    RegistryType.HEXPM: "elixir",
}

_LABELS = {
    RegistryType.PYPI: "PyPI",
    RegistryType.RUBYGEMS: "RubyGems",
    RegistryType.HEXPM: "Hex.pm",
}


@dataclass(frozen=True)
class PackageReference:
    """One downloadable artifact of a package release."""

    registry: RegistryType
    name: str
    version: str
    download_url: str

    @property
    def file_name(self) -> str:
        """Last path segment of the download URL."""
        path = urlparse(self.download_url).path
        return unquote(path.rstrip("/").rsplit("/", 1)[-1])

    def describe(self) -> str:
        return f"{self.registry.label} / {self.name} @ {self.version}"


@dataclass
class RegistryStats:
    """Counters persisted alongside a registry cursor."""

    packages_searched: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"packages_searched": self.packages_searched}

    @classmethod
    def from_dict(cls, data: Any) -> "RegistryStats":
        if not isinstance(data, dict):
            return cls()
        return cls(packages_searched=int(data.get("packages_searched", 0)))


@dataclass
class PollResult:
    """What a poll returns: the advanced cursor and the references it found."""

    cursor: Any
    references: List[PackageReference] = field(default_factory=list)


__all__ = [
    "PackageReference",
    "PollResult",
    "RegistryStats",
    "RegistryType",
]
