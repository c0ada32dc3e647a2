"""
JSON checkpoint store holding one cursor blob per registry.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from leakshield.core.errors import StateError


logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Maps a registry id to its opaque cursor state.

    On disk the store is ``{"sources": {"pypi": {...}, ...}}``.
    """

    def __init__(self, sources: Optional[Dict[str, Any]] = None):
        self._sources: Dict[str, Any] = dict(sources or {})

    @classmethod
    def load(cls, path: Path) -> "CheckpointStore":
        """
        Load the store from path. A missing file yields an empty store.

        Raises:
            StateError: the file exists but cannot be read or parsed
        """
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No state file at %s, starting from defaults", path)
            return cls()
        except OSError as e:
            raise StateError(f"Cannot read state file {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {path} is not valid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("sources", {}), dict):
            raise StateError(f"State file {path} has an unexpected layout")
        return cls(data.get("sources", {}))

    def save(self, path: Path) -> None:
        """Write the store atomically (temp file in the same directory, then rename)."""
        directory = path.resolve().parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=directory, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"sources": self._sources}, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateError(f"Cannot write state file {path}: {e}") from e

    def get(self, registry_id: str) -> Optional[Any]:
        """Return the stored blob for registry_id, or None if absent."""
        return self._sources.get(registry_id)

    def update(self, registry_id: str, data: Any) -> None:
        self._sources[registry_id] = data

    def __contains__(self, registry_id: object) -> bool:
        return registry_id in self._sources
