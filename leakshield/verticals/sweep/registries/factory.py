from typing import Any, Dict, Optional, Type

from leakshield.core.errors import StateError
from leakshield.verticals.sweep.registries import RegistryType
from leakshield.verticals.sweep.registries.base import RegistryCursor
from leakshield.verticals.sweep.registries.hexpm import HexPmCursor
from leakshield.verticals.sweep.registries.pypi import PyPiCursor
from leakshield.verticals.sweep.registries.rubygems import RubyGemsCursor


CURSOR_CLASSES: Dict[RegistryType, Type[RegistryCursor]] = {
    RegistryType.PYPI: PyPiCursor,
    RegistryType.RUBYGEMS: RubyGemsCursor,
    RegistryType.HEXPM: HexPmCursor,
}


def create_cursor(
    registry_type: RegistryType, state: Optional[Dict[str, Any]]
) -> RegistryCursor:
    """
    Build the cursor for registry_type from its persisted state.

    Raises:
        StateError: the persisted state cannot be interpreted
    """
    cursor_cls = CURSOR_CLASSES[registry_type]
    if state is not None and not isinstance(state, dict):
        raise StateError(f"Invalid state for {registry_type.value}: {state!r}")
    try:
        return cursor_cls.from_state(state)
    except (KeyError, TypeError, ValueError) as e:
        raise StateError(f"Invalid state for {registry_type.value}: {e}") from e
