"""
Capability / vehicle compatibility lookup.

The real compatibility rules (truck classes, crane reach, lift ratings) are
owned by the vehicle-verification side. The engine only asks "can this driver
serve these required tags?".
"""

from typing import Iterable, Protocol

from dispatch_backend.app.models.driver_location import DriverLocation


class CapabilityLookup(Protocol):
    def is_compatible(self, required_tags: set[str], record: DriverLocation) -> bool:
        ...


class TagCapabilityLookup:
    """Default lookup: the driver's tags must be a superset of the required tags."""

    def __init__(self, aliases: dict[str, Iterable[str]] | None = None):
        # e.g. {"flatbed_crane": ["crane", "flatbed"]}
        self._aliases = {tag: set(expands) for tag, expands in (aliases or {}).items()}

    def _expand(self, tags: Iterable[str]) -> set[str]:
        expanded = set()
        for tag in tags:
            expanded.add(tag)
            expanded |= self._aliases.get(tag, set())
        return expanded

    def is_compatible(self, required_tags: set[str], record: DriverLocation) -> bool:
        if not required_tags:
            return True
        return required_tags <= self._expand(record.capability_tags or [])
