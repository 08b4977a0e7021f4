"""Zone registry — resolves object keys to zones and enforces the
single-triggering-zone rule at startup.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from carebridge_schema import Zone

from .errors import ConfigurationError


class ZoneRegistry:
    """Validated, immutable view over the configured zones.

    Construction fails with :class:`ConfigurationError` when names repeat,
    prefixes overlap, the trigger pattern does not compile, or the number
    of triggering zones is not exactly one.
    """

    def __init__(self, zones: Iterable[Zone], trigger_key_pattern: str) -> None:
        self._zones: dict[str, Zone] = {}
        for zone in zones:
            if zone.name in self._zones:
                raise ConfigurationError(f"duplicate zone name: {zone.name}")
            if not zone.prefix.endswith("/"):
                raise ConfigurationError(f"zone prefix must end with '/': {zone.prefix}")
            self._zones[zone.name] = zone

        ordered = sorted(self._zones.values(), key=lambda z: z.prefix)
        for left, right in zip(ordered, ordered[1:]):
            if right.prefix.startswith(left.prefix):
                raise ConfigurationError(
                    f"zone prefixes overlap: {left.name}={left.prefix} {right.name}={right.prefix}"
                )

        triggering = [z for z in self._zones.values() if z.triggers_pipeline]
        if len(triggering) != 1:
            raise ConfigurationError(
                f"exactly one triggering zone required, found {len(triggering)}"
            )
        self._triggering = triggering[0]

        try:
            self._trigger_pattern = re.compile(trigger_key_pattern)
        except re.error as exc:
            raise ConfigurationError(f"invalid trigger key pattern: {exc}") from exc

    @property
    def triggering_zone(self) -> Zone:
        return self._triggering

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        return self._trigger_pattern

    @property
    def names(self) -> list[str]:
        return list(self._zones)

    def get(self, name: str) -> Zone | None:
        return self._zones.get(name)

    def require(self, name: str) -> Zone:
        """Look up a zone that configuration says must exist."""
        zone = self._zones.get(name)
        if zone is None:
            raise ConfigurationError(f"unknown zone: {name}")
        return zone

    def zone_for_key(self, key: str) -> Zone | None:
        """Return the zone whose prefix contains *key*, if any."""
        for zone in self._zones.values():
            if zone.contains(key):
                return zone
        return None

    def matches_trigger(self, key: str) -> bool:
        return self._trigger_pattern.fullmatch(key) is not None
