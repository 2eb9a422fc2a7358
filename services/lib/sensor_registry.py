# Plex Sensors
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Sensor model & registry.

A sensor is one configured playback context ("Living Room TV", "Anyone
watching a movie") with optional allow-lists and a stop delay.  Its state is
the (on, playing) pair plus the set of player sessions keeping it alive.

The registry keeps sensors in config order and is the only owner of their
state objects; the reconciler mutates them, nothing else should.
"""

import logging

log = logging.getLogger(__name__)


def _string_list(value, field: str, name: str) -> tuple[str, ...]:
    """Normalize an allow-list: None -> (), "x" -> ("x",), [..] -> tuple of str."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    log.warning("Sensor '%s': ignoring invalid '%s' (%r)", name, field, value)
    return ()


class SensorConfig:
    """Per-sensor settings loaded from config.json. Not changed after load."""

    def __init__(self, name: str, users=(), players=(), types=(), delay: float = 0):
        self.name = name
        self.users = tuple(users)
        self.players = tuple(players)   # Player.title or Player.uuid
        self.types = tuple(types)
        self.delay = delay              # milliseconds, 0 = immediate

    @classmethod
    def from_dict(cls, data: dict) -> "SensorConfig":
        """Build from a config.json entry. Raises ValueError when unnamed."""
        name = data.get("name") if isinstance(data, dict) else None
        if not isinstance(name, str) or not name.strip():
            raise ValueError("sensor entry has no name")
        name = name.strip()

        delay = data.get("delay", 0)
        if delay is None:
            delay = 0
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            log.warning("Sensor '%s': invalid delay %r, using 0", name, delay)
            delay = 0

        return cls(
            name,
            users=_string_list(data.get("users"), "users", name),
            players=_string_list(data.get("players"), "players", name),
            types=_string_list(data.get("types"), "types", name),
            delay=delay,
        )

    def to_dict(self) -> dict:
        return {
            "users": list(self.users),
            "players": list(self.players),
            "types": list(self.types),
            "delay": self.delay,
        }


class SensorState:
    """Mutable state of one sensor. Owned by the reconciler."""

    def __init__(self):
        self.is_on = False
        self.is_playing = False
        self.active_sessions: set[str] = set()
        self.pending_stop = None        # timer handle with .cancel(), or None
        self.stop_generation = 0        # bumped whenever a pending stop is cancelled/armed

    @property
    def label(self) -> str:
        if self.is_playing:
            return "playing"
        if self.is_on:
            return "paused"
        return "stopped"


class Sensor:
    """A configured sensor: its settings and its live state."""

    def __init__(self, config: SensorConfig):
        self.config = config
        self.state = SensorState()

    @property
    def name(self) -> str:
        return self.config.name

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "on": self.state.is_on,
            "playing": self.state.is_playing,
            "state": self.state.label,
            "active_sessions": sorted(self.state.active_sessions),
            "stop_pending": self.state.pending_stop is not None,
            "config": self.config.to_dict(),
        }


class SensorRegistry:
    """Ordered collection of sensors, in config order."""

    def __init__(self, configs=()):
        self._sensors: list[Sensor] = []
        self._by_name: dict[str, Sensor] = {}
        for config in configs:
            self.add(config)

    @classmethod
    def from_config(cls, entries) -> "SensorRegistry":
        """Build from the raw ``sensors`` list; bad or duplicate entries are skipped."""
        registry = cls()
        if not isinstance(entries, list):
            if entries is not None:
                log.warning("'sensors' is not a list - no sensors configured")
            return registry
        for i, entry in enumerate(entries):
            try:
                config = SensorConfig.from_dict(entry)
            except ValueError as e:
                log.warning("Skipping sensor #%d: %s", i, e)
                continue
            if config.name in registry:
                log.warning("Skipping sensor #%d: duplicate name '%s'", i, config.name)
                continue
            registry.add(config)
        return registry

    def add(self, config: SensorConfig) -> Sensor:
        if config.name in self._by_name:
            raise ValueError(f"duplicate sensor name: {config.name}")
        sensor = Sensor(config)
        self._sensors.append(sensor)
        self._by_name[config.name] = sensor
        return sensor

    def get(self, name: str) -> Sensor | None:
        return self._by_name.get(name)

    def __iter__(self):
        return iter(self._sensors)

    def __len__(self):
        return len(self._sensors)

    def __contains__(self, name):
        return name in self._by_name

    def names(self) -> list[str]:
        return [s.name for s in self._sensors]

    def reset(self, name: str) -> Sensor | None:
        """Put a sensor back to STOPPED with no sessions and no pending stop."""
        sensor = self._by_name.get(name)
        if sensor is None:
            return None
        state = sensor.state
        if state.pending_stop is not None:
            state.pending_stop.cancel()
            state.pending_stop = None
        state.stop_generation += 1
        state.is_on = False
        state.is_playing = False
        state.active_sessions.clear()
        return sensor

    def reset_all(self) -> list[Sensor]:
        return [self.reset(s.name) for s in self._sensors]

    def snapshot(self) -> list[dict]:
        return [s.to_dict() for s in self._sensors]
