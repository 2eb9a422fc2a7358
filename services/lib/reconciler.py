# Plex Sensors
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Reconciler - maps playback events onto sensor state.

Each sensor is a three-state machine:

    STOPPED (off, idle)  --play/resume-->  PLAYING (on, playing)
    PLAYING              --pause*------->  PAUSED  (on, idle)
    PAUSED               --play/resume-->  PLAYING
    PLAYING / PAUSED     --stop*-------->  STOPPED (now, or after `delay` ms)

    * only once no other player session is active on the sensor.

The reconciler is synchronous.  Delayed stops are handed to an injected
scheduler as a StopConfirmed message; the service feeds that message back
through the same inbox as live events, so a timer can never race an event.
Cancelling a pending stop bumps the sensor's generation, which turns any
confirmation already sitting in the inbox into a no-op.

Scheduler contract:

    scheduler(delay_seconds: float, message: StopConfirmed) -> handle
    handle.cancel()
"""

import logging

from .plex_events import PAUSE, PLAY, RESUME, STOP, PlaybackEvent
from .sensor_registry import Sensor, SensorRegistry

log = logging.getLogger(__name__)


class StopConfirmed:
    """A delayed stop whose timer has elapsed for ``sensor_name``."""

    def __init__(self, sensor_name: str, generation: int):
        self.sensor_name = sensor_name
        self.generation = generation

    def __repr__(self):
        return f"StopConfirmed({self.sensor_name!r}, gen={self.generation})"


class Transition:
    """State published for a sensor as the result of one message."""

    def __init__(self, sensor_name: str, on: bool, playing: bool):
        self.sensor_name = sensor_name
        self.on = on
        self.playing = playing

    @property
    def label(self) -> str:
        if self.playing:
            return "PLAYING"
        return "PAUSED" if self.on else "STOPPED"

    def __repr__(self):
        return f"Transition({self.sensor_name!r}, {self.label})"


def accepts(sensor: Sensor, event: PlaybackEvent) -> bool:
    """Apply the sensor's allow-lists. Empty list = no restriction."""
    config = sensor.config
    if config.users and event.account not in config.users:
        return False
    if config.players and event.player_title not in config.players \
            and event.player_id not in config.players:
        return False
    if config.types and event.media_type not in config.types:
        return False
    return True


class Reconciler:
    def __init__(self, registry: SensorRegistry, sink, scheduler):
        self.registry = registry
        self._sink = sink
        self._schedule = scheduler

    def dispatch(self, event: PlaybackEvent) -> list[Transition]:
        """Run one event against every sensor, in config order."""
        transitions = []
        for sensor in self.registry:
            transition = self.handle(event, sensor)
            if transition is not None:
                transitions.append(transition)
        return transitions

    def handle(self, event: PlaybackEvent, sensor: Sensor) -> Transition | None:
        """Apply one event to one sensor. Returns the published state, if any."""
        if not accepts(sensor, event):
            return None

        state = sensor.state
        if event.kind in (PLAY, RESUME):
            self._cancel_pending_stop(sensor)
            state.active_sessions.add(event.player_id)
            return self._publish(sensor, on=True, playing=True)

        if event.kind == PAUSE:
            state.active_sessions.discard(event.player_id)
            if state.active_sessions:
                log.debug("%s: pause from %s, %d session(s) still active",
                          sensor.name, event.player_id, len(state.active_sessions))
                return None
            return self._publish(sensor, on=True, playing=False)

        if event.kind == STOP:
            state.active_sessions.discard(event.player_id)
            if state.active_sessions:
                log.debug("%s: stop from %s, %d session(s) still active",
                          sensor.name, event.player_id, len(state.active_sessions))
                return None
            self._cancel_pending_stop(sensor)
            delay = sensor.config.delay
            if delay > 0:
                state.stop_generation += 1
                message = StopConfirmed(sensor.name, state.stop_generation)
                state.pending_stop = self._schedule(delay / 1000.0, message)
                log.info("%s: stopping in %gms", sensor.name, delay)
                return None
            return self._publish(sensor, on=False, playing=False)

        log.debug("%s: ignoring event kind %r", sensor.name, event.kind)
        return None

    def confirm_stop(self, message: StopConfirmed) -> Transition | None:
        """Commit a delayed stop, unless it was cancelled since it was armed."""
        sensor = self.registry.get(message.sensor_name)
        if sensor is None:
            return None
        state = sensor.state
        if state.pending_stop is None or state.stop_generation != message.generation:
            log.debug("%s: discarding stale stop (gen %d, current %d)",
                      sensor.name, message.generation, state.stop_generation)
            return None
        state.pending_stop = None
        return self._publish(sensor, on=False, playing=False)

    def cancel_all(self):
        """Drop every pending stop timer (shutdown)."""
        for sensor in self.registry:
            self._cancel_pending_stop(sensor)

    def _cancel_pending_stop(self, sensor: Sensor):
        state = sensor.state
        if state.pending_stop is None:
            return
        state.pending_stop.cancel()
        state.pending_stop = None
        state.stop_generation += 1
        log.debug("%s: pending stop cancelled", sensor.name)

    def _publish(self, sensor: Sensor, *, on: bool, playing: bool) -> Transition:
        state = sensor.state
        state.is_on = on
        state.is_playing = playing
        transition = Transition(sensor.name, on, playing)
        log.info("%s: %s", sensor.name, transition.label)
        self._sink.update(sensor.name, on, playing)
        return transition
