# Plex Sensors
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Device state sinks - where sensor (on, playing) updates go.

The reconciler calls ``sink.update(name, on, playing)`` synchronously.
Real sinks queue the update and deliver it from a single sender task, so
the event path never waits on the network and Home Assistant receives
updates in the order they were produced.

    StateSink      - interface
    QueuedSink     - queue + sender task, subclass implements deliver()
    TransportSink  - Home Assistant via lib.transport (webhook / MQTT)
    WebSocketSink  - pushes sensor_update messages to /ws clients
    FanoutSink     - forwards to several sinks
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod

from aiohttp import web

log = logging.getLogger(__name__)


class StateSink(ABC):
    """Interface every state sink must implement."""

    @abstractmethod
    def update(self, sensor_name: str, on: bool, playing: bool) -> None: ...

    # -- Optional: override in sinks that need a lifecycle --

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def announce(self, sensor_names) -> None:
        pass  # no registration step by default


class QueuedSink(StateSink):
    """Serializes deliveries through one queue and one sender task."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def update(self, sensor_name: str, on: bool, playing: bool) -> None:
        self._queue.put_nowait((sensor_name, on, playing))

    @abstractmethod
    async def deliver(self, sensor_name: str, on: bool, playing: bool) -> None: ...

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sender())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def flush(self) -> None:
        """Wait until every queued update has been delivered."""
        await self._queue.join()

    async def _sender(self):
        while True:
            sensor_name, on, playing = await self._queue.get()
            try:
                await self.deliver(sensor_name, on, playing)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("%s: delivering %s failed: %s",
                          type(self).__name__, sensor_name, e)
            finally:
                self._queue.task_done()


class TransportSink(QueuedSink):
    """Reflects sensor state into Home Assistant."""

    def __init__(self, transport):
        super().__init__()
        self.transport = transport

    async def start(self) -> None:
        await self.transport.start()
        await super().start()

    async def stop(self) -> None:
        await super().stop()
        await self.transport.stop()

    def announce(self, sensor_names) -> None:
        self.transport.announce(sensor_names)

    async def deliver(self, sensor_name: str, on: bool, playing: bool) -> None:
        await self.transport.send_state(sensor_name, on, playing)


class WebSocketSink(QueuedSink):
    """Pushes sensor updates to connected WebSocket clients."""

    def __init__(self):
        super().__init__()
        self.clients: set[web.WebSocketResponse] = set()

    async def deliver(self, sensor_name: str, on: bool, playing: bool) -> None:
        await self.broadcast({
            "type": "sensor_update",
            "data": {"sensor": sensor_name, "on": on, "playing": playing},
        })

    async def broadcast(self, message: dict):
        if not self.clients:
            return
        text = json.dumps(message)
        disconnected = set()
        for ws in list(self.clients):
            try:
                await ws.send_str(text)
            except Exception:
                disconnected.add(ws)
        self.clients -= disconnected

    async def stop(self) -> None:
        await super().stop()
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()


class FanoutSink(StateSink):
    """Forwards every update to each child sink, in order."""

    def __init__(self, *sinks: StateSink):
        self.sinks = list(sinks)

    def update(self, sensor_name: str, on: bool, playing: bool) -> None:
        for sink in self.sinks:
            sink.update(sensor_name, on, playing)

    def announce(self, sensor_names) -> None:
        for sink in self.sinks:
            sink.announce(sensor_names)

    async def start(self) -> None:
        for sink in self.sinks:
            await sink.start()

    async def stop(self) -> None:
        for sink in reversed(self.sinks):
            await sink.stop()
