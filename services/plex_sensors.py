#!/usr/bin/env python3
# Plex Sensors
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Plex Sensors (plex-sensors)

Receives Plex Media Server webhooks and turns playback events into
per-sensor on / playing state for Home Assistant.  Point Plex at
http://<host>:32512/ (Settings -> Webhooks); any path is accepted.

Events and delayed-stop confirmations go through one inbox, drained by a
single worker task, so sensor state has exactly one writer.

Port: 32512
"""

import asyncio
import logging
import os
import signal
import sys

from aiohttp import web

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from lib.config import cfg
from lib.plex_events import boundary_from_content_type, decode_payload
from lib.reconciler import Reconciler, StopConfirmed
from lib.sensor_registry import SensorRegistry
from lib.state_sink import FanoutSink, StateSink, TransportSink, WebSocketSink
from lib.transport import Transport
from lib.watchdog import sd_notify, watchdog_loop

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("plex-sensors")

DEFAULT_PORT = 32512

# Plex attaches the poster JPEG to media events; the default 1 MiB cap is too small.
MAX_WEBHOOK_BODY = 20 * 1024 * 1024


class Resync:
    """Inbox message: Home Assistant lost our state, publish every sensor again."""

    def __repr__(self):
        return "Resync()"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class SensorService:
    """Owns the registry, the reconciler and the inbox they run on."""

    def __init__(self, registry: SensorRegistry, sink: StateSink,
                 ws_sink: WebSocketSink | None = None):
        self.registry = registry
        self.sink = sink
        self.ws_sink = ws_sink
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.reconciler = Reconciler(registry, sink, self._schedule)
        self._worker: asyncio.Task | None = None
        self._watchdog: asyncio.Task | None = None

    def _schedule(self, delay: float, message: StopConfirmed):
        """Deliver *message* to the inbox after *delay* seconds."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.inbox.put_nowait, message)

    def submit(self, message):
        self.inbox.put_nowait(message)

    async def drain(self):
        """Wait until everything submitted so far has been applied."""
        await self.inbox.join()

    async def start(self):
        await self.sink.start()
        self.sink.announce(self.registry.names())
        self._reset_and_publish()
        self._worker = asyncio.create_task(self._run())
        if len(self.registry) == 0:
            logger.warning("No sensors configured - webhooks will be ignored")
        else:
            logger.info("Sensors: %s", ", ".join(self.registry.names()))

    async def stop(self):
        sd_notify("STOPPING=1")
        self.reconciler.cancel_all()
        for task in (self._worker, self._watchdog):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._watchdog = None
        await self.sink.stop()
        logger.info("Service stopped")

    def start_watchdog(self):
        """Begin the systemd heartbeat. Call once the listener is bound."""
        if self._watchdog is None:
            self._watchdog = asyncio.create_task(watchdog_loop(status=self.status_line))

    async def resync(self):
        """Device side came back (HA restart / MQTT reconnect): republish state."""
        self.submit(Resync())

    def status_line(self) -> str:
        playing = sum(1 for s in self.registry if s.state.is_playing)
        return f"{len(self.registry)} sensors, {playing} playing"

    def _reset_and_publish(self):
        for sensor in self.registry.reset_all():
            self.sink.update(sensor.name, False, False)

    def _publish_current(self):
        for sensor in self.registry:
            self.sink.update(sensor.name, sensor.state.is_on, sensor.state.is_playing)

    async def _run(self):
        while True:
            message = await self.inbox.get()
            try:
                self._apply(message)
            except Exception:
                logger.exception("Failed to apply %r", message)
            finally:
                self.inbox.task_done()

    def _apply(self, message):
        if isinstance(message, StopConfirmed):
            self.reconciler.confirm_stop(message)
        elif isinstance(message, Resync):
            logger.info("Republishing %d sensor(s)", len(self.registry))
            self._publish_current()
        else:
            self.reconciler.dispatch(message)


SERVICE = web.AppKey("service", SensorService)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------
async def handle_webhook(request: web.Request) -> web.Response:
    """POST /<any> - Plex webhook (multipart/form-data, JSON in 'payload')."""
    service = request.app[SERVICE]
    body = await request.read()
    boundary = boundary_from_content_type(request.headers.get("Content-Type"))

    count = 0
    for event in decode_payload(body.decode("utf-8", errors="replace"), boundary):
        service.submit(event)
        count += 1
    logger.debug("Webhook %s: %d playback event(s)", request.path, count)
    return web.Response(text="")


async def handle_sensors(request: web.Request) -> web.Response:
    """GET /sensors - every sensor with config and current state."""
    service = request.app[SERVICE]
    return web.json_response({
        "sensors": service.registry.snapshot(),
        "pending_events": service.inbox.qsize(),
    })


async def handle_sensor(request: web.Request) -> web.Response:
    """GET /sensors/{name} - one sensor."""
    service = request.app[SERVICE]
    sensor = service.registry.get(request.match_info["name"])
    if sensor is None:
        return web.json_response({"error": "unknown sensor"}, status=404)
    return web.json_response(sensor.to_dict())


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    """GET /ws - push sensor_update messages; snapshot on connect."""
    service = request.app[SERVICE]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    clients = service.ws_sink.clients if service.ws_sink else set()
    clients.add(ws)
    logger.info("WebSocket client connected (%d total)", len(clients))
    try:
        await ws.send_json({"type": "sensors", "data": service.registry.snapshot()})
        async for msg in ws:
            pass  # push-only
    finally:
        clients.discard(ws)
        logger.info("WebSocket client disconnected (%d remaining)", len(clients))
    return ws


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
async def on_startup(app: web.Application):
    await app[SERVICE].start()


async def on_cleanup(app: web.Application):
    await app[SERVICE].stop()


def create_app(sensors=None, sink: StateSink | None = None) -> web.Application:
    """Build the app.

    *sensors* defaults to the ``sensors`` list from config.json; *sink*
    defaults to the Home Assistant transport.  The WebSocket feed is always
    attached alongside.
    """
    if sensors is None:
        sensors = cfg("sensors", default=[])
    registry = SensorRegistry.from_config(sensors)

    ws_sink = WebSocketSink()
    if sink is None:
        transport = Transport()
        sink = TransportSink(transport)
        service = SensorService(registry, FanoutSink(sink, ws_sink), ws_sink)
        transport.set_resync_handler(service.resync)
    else:
        service = SensorService(registry, FanoutSink(sink, ws_sink), ws_sink)

    app = web.Application(client_max_size=MAX_WEBHOOK_BODY)
    app[SERVICE] = service
    app.router.add_get("/sensors", handle_sensors)
    app.router.add_get("/sensors/{name}", handle_sensor)
    app.router.add_get("/ws", handle_ws)
    app.router.add_post("/{tail:.*}", handle_webhook)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start the app, bind the listener, then tell systemd we are ready."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Listening for Plex webhooks at http://%s:%d", host, port)
    app[SERVICE].start_watchdog()
    return runner


async def serve(host: str, port: int):
    runner = await start_server(create_app(), host, port)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()


def main():
    port = int(cfg("port", default=DEFAULT_PORT))
    host = cfg("host", default="0.0.0.0")
    asyncio.run(serve(host, port))


if __name__ == "__main__":
    main()
