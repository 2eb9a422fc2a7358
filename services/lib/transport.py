"""
Transport for Plex Sensors -> Home Assistant state updates.

Supports webhook (HTTP POST), MQTT, or both transports, configurable via
``transport.mode`` in config.json.

With MQTT every sensor is announced through Home Assistant MQTT discovery as
two binary sensors on one device: "<name>" (on, occupancy) and
"<name> Playing" (playing, running).  States are published retained, so a
restarting Home Assistant picks them up again; when it publishes its birth
message the resync handler is called to re-announce everything.

Usage:
    transport = Transport()
    transport.set_resync_handler(my_callback)
    await transport.start()
    transport.announce(["Living Room", "Bedroom"])
    await transport.send_state("Living Room", on=True, playing=False)
    await transport.stop()
"""

import asyncio
import json
import os
import re
import logging

import aiohttp
import aiomqtt

from .config import cfg

logger = logging.getLogger(__name__)

# Topic structure: plex_sensors/{device_slug}/{sensor_slug}/state
TOPIC_PREFIX = "plex_sensors"
MANUFACTURER = "Plex Sensors"
MODEL = "Plex Sensor"


def slugify(name: str) -> str:
    """Convert a name to an MQTT-safe slug: 'Living Room' -> 'living_room'.

    Strips characters that are illegal in MQTT topic segments (/, #, +)
    and replaces non-alphanumeric chars with underscores.
    """
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9_]", "_", slug)
    slug = re.sub(r"_+", "_", slug)
    slug = slug.strip("_")
    return slug or "default"


def _payload_text(payload) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode(errors="replace").strip()
    return str(payload or "").strip()


def state_label(on: bool, playing: bool) -> str:
    if playing:
        return "playing"
    return "paused" if on else "stopped"


def state_payload(sensor_name: str, on: bool, playing: bool, device: str) -> dict:
    """Body sent for one sensor update (webhook JSON / MQTT state message)."""
    return {
        "sensor": sensor_name,
        "on": on,
        "playing": playing,
        "state": state_label(on, playing),
        "device": device,
    }


def discovery_configs(sensor_name: str, device_slug: str, discovery_prefix: str,
                      availability_topic: str) -> list[tuple[str, dict]]:
    """Home Assistant MQTT discovery messages for one sensor.

    Returns ``[(config_topic, payload), ...]`` - one binary_sensor per facet,
    both reading the same retained state topic.
    """
    sensor_slug = slugify(sensor_name)
    state_topic = f"{TOPIC_PREFIX}/{device_slug}/{sensor_slug}/state"
    device = {
        "identifiers": [f"{TOPIC_PREFIX}_{device_slug}_{sensor_slug}"],
        "name": sensor_name,
        "manufacturer": MANUFACTURER,
        "model": MODEL,
        "serial_number": sensor_name,
    }
    facets = (
        ("on", sensor_name, "occupancy"),
        ("playing", f"{sensor_name} Playing", "running"),
    )
    configs = []
    for facet, title, device_class in facets:
        object_id = f"{device_slug}_{sensor_slug}_{facet}"
        configs.append((
            f"{discovery_prefix}/binary_sensor/{object_id}/config",
            {
                "name": title,
                "unique_id": f"{TOPIC_PREFIX}_{object_id}",
                "state_topic": state_topic,
                "value_template": f"{{{{ 'ON' if value_json.{facet} else 'OFF' }}}}",
                "device_class": device_class,
                "availability_topic": availability_topic,
                "device": device,
            },
        ))
    return configs


class Transport:
    """Unified transport for sending sensor state to Home Assistant."""

    def __init__(self):
        self.mode = str(cfg("transport", "mode", default="webhook")).lower()  # webhook | mqtt | both
        self.webhook_url = cfg("home_assistant", "webhook_url",
                               default="http://homeassistant.local:8123/api/webhook/plex_sensors")
        self.discovery_prefix = cfg("home_assistant", "discovery_prefix", default="homeassistant")
        self.device_name = cfg("device", default="Plex Sensors")
        self.device_slug = slugify(self.device_name)

        # MQTT config (broker from JSON, credentials from env secrets)
        self.mqtt_broker = cfg("transport", "mqtt_broker", default="homeassistant.local")
        self.mqtt_port = int(cfg("transport", "mqtt_port", default=1883))
        self.mqtt_user = os.getenv("MQTT_USER", "")
        self.mqtt_password = os.getenv("MQTT_PASSWORD", "")

        self.topic_status = f"{TOPIC_PREFIX}/{self.device_slug}/status"
        self.topic_ha_status = f"{self.discovery_prefix}/status"

        # Internal state
        self._session: aiohttp.ClientSession | None = None
        self._mqtt_client = None
        self._mqtt_task: asyncio.Task | None = None
        self._resync_handler = None
        self._sensor_names: list[str] = []
        self._running = False

    @property
    def _use_webhook(self) -> bool:
        return self.mode in ("webhook", "both")

    @property
    def _use_mqtt(self) -> bool:
        return self.mode in ("mqtt", "both")

    def state_topic(self, sensor_name: str) -> str:
        return f"{TOPIC_PREFIX}/{self.device_slug}/{slugify(sensor_name)}/state"

    def set_resync_handler(self, callback):
        """Register async callback run after MQTT (re)connects or HA restarts.

        Callback signature: async def handler() -> None
        """
        self._resync_handler = callback

    def announce(self, sensor_names):
        """Remember which sensors exist; published as discovery on MQTT connect."""
        self._sensor_names = list(sensor_names)
        if self._mqtt_client is not None:
            asyncio.ensure_future(self._publish_discovery(self._mqtt_client))

    async def start(self):
        """Initialize transports."""
        self._running = True

        if self._use_webhook:
            connector = aiohttp.TCPConnector(
                limit=10,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                force_close=False,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=2.0),
                headers={"User-Agent": "PlexSensors-Transport/1.0"},
            )
            logger.info("Webhook transport ready -> %s", self.webhook_url)

        if self._use_mqtt:
            self._mqtt_task = asyncio.create_task(self._mqtt_loop())
            logger.info("MQTT transport starting -> %s:%d", self.mqtt_broker, self.mqtt_port)

    async def stop(self):
        """Clean shutdown of all transports."""
        self._running = False

        if self._mqtt_task:
            self._mqtt_task.cancel()
            try:
                await self._mqtt_task
            except asyncio.CancelledError:
                pass
            self._mqtt_task = None

        if self._session:
            await self._session.close()
            self._session = None

        logger.info("Transport stopped")

    async def send_state(self, sensor_name: str, on: bool, playing: bool):
        """Send one sensor's state via configured transport(s).

        Runs webhook and MQTT sends in parallel when mode is 'both'.
        """
        payload = state_payload(sensor_name, on, playing, self.device_name)
        tasks = []
        if self._use_webhook:
            tasks.append(self._send_webhook(payload))
        if self._use_mqtt:
            tasks.append(self._send_mqtt(sensor_name, payload))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for r in results:
                if isinstance(r, Exception):
                    logger.error("Transport send error: %s", r)

    # --- Webhook transport ---------------------------------------------------

    async def _send_webhook(self, payload: dict) -> bool:
        if not self._session:
            logger.warning("Webhook session not initialized")
            return False

        try:
            async with self._session.post(
                self.webhook_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=2.0),
                raise_for_status=True,
            ) as resp:
                logger.debug("Webhook sent: %s=%s (HTTP %d)",
                             payload["sensor"], payload["state"], resp.status)
                return True
        except asyncio.TimeoutError:
            logger.warning("Webhook timeout for %s", payload["sensor"])
        except aiohttp.ClientError as e:
            logger.warning("Webhook error: %s", e)
        return False

    # --- MQTT transport -------------------------------------------------------

    async def _mqtt_loop(self):
        """Connect to MQTT broker with auto-reconnect and exponential backoff."""
        backoff = 1  # seconds
        max_backoff = 30

        while self._running:
            try:
                will = aiomqtt.Will(
                    topic=self.topic_status,
                    payload="offline",
                    qos=1,
                    retain=True,
                )

                async with aiomqtt.Client(
                    hostname=self.mqtt_broker,
                    port=self.mqtt_port,
                    username=self.mqtt_user or None,
                    password=self.mqtt_password or None,
                    will=will,
                ) as client:
                    self._mqtt_client = client
                    backoff = 1  # reset on successful connect

                    await client.publish(self.topic_status, "online", qos=1, retain=True)
                    logger.info("MQTT connected to %s:%d", self.mqtt_broker, self.mqtt_port)

                    await self._publish_discovery(client)
                    await self._resync()

                    # Home Assistant birth message -> re-announce
                    await client.subscribe(self.topic_ha_status)
                    logger.info("MQTT subscribed to %s", self.topic_ha_status)

                    async for message in client.messages:
                        if not message.topic.matches(self.topic_ha_status):
                            continue
                        status = _payload_text(message.payload)
                        if status == "online":
                            logger.info("Home Assistant came online, resyncing sensors")
                            await self._publish_discovery(client)
                            await self._resync()

            except asyncio.CancelledError:
                raise
            except aiomqtt.MqttError as e:
                self._mqtt_client = None
                logger.warning("MQTT connection lost (%s), reconnecting in %ds", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

        self._mqtt_client = None

    async def _publish_discovery(self, client):
        for name in self._sensor_names:
            for topic, config in discovery_configs(
                    name, self.device_slug, self.discovery_prefix, self.topic_status):
                try:
                    await client.publish(topic, json.dumps(config), qos=1, retain=True)
                except Exception as e:
                    logger.warning("MQTT discovery publish failed for %s: %s", name, e)
                    return
        if self._sensor_names:
            logger.info("MQTT discovery published for %d sensor(s)", len(self._sensor_names))

    async def _resync(self):
        if not self._resync_handler:
            return
        try:
            await self._resync_handler()
        except Exception as e:
            logger.error("Resync handler error: %s", e)

    async def _send_mqtt(self, sensor_name: str, payload: dict) -> bool:
        if not self._mqtt_client:
            logger.warning("MQTT not connected, dropping state for %s", sensor_name)
            return False

        try:
            await self._mqtt_client.publish(
                self.state_topic(sensor_name),
                json.dumps(payload),
                qos=1,
                retain=True,
            )
            logger.debug("MQTT published: %s=%s", sensor_name, payload["state"])
            return True
        except Exception as e:
            logger.warning("MQTT publish error: %s", e)
            return False
