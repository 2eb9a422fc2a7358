# Plex Sensors test fixtures
from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

SERVICES = Path(__file__).resolve().parents[1] / "services"
if str(SERVICES) not in sys.path:
    sys.path.insert(0, str(SERVICES))

from lib import config as config_mod  # noqa: E402
from lib.plex_events import PlaybackEvent  # noqa: E402
from lib.sensor_registry import SensorRegistry  # noqa: E402
from lib.state_sink import StateSink  # noqa: E402

BOUNDARY = "------------------------d74496d66958873e"
THUMB = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01{\x00}\xff\xd9"


class RecordingSink(StateSink):
    """Keeps every update in order instead of sending it anywhere."""

    def __init__(self):
        self.updates: list[tuple[str, bool, bool]] = []
        self.announced: list[str] = []
        self.started = False
        self.stopped = False

    def update(self, sensor_name, on, playing):
        self.updates.append((sensor_name, on, playing))

    def announce(self, sensor_names):
        self.announced = list(sensor_names)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    def last(self, sensor_name):
        for name, on, playing in reversed(self.updates):
            if name == sensor_name:
                return on, playing
        return None


class FakeTimer:
    def __init__(self, delay, message):
        self.delay = delay
        self.message = message
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Records armed timers; tests fire them by hand."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, delay, message):
        timer = FakeTimer(delay, message)
        self.timers.append(timer)
        return timer

    @property
    def armed(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]


def plex_payload(event: str, player_uuid: str = "player-a", *, account: str = "alice",
                 player_title: str = "Living Room TV", media_type: str = "movie") -> dict:
    """A trimmed-down Plex webhook payload."""
    return {
        "event": event,
        "user": True,
        "owner": True,
        "Account": {"id": 1, "title": account},
        "Server": {"title": "plex-server", "uuid": "server-1"},
        "Player": {"local": True, "publicAddress": "10.0.0.2",
                   "title": player_title, "uuid": player_uuid},
        "Metadata": {"librarySectionType": "movie", "type": media_type,
                     "title": "Big Buck Bunny"},
    }


def multipart_body(payload: dict | str, *, boundary: str = BOUNDARY, thumb: bool = True,
                   thumb_data: bytes = THUMB) -> bytes:
    """Encode a webhook body the way Plex does: JSON part plus optional JPEG thumb."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    body = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="payload"\r\n'
        "Content-Type: application/json\r\n\r\n"
        f"{text}\r\n"
    ).encode()
    if thumb:
        body += (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="thumb"; filename="thumb.jpg"\r\n'
            "Content-Type: image/jpeg\r\n\r\n"
        ).encode() + thumb_data + b"\r\n"
    body += f"--{boundary}--\r\n".encode()
    return body


def event(kind: str, player_id: str = "player-a", *, account: str = "alice",
          player_title: str = "Living Room TV", media_type: str = "movie") -> PlaybackEvent:
    return PlaybackEvent(kind, player_id, account=account,
                         player_title=player_title, media_type=media_type)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config loader at an empty per-test file."""
    path = tmp_path / "config.json"
    path.write_text("{}")
    monkeypatch.setenv("PLEX_SENSORS_CONFIG", str(path))
    config_mod.reload_config()
    yield path
    config_mod._config = None


@pytest.fixture()
def write_config(isolated_config: Path):
    def _write(data: dict) -> dict:
        isolated_config.write_text(json.dumps(data))
        return config_mod.reload_config()
    return _write


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture()
def make_registry():
    def _make(*entries: dict) -> SensorRegistry:
        return SensorRegistry.from_config(list(entries))
    return _make
