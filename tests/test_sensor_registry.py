# tests/test_sensor_registry.py
from __future__ import annotations

import pytest

from conftest import FakeTimer
from lib.sensor_registry import SensorConfig, SensorRegistry


class TestSensorConfig:
    def test_defaults(self):
        config = SensorConfig.from_dict({"name": "Plex"})
        assert config.name == "Plex"
        assert config.users == ()
        assert config.players == ()
        assert config.types == ()
        assert config.delay == 0

    def test_single_string_becomes_list(self):
        config = SensorConfig.from_dict({"name": "Plex", "users": "alice", "types": ["movie"]})
        assert config.users == ("alice",)
        assert config.types == ("movie",)

    def test_invalid_delay_falls_back_to_zero(self):
        assert SensorConfig.from_dict({"name": "a", "delay": -5}).delay == 0
        assert SensorConfig.from_dict({"name": "a", "delay": "soon"}).delay == 0
        assert SensorConfig.from_dict({"name": "a", "delay": True}).delay == 0
        assert SensorConfig.from_dict({"name": "a", "delay": None}).delay == 0
        assert SensorConfig.from_dict({"name": "a", "delay": 1500}).delay == 1500

    def test_name_required(self):
        with pytest.raises(ValueError):
            SensorConfig.from_dict({"users": ["alice"]})
        with pytest.raises(ValueError):
            SensorConfig.from_dict({"name": "   "})


class TestRegistry:
    def test_keeps_config_order(self, make_registry):
        registry = make_registry({"name": "b"}, {"name": "a"}, {"name": "c"})
        assert registry.names() == ["b", "a", "c"]
        assert [s.name for s in registry] == ["b", "a", "c"]

    def test_skips_unnamed_and_duplicates(self, make_registry):
        registry = make_registry({"name": "a"}, {"delay": 10}, {"name": "a", "delay": 99}, "junk")
        assert registry.names() == ["a"]
        assert registry.get("a").config.delay == 0

    def test_non_list_config(self):
        assert len(SensorRegistry.from_config(None)) == 0
        assert len(SensorRegistry.from_config({"name": "a"})) == 0

    def test_add_duplicate_raises(self):
        registry = SensorRegistry([SensorConfig("a")])
        with pytest.raises(ValueError):
            registry.add(SensorConfig("a"))

    def test_initial_state_is_stopped(self, make_registry):
        state = make_registry({"name": "a"}).get("a").state
        assert state.is_on is False
        assert state.is_playing is False
        assert state.active_sessions == set()
        assert state.pending_stop is None
        assert state.label == "stopped"

    def test_reset_clears_state_and_cancels_timer(self, make_registry):
        registry = make_registry({"name": "a", "delay": 100})
        state = registry.get("a").state
        timer = FakeTimer(0.1, None)
        state.is_on = True
        state.is_playing = True
        state.active_sessions.update({"p1", "p2"})
        state.pending_stop = timer
        generation = state.stop_generation

        registry.reset("a")

        assert timer.cancelled
        assert state.pending_stop is None
        assert state.stop_generation > generation
        assert (state.is_on, state.is_playing) == (False, False)
        assert state.active_sessions == set()

    def test_reset_unknown(self, make_registry):
        assert make_registry({"name": "a"}).reset("nope") is None

    def test_snapshot(self, make_registry):
        registry = make_registry({"name": "a", "players": ["TV"], "delay": 250})
        sensor = registry.get("a")
        sensor.state.is_on = True
        sensor.state.active_sessions.add("p1")
        assert registry.snapshot() == [{
            "name": "a",
            "on": True,
            "playing": False,
            "state": "paused",
            "active_sessions": ["p1"],
            "stop_pending": False,
            "config": {"users": [], "players": ["TV"], "types": [], "delay": 250},
        }]
