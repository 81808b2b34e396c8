"""
Root pytest configuration and shared fixtures.

Time is controlled through FakeClock (passed as ``clock=``) and
FakeSleeper (passed as ``sleeper=``), which advances the clock instead of
blocking.
"""

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

import pytest

from provider_harness.config import HarnessConfig
from provider_harness.core.observability import EventEmitter, HarnessEvent
from provider_harness.core.provider_manager import ProviderManager
from provider_harness.core.state_store import StateStore

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic timezone-aware clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSleeper:
    """Records requested sleeps and advances the clock by each one."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class EventRecorder:
    """Event sink keeping every emitted HarnessEvent."""

    def __init__(self) -> None:
        self.events: List[HarnessEvent] = []

    def __call__(self, event: HarnessEvent) -> None:
        self.events.append(event)

    def of_type(self, value: str) -> List[HarnessEvent]:
        return [e for e in self.events if e.event_type.value == value]


def make_config_data(project_dir: Path, **harness: Any) -> Dict[str, Any]:
    """Three providers with models, mirroring a typical provider-harness.toml."""
    harness_table = {
        "project_dir": str(project_dir),
        "mode": "test",
        "fallback_chain": ["claude", "gemini", "cursor"],
    }
    harness_table.update(harness)
    return {
        "harness": harness_table,
        "providers": {
            "claude": {
                "type": "subscription",
                "priority": 1,
                "weight": 3,
                "default_model": "sonnet",
                "models": [
                    {"name": "sonnet", "weight": 2, "cost_per_1k_tokens": 0.003},
                    {"name": "haiku", "weight": 1, "cost_per_1k_tokens": 0.0008},
                ],
            },
            "gemini": {
                "type": "usage_based",
                "priority": 2,
                "weight": 2,
                "models": [
                    {"name": "pro", "cost_per_1k_tokens": 0.00125},
                    {"name": "flash", "cost_per_1k_tokens": 0.0001},
                ],
            },
            "cursor": {
                "type": "passthrough",
                "priority": 3,
                "weight": 1,
                "models": ["auto"],
            },
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> FakeSleeper:
    return FakeSleeper(clock)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def events(recorder: EventRecorder) -> EventEmitter:
    emitter = EventEmitter()
    emitter.subscribe(recorder)
    return emitter


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    return HarnessConfig.from_toml_dict(make_config_data(tmp_path))


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> StateStore:
    return StateStore(tmp_path, "test", lock_timeout=0.2, clock=clock)


@pytest.fixture
def manager(
    harness_config: HarnessConfig,
    store: StateStore,
    events: EventEmitter,
    clock: FakeClock,
) -> ProviderManager:
    return ProviderManager(
        harness_config,
        store=store,
        events=events,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def config_factory(tmp_path: Path):
    """Build a HarnessConfig from the standard providers plus section overrides."""

    def factory(harness: Dict[str, Any] = None, **sections: Any) -> HarnessConfig:
        data = make_config_data(tmp_path, **(harness or {}))
        data.update(sections)
        return HarnessConfig.from_toml_dict(data)

    return factory


@pytest.fixture
def manager_factory(store: StateStore, events: EventEmitter, clock: FakeClock):
    """Build a ProviderManager sharing the test store, emitter and clock."""

    def factory(config: HarnessConfig, **kwargs: Any) -> ProviderManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("events", events)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", random.Random(7))
        return ProviderManager(config, **kwargs)

    return factory
