"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from hass_collector.config.settings import CollectorSettings, HealthConfig, MetricsConfig
from hass_collector.metadata import MetadataRegistry, MetadataTree
from hass_collector.models import HassArea, HassDevice, HassEntity


TIMESTAMP = "2024-03-01T12:30:00.123456+00:00"


def make_event(
    entity_id: str = "sensor.temp",
    state: Optional[str] = "21.5",
    last_updated: str = TIMESTAMP,
    attributes: Optional[Dict[str, Any]] = None,
    state_entity_id: Optional[str] = None
) -> bytes:
    """Serialize a state_changed event the way the MQTT event stream publishes it."""
    new_state = None
    if state is not None:
        new_state = {
            "entity_id": state_entity_id or entity_id,
            "state": state,
            "attributes": attributes if attributes is not None else {"device_class": "temperature"},
            "last_changed": last_updated,
            "last_updated": last_updated
        }

    return json.dumps({
        "event_type": "state_changed",
        "event_data": {
            "entity_id": entity_id,
            "old_state": None,
            "new_state": new_state
        }
    }).encode()


class FakeRegistryClient:
    """In-memory registry-fetch collaborator; ``failing`` makes every fetch raise."""

    def __init__(self, areas=(), devices=(), entities=()):
        self.areas = list(areas)
        self.devices = list(devices)
        self.entities = list(entities)
        self.failing = False
        self.fetches = 0
        self.connected = False
        self.closed = False

    async def connect(self):
        self.connected = True

    async def close(self):
        self.closed = True

    async def _fetch(self, rows):
        self.fetches += 1
        if self.failing:
            raise ConnectionError("registry unavailable")
        return list(rows)

    async def get_area_registry(self) -> List[HassArea]:
        return await self._fetch(self.areas)

    async def get_device_registry(self) -> List[HassDevice]:
        return await self._fetch(self.devices)

    async def get_entity_registry(self) -> List[HassEntity]:
        return await self._fetch(self.entities)


class RecordingSink:
    """Sink collaborator that keeps every written point; entity ids in ``fail_for`` raise."""

    def __init__(self, delay: float = 0.0):
        self.points = []
        self.fail_for = set()
        self.delay = delay
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def write(self, point):
        if self.delay:
            await asyncio.sleep(self.delay)
        if point.tags.get("entity.id") in self.fail_for:
            raise IOError("write rejected")
        self.points.append(point)

    async def close(self):
        self.closed = True


class FakeFeed:
    """Feed collaborator backed by an asyncio queue of payloads."""

    def __init__(self, payloads=()):
        self._pending = list(payloads)
        self._queue: Optional[asyncio.Queue] = None
        self.unsubscribe_error: Optional[Exception] = None
        self.unsubscribed = False
        self.closed = False

    async def connect(self):
        self._queue = asyncio.Queue()
        for payload in self._pending:
            self._queue.put_nowait(payload)

    async def receive(self) -> bytes:
        payload = await self._queue.get()
        if isinstance(payload, Exception):
            raise payload
        return payload

    def push(self, payload):
        self._queue.put_nowait(payload)

    async def unsubscribe(self):
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error
        self.unsubscribed = True

    async def close(self):
        self.closed = True


@pytest.fixture
def areas() -> List[HassArea]:
    return [HassArea(area_id="living_room", name="Living Room")]


@pytest.fixture
def devices() -> List[HassDevice]:
    return [
        HassDevice(id="dev-thermo", name="Living Room Sensor", area_id="living_room"),
        HassDevice(id="dev-plug", name="Plug", name_by_user="Desk Plug"),
        HassDevice(id="dev-lost", name="Lost", area_id="attic")
    ]


@pytest.fixture
def entities() -> List[HassEntity]:
    return [
        HassEntity(entity_id="sensor.temp", original_name="Temperature", device_id="dev-thermo"),
        HassEntity(entity_id="switch.desk", name="Desk", device_id="dev-plug"),
        HassEntity(entity_id="sensor.lost", device_id="dev-lost"),
        HassEntity(entity_id="sensor.dangling", device_id="dev-missing"),
        HassEntity(entity_id="sensor.orphan")
    ]


@pytest.fixture
def metadata_tree(areas, devices, entities) -> MetadataTree:
    return MetadataTree(areas, devices, entities)


@pytest.fixture
def metadata_registry(metadata_tree) -> MetadataRegistry:
    return MetadataRegistry(metadata_tree)


@pytest.fixture
def registry_client(areas, devices, entities) -> FakeRegistryClient:
    return FakeRegistryClient(areas, devices, entities)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def test_settings() -> CollectorSettings:
    """Settings with the network-facing extras turned off."""
    return CollectorSettings(
        service_name="test-collector",
        workers=2,
        hass={"refresh_interval_seconds": 0.01, "max_refresh_failures": 4},
        health=HealthConfig(enabled=False),
        metrics=MetricsConfig(enable_prometheus=False)
    )
