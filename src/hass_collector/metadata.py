"""Registry metadata snapshots and the background refresher."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .metrics import METADATA_REFRESHES
from .models import HassArea, HassDevice, HassEntity


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetadataResult:
    """Resolved metadata for one entity."""
    entity: HassEntity
    device: HassDevice
    area: Optional[HassArea] = None


class MetadataTree:
    """
    Immutable point-in-time view of the area, device and entity registries.

    A tree is never modified after construction; refreshing builds a new tree.
    """

    def __init__(
        self,
        areas: Iterable[HassArea] = (),
        devices: Iterable[HassDevice] = (),
        entities: Iterable[HassEntity] = ()
    ):
        self._areas_by_id: Dict[str, HassArea] = {a.area_id: a for a in areas}
        self._devices_by_id: Dict[str, HassDevice] = {d.id: d for d in devices}
        self._entities_by_id: Dict[str, HassEntity] = {e.entity_id: e for e in entities}
        self.created_at = datetime.utcnow()

    @classmethod
    async def load(cls, client) -> "MetadataTree":
        """Fetch all three registries from the client and build a tree."""
        areas = await client.get_area_registry()
        devices = await client.get_device_registry()
        entities = await client.get_entity_registry()

        tree = cls(areas, devices, entities)
        logger.debug(
            f"Loaded metadata: {len(tree._areas_by_id)} areas, "
            f"{len(tree._devices_by_id)} devices, {len(tree._entities_by_id)} entities"
        )
        return tree

    def find(self, entity_id: str) -> Optional[MetadataResult]:
        """
        Resolve an entity to its device and area.

        Returns None when the entity is unknown, has no device, or references a device
        missing from this tree. A missing area is reported as ``area=None``.
        """
        entity = self._entities_by_id.get(entity_id)
        if entity is None or entity.device_id is None:
            return None

        device = self._devices_by_id.get(entity.device_id)
        if device is None:
            return None

        area = self._areas_by_id.get(device.area_id) if device.area_id else None
        return MetadataResult(entity=entity, device=device, area=area)

    def counts(self) -> Dict[str, int]:
        return {
            "areas": len(self._areas_by_id),
            "devices": len(self._devices_by_id),
            "entities": len(self._entities_by_id)
        }


class MetadataRegistry:
    """Holds the currently published tree; readers never see a partial tree."""

    def __init__(self, snapshot: MetadataTree):
        self._snapshot = snapshot

    @property
    def snapshot(self) -> MetadataTree:
        return self._snapshot

    def publish(self, snapshot: MetadataTree):
        self._snapshot = snapshot

    def find(self, entity_id: str) -> Optional[MetadataResult]:
        return self._snapshot.find(entity_id)


class RefreshState(Enum):
    """Refresher lifecycle states."""
    IDLE = "idle"
    FETCHING = "fetching"
    FAILED = "failed"
    FATAL = "fatal"


class MetadataRefresher:
    """
    Periodically rebuilds the metadata tree and publishes it to the registry.

    Each tick moves IDLE/FAILED -> FETCHING, then back to IDLE on success or to FAILED on
    error. Once the consecutive failure count exceeds ``max_failures`` the refresher
    enters FATAL and ``run()`` returns; callers treat that as a reason to shut down.
    """

    def __init__(
        self,
        registry: MetadataRegistry,
        client,
        interval_seconds: float = 10.0,
        max_failures: int = 4
    ):
        self.registry = registry
        self.client = client
        self.interval_seconds = interval_seconds
        self.max_failures = max_failures

        self.state = RefreshState.IDLE
        self.failure_count = 0
        self.last_success_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def refresh_once(self) -> RefreshState:
        """Perform one fetch and the resulting state transition."""
        if self.state is RefreshState.FATAL:
            return self.state

        self.state = RefreshState.FETCHING
        try:
            snapshot = await MetadataTree.load(self.client)
        except Exception as e:
            self.failure_count += 1
            self.last_error = str(e)
            METADATA_REFRESHES.labels(result="failure").inc()
            logger.error(f"Failed to get metadata (failure {self.failure_count}): {e}")

            if self.failure_count > self.max_failures:
                self.state = RefreshState.FATAL
            else:
                self.state = RefreshState.FAILED
            return self.state

        self.registry.publish(snapshot)
        self.failure_count = 0
        self.last_error = None
        self.last_success_time = datetime.utcnow()
        self.state = RefreshState.IDLE
        METADATA_REFRESHES.labels(result="success").inc()
        return self.state

    async def run(self):
        """
        Refresh on a fixed interval until the failure limit is exceeded.

        The first refresh happens one interval after start; the snapshot loaded at startup
        covers the time before it.
        """
        logger.info(f"Starting metadata refresher with interval {self.interval_seconds}s")

        while True:
            await asyncio.sleep(self.interval_seconds)
            if await self.refresh_once() is RefreshState.FATAL:
                break

        logger.error("Metadata failure count limit reached")

    def health_check(self) -> Dict[str, Any]:
        status = "healthy"
        if self.state is RefreshState.FATAL:
            status = "unhealthy"
        elif self.state is RefreshState.FAILED:
            status = "degraded"

        return {
            "status": status,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "last_error": self.last_error,
            "snapshot": self.registry.snapshot.counts()
        }
