"""Dispatch pipeline: a closeable bounded queue drained by a fixed worker pool."""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from .filter import DefaultFilter, EntityFilter, split_entity_id
from .metadata import MetadataRegistry
from .metrics import EVENTS_TOTAL, POINTS_WRITTEN, QUEUE_DEPTH, SINK_ERRORS
from .models import DataPoint, StateChangedEvent
from .value import ParseError, parse_value


logger = logging.getLogger(__name__)


class QueueClosed(Exception):
    """Raised by DispatchQueue once it has been closed."""


_CLOSED = object()


class DispatchQueue:
    """
    Bounded multi-producer multi-consumer queue that can be closed.

    ``put`` blocks while the queue is full. After ``close`` producers get QueueClosed,
    and each consumer receives QueueClosed once the items queued before the close
    have been handed out.
    """

    def __init__(self, maxsize: int, consumers: int):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._consumers = consumers
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: Any):
        if self._closed:
            raise QueueClosed()
        await self._queue.put(item)

    async def get(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise QueueClosed()
        return item

    async def close(self):
        """Close the queue; one end-marker per consumer follows the pending items."""
        if self._closed:
            return
        self._closed = True
        for _ in range(self._consumers):
            await self._queue.put(_CLOSED)


class DispatchPipeline:
    """Fans raw event payloads out to workers that filter, enrich and write points."""

    def __init__(
        self,
        entity_filter: EntityFilter,
        default_filter: DefaultFilter,
        registry: MetadataRegistry,
        sink,
        workers: int = 1,
        queue_capacity: Optional[int] = None
    ):
        self.entity_filter = entity_filter
        self.default_filter = default_filter
        self.registry = registry
        self.sink = sink
        self.worker_count = workers
        self.queue = DispatchQueue(queue_capacity or workers * 2, consumers=workers)

        self._workers: List[asyncio.Task] = []

        self.stats = {
            "messages_received": 0,
            "points_written": 0,
            "filtered": 0,
            "skipped": 0,
            "errors": 0,
            "last_point_time": None,
            "start_time": datetime.utcnow()
        }

        logger.info(
            f"DispatchPipeline initialized with {workers} workers, "
            f"default filter '{default_filter}', {len(entity_filter)} filter rules"
        )

    def start(self):
        """Spawn the worker tasks."""
        for i in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}"))

    async def submit(self, payload: bytes):
        """Queue one raw payload; blocks while the queue is full."""
        await self.queue.put(payload)
        self.stats["messages_received"] += 1
        QUEUE_DEPTH.set(self.queue.qsize())

    async def close(self):
        """Stop accepting payloads; workers drain what is queued and then exit."""
        await self.queue.close()

    async def join(self):
        """Wait for every worker to finish."""
        if self._workers:
            await asyncio.gather(*self._workers)

    async def _worker(self, worker_id: int):
        while True:
            try:
                payload = await self.queue.get()
            except QueueClosed:
                break

            QUEUE_DEPTH.set(self.queue.qsize())
            point = self.build_point(payload)
            if point is None:
                continue

            await self._write(point)

        logger.info(f"Channel closed; shutting down worker {worker_id}")

    def _skip(self, outcome: str, stat: str = "skipped"):
        self.stats[stat] += 1
        EVENTS_TOTAL.labels(outcome=outcome).inc()

    def build_point(self, payload: bytes) -> Optional[DataPoint]:
        """
        Turn one raw payload into a point, or None if the event is skipped.

        Every skip is logged at the severity matching its cause; nothing is raised.
        """
        try:
            event = StateChangedEvent.model_validate_json(payload)
        except ValueError as e:
            logger.error(f"Failed to deserialize event {payload[:512]!r}: {e}")
            self._skip("invalid_payload", "errors")
            return None

        entity_id = event.entity_id
        if not self.default_filter.admits(self.entity_filter.matches_event(event)):
            logger.debug(f"{entity_id} did not match filter")
            self._skip("filtered", "filtered")
            return None

        state = event.event_data.new_state
        if state is None:
            logger.warning(f"New state missing for {entity_id}")
            self._skip("missing_state")
            return None

        parts = split_entity_id(state.entity_id)
        if parts is None:
            logger.warning(f"Invalid entity ID {state.entity_id!r}")
            self._skip("invalid_entity_id")
            return None
        kind = parts[0]

        timestamp = parse_timestamp(state.last_updated)
        if timestamp is None:
            logger.error(f"Failed to parse timestamp {state.last_updated!r} for {state.entity_id}")
            self._skip("invalid_timestamp", "errors")
            return None

        meta = self.registry.find(state.entity_id)
        if meta is None:
            logger.warning(f"Metadata not found for {state.entity_id}")
            self._skip("metadata_missing")
            return None

        try:
            value = parse_value(state.state)
        except ParseError:
            logger.warning(f"Failed to parse numerical value from state {state.state!r} of {meta.entity.entity_id}")
            self._skip("non_numeric")
            return None

        tags = {
            "entity.id": meta.entity.entity_id,
            "device.name": meta.device.display_name
        }

        entity_name = meta.entity.display_name
        if entity_name:
            tags["entity.name"] = entity_name

        if meta.area is not None:
            tags["device.area"] = meta.area.name

        device_class = state.attributes.get("device_class")
        if isinstance(device_class, str):
            tags["device.class"] = device_class

        point = DataPoint(measurement=f"hass:{kind}", value=value, timestamp=timestamp, tags=tags)
        logger.info(f"Built datapoint {point.measurement} value={point.value} tags={point.tags}")
        return point

    async def _write(self, point: DataPoint):
        try:
            await self.sink.write(point)
        except Exception as e:
            logger.error(f"Failed to write data for {point.tags.get('entity.id')}: {e}")
            self.stats["errors"] += 1
            SINK_ERRORS.inc()
            EVENTS_TOTAL.labels(outcome="write_failed").inc()
            return

        self.stats["points_written"] += 1
        self.stats["last_point_time"] = datetime.utcnow()
        POINTS_WRITTEN.inc()
        EVENTS_TOTAL.labels(outcome="written").inc()

    def health_check(self) -> Dict[str, Any]:
        alive = sum(1 for task in self._workers if not task.done())
        status = "healthy"
        if self._workers and alive == 0:
            status = "unhealthy"

        return {
            "status": status,
            "workers_alive": alive,
            "workers_configured": self.worker_count,
            "queue_depth": self.queue.qsize(),
            "queue_capacity": self.queue.maxsize,
            "queue_closed": self.queue.closed,
            "stats": self.stats.copy()
        }


_RFC3339_RE = re.compile(
    r"([0-9]{4}-[0-9]{2}-[0-9]{2})[Tt ]([0-9]{2}:[0-9]{2}:[0-9]{2})(?:\.([0-9]+))?([Zz]|[+-][0-9]{2}:[0-9]{2})"
)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp; None if malformed.

    Seconds and a UTC offset are required. Fractions finer than a microsecond are truncated.
    """
    match = _RFC3339_RE.fullmatch(value)
    if match is None:
        return None

    date, time, fraction, offset = match.groups()
    if fraction:
        time = f"{time}.{fraction[:6].ljust(6, '0')}"
    if offset in ("Z", "z"):
        offset = "+00:00"

    try:
        return datetime.fromisoformat(f"{date}T{time}{offset}")
    except ValueError:
        return None
