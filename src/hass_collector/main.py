"""Collector Service - Home Assistant state changes from MQTT to InfluxDB."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from typing import Optional

from .clients.hass_registry import HassRegistryClient
from .clients.influx_sink import InfluxSink
from .clients.mqtt_feed import MqttFeed
from .config.settings import CollectorSettings, load_settings
from .health import HealthCheckServer
from .metadata import MetadataRefresher, MetadataRegistry, MetadataTree, RefreshState
from .metrics import start_metrics_server
from .pipeline import DispatchPipeline, QueueClosed
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)


class CollectorService:
    """
    Wires the feed, metadata refresher and dispatch pipeline together and owns shutdown.

    The service stops on a termination signal, when the feed reader ends, or when the
    metadata refresher gives up. Shutdown drains queued events before returning.
    """

    def __init__(
        self,
        settings: CollectorSettings,
        feed=None,
        registry_client=None,
        sink=None
    ):
        self.settings = settings
        self.feed = feed or MqttFeed(settings.mqtt, capacity=settings.queue_capacity)
        self.registry_client = registry_client or HassRegistryClient(settings.hass)
        self.sink = sink or InfluxSink(settings.influxdb)

        self.registry: Optional[MetadataRegistry] = None
        self.refresher: Optional[MetadataRefresher] = None
        self.pipeline: Optional[DispatchPipeline] = None
        self.health_server: Optional[HealthCheckServer] = None

        self._shutdown_event: Optional[asyncio.Event] = None
        self._feed_stop: Optional[asyncio.Event] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._refresher_task: Optional[asyncio.Task] = None

        self.fatal_reason: Optional[str] = None
        self.start_time: Optional[datetime] = None

        logger.info("Collector Service initialized")

    async def start(self):
        """Load the first metadata snapshot, then start workers, feed and refresher."""
        logger.info("Starting Collector Service")
        self._shutdown_event = asyncio.Event()
        self._feed_stop = asyncio.Event()

        # Workers must not start before metadata is available
        await self.registry_client.connect()
        snapshot = await MetadataTree.load(self.registry_client)
        self.registry = MetadataRegistry(snapshot)
        logger.info(f"Initial metadata loaded: {snapshot.counts()}")

        self.refresher = MetadataRefresher(
            self.registry,
            self.registry_client,
            interval_seconds=self.settings.hass.refresh_interval_seconds,
            max_failures=self.settings.hass.max_refresh_failures
        )

        await self.sink.initialize()

        self.pipeline = DispatchPipeline(
            entity_filter=self.settings.build_entity_filter(),
            default_filter=self.settings.default_filter,
            registry=self.registry,
            sink=self.sink,
            workers=self.settings.workers,
            queue_capacity=self.settings.queue_capacity
        )
        self.pipeline.start()

        await self.feed.connect()

        self._refresher_task = asyncio.create_task(self.refresher.run(), name="metadata-refresher")
        self._feed_task = asyncio.create_task(self._pump_feed(), name="feed-reader")
        self.start_time = datetime.utcnow()

    async def run(self) -> int:
        """Run until a stop condition, shut down gracefully, return the exit status."""
        try:
            await self.start()
        except Exception:
            if self.pipeline is not None:
                await self.pipeline.close()
                await self.pipeline.join()
            await self._close_collaborators()
            raise

        self._setup_signal_handlers()

        if self.settings.health.enabled:
            self.health_server = HealthCheckServer(self, self.settings.health.host, self.settings.health.port)
            await self.health_server.start()

        shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait(
            {shutdown_wait, self._feed_task, self._refresher_task},
            return_when=asyncio.FIRST_COMPLETED
        )

        if self._feed_task in done:
            error = self._feed_task.exception()
            if error is not None:
                logger.error(f"MQTT event loop handler failed: {error}", exc_info=error)
            logger.warning("MQTT event loop handler terminated; shutting down")
            self.fatal_reason = "feed terminated"
        elif self._refresher_task in done:
            logger.warning("Metadata loop terminated; shutting down")
            self.fatal_reason = "metadata refresh failed"

        shutdown_wait.cancel()
        await self.stop()

        return 1 if self.fatal_reason else 0

    def request_shutdown(self, reason: str = "requested"):
        """Ask the service to stop; safe to call more than once."""
        logger.info(f"{reason} received; shutting down")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def stop(self):
        """Stop the feed, drain the pipeline and release collaborators."""
        logger.info("Shutting down Collector Service")
        self._remove_signal_handlers()

        try:
            await self.feed.unsubscribe()
        except Exception as e:
            logger.error(f"Failed to unsubscribe from MQTT topic: {e}")

        self._feed_stop.set()
        if self._feed_task is not None:
            await asyncio.gather(self._feed_task, return_exceptions=True)

        if self.pipeline is not None:
            await self.pipeline.close()
            await self.pipeline.join()

        if self._refresher_task is not None and not self._refresher_task.done():
            self._refresher_task.cancel()
            await asyncio.gather(self._refresher_task, return_exceptions=True)

        if self.health_server is not None:
            await self.health_server.stop()

        await self._close_collaborators()
        logger.info("Collector Service stopped")

    async def _pump_feed(self):
        """Move payloads from the feed into the pipeline until told to stop."""
        stop_wait = asyncio.create_task(self._feed_stop.wait())
        try:
            while True:
                receive = asyncio.create_task(self.feed.receive())
                done, _ = await asyncio.wait({receive, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

                if receive in done:
                    try:
                        await self.pipeline.submit(receive.result())
                    except QueueClosed:
                        logger.error("Send channel has closed; terminating")
                        break

                if stop_wait in done:
                    receive.cancel()
                    await asyncio.gather(receive, return_exceptions=True)
                    break
        finally:
            stop_wait.cancel()

        logger.info("Feed reader stopped")

    async def _close_collaborators(self):
        for name, closer in (
            ("MQTT feed", self.feed.close),
            ("InfluxDB sink", self.sink.close),
            ("Home Assistant client", self.registry_client.close)
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    def readiness(self) -> dict:
        """Whether the collector is currently turning events into points."""
        checks = {
            "metadata_loaded": self.registry is not None,
            "refresher_alive": self.refresher is not None and self.refresher.state is not RefreshState.FATAL,
            "accepting_events": self.pipeline is not None and not self.pipeline.queue.closed
        }

        snapshot_age = None
        if self.registry is not None:
            snapshot_age = (datetime.utcnow() - self.registry.snapshot.created_at).total_seconds()

        return {
            "ready": all(checks.values()),
            "checks": checks,
            "snapshot_age_seconds": snapshot_age
        }

    async def health_check(self) -> dict:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "started_at": self.start_time.isoformat() if self.start_time else None,
            "components": {}
        }

        if self.pipeline is not None:
            health_status["components"]["pipeline"] = self.pipeline.health_check()
        if self.refresher is not None:
            health_status["components"]["metadata"] = self.refresher.health_check()
        if isinstance(self.registry_client, HassRegistryClient):
            health_status["components"]["hass"] = self.registry_client.health_check()
        if isinstance(self.feed, MqttFeed):
            health_status["components"]["feed"] = self.feed.health_check()
        if isinstance(self.sink, InfluxSink):
            health_status["components"]["sink"] = await self.sink.health_check()

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status


async def main() -> int:
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")

    try:
        settings = load_settings(config_file)
    except Exception as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(settings.logging, settings.service_name)
    start_metrics_server(settings.metrics)

    service = CollectorService(settings)

    try:
        return await service.run()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        return 1


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
