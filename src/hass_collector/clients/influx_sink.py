"""InfluxDB sink writing one point per call."""

import logging
from typing import Any, Dict, Optional

from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

from ..config.settings import InfluxDBConfig
from ..models import DataPoint


logger = logging.getLogger(__name__)


class InfluxSink:
    """Writes data points to InfluxDB using the asyncio client."""

    def __init__(self, config: InfluxDBConfig):
        self.config = config
        self.client: Optional[InfluxDBClientAsync] = None
        self.write_api = None

        logger.info(f"InfluxSink initialized for {config.url} bucket {config.bucket}")

    async def initialize(self):
        """Create the client and verify the server answers."""
        self.client = InfluxDBClientAsync(
            url=self.config.url,
            token=self.config.token,
            org=self.config.org
        )
        self.write_api = self.client.write_api()

        if not await self.client.ping():
            logger.warning(f"InfluxDB at {self.config.url} did not answer ping")

    async def write(self, point: DataPoint):
        """
        Write a single point.

        Raises:
            Exception: Whatever the client raises on transport or API failure
        """
        if self.write_api is None:
            raise RuntimeError("InfluxDB sink not initialized")

        await self.write_api.write(bucket=self.config.bucket, org=self.config.org, record=point.to_influx())

    async def close(self):
        if self.client is not None:
            logger.info("Closing InfluxDB client")
            await self.client.close()
            self.client = None
            self.write_api = None

    async def health_check(self) -> Dict[str, Any]:
        if self.client is None:
            return {"status": "unhealthy", "error": "InfluxDB client not initialized"}

        try:
            reachable = await self.client.ping()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

        return {"status": "healthy" if reachable else "degraded"}
