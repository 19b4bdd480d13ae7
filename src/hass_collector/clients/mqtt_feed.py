"""MQTT feed delivering raw Home Assistant event payloads to the event loop."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from ..config.settings import MqttConfig


logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Raised when the MQTT broker rejects a feed operation."""


class MqttFeed:
    """
    Subscribes to the event topic and hands message payloads to asyncio.

    paho's network loop runs in its own thread. Each incoming payload is put on a
    bounded asyncio queue; while that queue is full the network thread waits, so a
    slow pipeline pushes back on the broker connection instead of buffering.
    """

    def __init__(self, config: MqttConfig, capacity: int = 2):
        self.config = config
        self.capacity = capacity
        self.client = self._setup_client()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._stopping = threading.Event()
        self._connected = False

        self.stats = {
            "messages_received": 0,
            "connection_count": 0,
            "disconnects": 0
        }

        logger.info(f"MqttFeed initialized for {config.host}:{config.port} topic {config.topic}")

    def _setup_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            protocol=mqtt.MQTTv311
        )

        client.on_connect = self._on_connect
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        return client

    async def connect(self):
        """Connect to the broker and start the network loop."""
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue(maxsize=self.capacity)
        self._stopping.clear()

        logger.info(f"Connecting to MQTT broker {self.config.host}:{self.config.port}")
        await self._loop.run_in_executor(
            None,
            lambda: self.client.connect(self.config.host, self.config.port, keepalive=self.config.keepalive_seconds)
        )
        self.client.loop_start()

    async def receive(self) -> bytes:
        """Wait for the next message payload."""
        if self._inbox is None:
            raise FeedError("Feed is not connected")
        return await self._inbox.get()

    async def unsubscribe(self):
        result, _ = self.client.unsubscribe(self.config.topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise FeedError(f"Failed to unsubscribe from {self.config.topic}: {mqtt.error_string(result)}")
        logger.info(f"Unsubscribed from {self.config.topic}")

    async def close(self):
        """Disconnect and stop the network thread."""
        self._stopping.set()
        self.client.disconnect()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.client.loop_stop)
        logger.info("MQTT feed closed")

    # Callbacks below run on paho's network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            return

        self._connected = True
        self.stats["connection_count"] += 1
        # Subscribing here restores the subscription after paho reconnects
        client.subscribe(self.config.topic, qos=0)
        logger.info(f"Connected to MQTT broker; subscribed to {self.config.topic}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected = False
        if self._stopping.is_set():
            return
        self.stats["disconnects"] += 1
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    def _on_message(self, client, userdata, message):
        self.stats["messages_received"] += 1
        future = asyncio.run_coroutine_threadsafe(self._inbox.put(message.payload), self._loop)

        while not self._stopping.is_set():
            try:
                future.result(timeout=1.0)
                return
            except concurrent.futures.TimeoutError:
                continue

        future.cancel()

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self._connected else "unhealthy",
            "inbox_depth": self._inbox.qsize() if self._inbox is not None else 0,
            "stats": self.stats.copy()
        }
