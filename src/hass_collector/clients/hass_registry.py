"""Home Assistant websocket client for the area, device and entity registries."""

import asyncio
import json
import logging
from typing import Any, Dict, List, Type, TypeVar

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config.settings import HassConfig
from ..models import HassArea, HassDevice, HassEntity


logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)


class RegistryError(Exception):
    """Raised when Home Assistant rejects a request or returns malformed data."""


class HassRegistryClient:
    """
    Fetches registry listings over the Home Assistant websocket API.

    The connection is authenticated once with a long-lived token and reused; if it
    drops, the next request opens a new one.
    """

    def __init__(self, config: HassConfig):
        self.config = config
        self.websocket = None
        self._request_id = 0
        self._lock = asyncio.Lock()

        self.stats = {
            "requests": 0,
            "failures": 0,
            "connection_count": 0
        }

        logger.info(f"HassRegistryClient initialized for {config.websocket_url}")

    async def connect(self):
        """Open and authenticate the websocket connection."""
        logger.info(f"Connecting to Home Assistant at {self.config.websocket_url}")

        websocket = await websockets.connect(
            self.config.websocket_url,
            open_timeout=self.config.request_timeout_seconds,
            close_timeout=5,
            max_size=16 * 2**20  # registries of large installs exceed the 1MB default
        )

        try:
            first = json.loads(await websocket.recv())
            if first.get("type") != "auth_required":
                raise RegistryError(f"Unexpected websocket handshake: {first.get('type')}")

            await websocket.send(json.dumps({"type": "auth", "access_token": self.config.token}))
            second = json.loads(await websocket.recv())
            if second.get("type") != "auth_ok":
                raise RegistryError(f"Websocket auth failed: {second.get('message', second.get('type'))}")
        except Exception:
            await websocket.close()
            raise

        self.websocket = websocket
        self._request_id = 0
        self.stats["connection_count"] += 1
        logger.info(f"Authenticated with Home Assistant {second.get('ha_version', '')}".rstrip())

    async def close(self):
        """Close the websocket connection."""
        if self.websocket is not None:
            logger.info("Closing Home Assistant websocket connection")
            await self.websocket.close()
            self.websocket = None

    async def get_area_registry(self) -> List[HassArea]:
        return await self._list("config/area_registry/list", HassArea)

    async def get_device_registry(self) -> List[HassDevice]:
        return await self._list("config/device_registry/list", HassDevice)

    async def get_entity_registry(self) -> List[HassEntity]:
        return await self._list("config/entity_registry/list", HassEntity)

    async def _list(self, command: str, model: Type[T]) -> List[T]:
        result = await self._send_command({"type": command})
        if not isinstance(result, list):
            raise RegistryError(f"Expected a list from {command}, got {type(result).__name__}")

        try:
            return [model.model_validate(row) for row in result]
        except ValidationError as e:
            raise RegistryError(f"Malformed {command} result: {e}") from e

    async def _send_command(self, payload: Dict[str, Any]) -> Any:
        async with self._lock:
            if self.websocket is None:
                await self.connect()

            self._request_id += 1
            request_id = self._request_id
            self.stats["requests"] += 1

            try:
                response = await asyncio.wait_for(
                    self._exchange(request_id, payload),
                    timeout=self.config.request_timeout_seconds
                )
            except (ConnectionClosed, WebSocketException, asyncio.TimeoutError) as e:
                self.stats["failures"] += 1
                await self._drop_connection()
                raise RegistryError(f"Request {payload['type']} failed: {e}") from e

        if not response.get("success", False):
            self.stats["failures"] += 1
            error = response.get("error") or {}
            raise RegistryError(
                f"Home Assistant rejected {payload['type']}: "
                f"{error.get('code', 'unknown')} {error.get('message', '')}".rstrip()
            )

        return response.get("result")

    async def _exchange(self, request_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        message = dict(payload)
        message["id"] = request_id
        await self.websocket.send(json.dumps(message))

        while True:
            data = json.loads(await self.websocket.recv())
            if data.get("type") == "event":
                continue
            if data.get("id") == request_id:
                return data

    async def _drop_connection(self):
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except WebSocketException as e:
                logger.debug(f"Error closing broken websocket: {e}")

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.websocket is not None else "degraded",
            "stats": self.stats.copy()
        }
