"""Tests for the Home Assistant, MQTT and health check adapters."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

import paho.mqtt.client as mqtt
import pytest
from aiohttp import test_utils
from websockets.exceptions import ConnectionClosedError

from hass_collector.clients.hass_registry import HassRegistryClient, RegistryError
from hass_collector.clients.mqtt_feed import FeedError, MqttFeed
from hass_collector.config.settings import HassConfig, MqttConfig
from hass_collector.health import HealthCheckServer, build_app


def _websocket(*messages) -> Mock:
    websocket = Mock()
    websocket.recv = AsyncMock(side_effect=[json.dumps(m) if isinstance(m, dict) else m for m in messages])
    websocket.send = AsyncMock()
    websocket.close = AsyncMock()
    return websocket


AUTH = ({"type": "auth_required", "ha_version": "2024.3.0"}, {"type": "auth_ok", "ha_version": "2024.3.0"})


@pytest.mark.unit
class TestHassRegistryClient:

    @pytest.fixture
    def config(self) -> HassConfig:
        return HassConfig(host="hass.local", port=8123, token="token", request_timeout_seconds=1)

    @pytest.mark.asyncio
    async def test_lists_registry_and_skips_events(self, config):
        websocket = _websocket(
            *AUTH,
            {"type": "event", "event": {"event_type": "state_changed"}},
            {"id": 1, "type": "result", "success": True, "result": [
                {"area_id": "living_room", "name": "Living Room", "aliases": []}
            ]}
        )

        with patch("hass_collector.clients.hass_registry.websockets.connect", AsyncMock(return_value=websocket)):
            client = HassRegistryClient(config)
            areas = await client.get_area_registry()

        assert [a.name for a in areas] == ["Living Room"]
        auth_message = json.loads(websocket.send.await_args_list[0].args[0])
        assert auth_message == {"type": "auth", "access_token": "token"}
        command = json.loads(websocket.send.await_args_list[1].args[0])
        assert command == {"type": "config/area_registry/list", "id": 1}

    @pytest.mark.asyncio
    async def test_auth_rejected(self, config):
        websocket = _websocket({"type": "auth_required"}, {"type": "auth_invalid", "message": "Invalid access token"})

        with patch("hass_collector.clients.hass_registry.websockets.connect", AsyncMock(return_value=websocket)):
            client = HassRegistryClient(config)
            with pytest.raises(RegistryError, match="Invalid access token"):
                await client.connect()

        websocket.close.assert_awaited()
        assert client.websocket is None

    @pytest.mark.asyncio
    async def test_command_rejected(self, config):
        websocket = _websocket(
            *AUTH,
            {"id": 1, "type": "result", "success": False, "error": {"code": "unauthorized", "message": "Unauthorized"}}
        )

        with patch("hass_collector.clients.hass_registry.websockets.connect", AsyncMock(return_value=websocket)):
            client = HassRegistryClient(config)
            with pytest.raises(RegistryError, match="unauthorized"):
                await client.get_device_registry()

        assert client.stats["failures"] == 1

    @pytest.mark.asyncio
    async def test_connection_lost_drops_socket(self, config):
        websocket = _websocket(*AUTH, ConnectionClosedError(None, None))

        with patch("hass_collector.clients.hass_registry.websockets.connect", AsyncMock(return_value=websocket)):
            client = HassRegistryClient(config)
            with pytest.raises(RegistryError):
                await client.get_entity_registry()

        assert client.websocket is None
        assert client.health_check()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_malformed_result(self, config):
        websocket = _websocket(*AUTH, {"id": 1, "type": "result", "success": True, "result": [{"name": "no id"}]})

        with patch("hass_collector.clients.hass_registry.websockets.connect", AsyncMock(return_value=websocket)):
            client = HassRegistryClient(config)
            with pytest.raises(RegistryError, match="Malformed"):
                await client.get_device_registry()


@pytest.mark.unit
class TestMqttFeed:

    @pytest.fixture
    def feed(self):
        with patch("hass_collector.clients.mqtt_feed.mqtt.Client") as client_cls:
            client_cls.return_value = Mock()
            yield MqttFeed(MqttConfig(topic="hass/events", username="user", password="pw"), capacity=1)

    def test_credentials_applied(self, feed):
        feed.client.username_pw_set.assert_called_once_with("user", "pw")

    def test_subscribes_on_connect(self, feed):
        feed._on_connect(feed.client, None, None, Mock(is_failure=False), None)

        feed.client.subscribe.assert_called_once_with("hass/events", qos=0)
        assert feed.health_check()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_receive_before_connect(self, feed):
        with pytest.raises(FeedError):
            await feed.receive()

    @pytest.mark.asyncio
    async def test_unsubscribe_failure(self, feed):
        feed.client.unsubscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

        with pytest.raises(FeedError, match="hass/events"):
            await feed.unsubscribe()

    @pytest.mark.asyncio
    async def test_messages_apply_backpressure(self, feed):
        loop = asyncio.get_running_loop()
        await feed.connect()
        feed.client.loop_start.assert_called_once()

        first = loop.run_in_executor(None, feed._on_message, feed.client, None, Mock(payload=b"one"))
        await asyncio.wait_for(first, timeout=2)

        second = loop.run_in_executor(None, feed._on_message, feed.client, None, Mock(payload=b"two"))
        await asyncio.sleep(0.05)
        assert not second.done()

        assert await feed.receive() == b"one"
        await asyncio.wait_for(second, timeout=2)
        assert await feed.receive() == b"two"
        assert feed.stats["messages_received"] == 2

    @pytest.mark.asyncio
    async def test_close_releases_blocked_callback(self, feed):
        loop = asyncio.get_running_loop()
        await feed.connect()
        await loop.run_in_executor(None, feed._on_message, feed.client, None, Mock(payload=b"one"))

        blocked = loop.run_in_executor(None, feed._on_message, feed.client, None, Mock(payload=b"two"))
        await asyncio.sleep(0.05)
        await feed.close()

        await asyncio.wait_for(blocked, timeout=3)
        feed.client.disconnect.assert_called_once()


@pytest.mark.unit
class TestHealthEndpoints:

    @staticmethod
    def _service(status: str = "healthy", ready: bool = True) -> Mock:
        service = Mock()
        service.health_check = AsyncMock(return_value={"service": "test-collector", "status": status, "components": {}})
        service.readiness = Mock(return_value={
            "ready": ready,
            "checks": {"metadata_loaded": True, "refresher_alive": ready, "accepting_events": True},
            "snapshot_age_seconds": 1.5
        })
        return service

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [("healthy", 200), ("degraded", 503), ("unhealthy", 503)])
    async def test_health_reports_component_status(self, status, code):
        async with test_utils.TestClient(test_utils.TestServer(build_app(self._service(status)))) as client:
            response = await client.get("/health")

            assert response.status == code
            assert (await response.json())["status"] == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ready,code", [(True, 200), (False, 503)])
    async def test_ready_follows_collector_readiness(self, ready, code):
        service = self._service(ready=ready)

        async with test_utils.TestClient(test_utils.TestServer(build_app(service))) as client:
            response = await client.get("/ready")
            body = await response.json()

        assert response.status == code
        assert body["ready"] is ready
        assert body["checks"]["refresher_alive"] is ready
        service.health_check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_live(self):
        async with test_utils.TestClient(test_utils.TestServer(build_app(self._service("unhealthy")))) as client:
            response = await client.get("/live")

            assert response.status == 200
            assert (await response.json())["alive"] is True

    @pytest.mark.asyncio
    async def test_health_check_error(self):
        service = self._service()
        service.health_check = AsyncMock(side_effect=RuntimeError("boom"))

        async with test_utils.TestClient(test_utils.TestServer(build_app(service))) as client:
            response = await client.get("/health")

            assert response.status == 503
            assert (await response.json())["error"] == "boom"

    @pytest.mark.asyncio
    async def test_server_start_stop(self, unused_tcp_port):
        server = HealthCheckServer(self._service(), host="127.0.0.1", port=unused_tcp_port)

        await server.start()
        assert server.runner is not None
        await server.stop()

        assert server.runner is None
