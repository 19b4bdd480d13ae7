"""Configuration settings using Pydantic for validation."""

import os
import re
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..filter import DefaultFilter, EntityFilter, IndividualEntityFilter


class HassConfig(BaseModel):
    """Home Assistant websocket API configuration."""
    host: str = Field(default="localhost", description="Home Assistant host")
    port: int = Field(default=80, description="Home Assistant port")
    token: str = Field(default="", description="Long-lived access token")
    use_tls: bool = Field(default=False, description="Connect with wss:// instead of ws://")
    request_timeout_seconds: float = Field(default=10.0, description="Websocket open/command timeout")
    refresh_interval_seconds: float = Field(default=10.0, description="Metadata refresh interval")
    max_refresh_failures: int = Field(default=4, description="Consecutive refresh failures tolerated")

    @property
    def websocket_url(self) -> str:
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{self.host}:{self.port}/api/websocket"


class MqttConfig(BaseModel):
    """MQTT broker configuration."""
    host: str = Field(default="localhost", description="MQTT broker host")
    port: int = Field(default=1883, description="MQTT broker port")
    topic: str = Field(default="homeassistant/events", description="Topic carrying state_changed events")
    client_id: str = Field(default="collector", description="MQTT client identifier")
    keepalive_seconds: int = Field(default=30, description="MQTT keep-alive interval")
    username: Optional[str] = Field(default=None, description="MQTT username")
    password: Optional[str] = Field(default=None, description="MQTT password")


class InfluxDBConfig(BaseModel):
    """InfluxDB sink configuration."""
    url: str = Field(default="http://localhost:8086", description="InfluxDB base URL")
    token: str = Field(default="", description="API token, or 'user:password' for 1.8 compatibility")
    org: str = Field(default="-", description="Organization")
    bucket: str = Field(default="hass", description="Bucket, or 'database/retention' for 1.8")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")


class HealthConfig(BaseModel):
    """Health check service configuration."""
    enabled: bool = Field(default=True, description="Serve health endpoints")
    host: str = Field(default="0.0.0.0", description="Health check server host")
    port: int = Field(default=8080, description="Health check server port")


class MetricsConfig(BaseModel):
    """Metrics configuration."""
    enable_prometheus: bool = Field(default=True, description="Enable Prometheus metrics")
    prometheus_port: int = Field(default=8081, description="Prometheus metrics port")


class CollectorSettings(BaseSettings):
    """Main collector service settings."""

    service_name: str = Field(default="hass-collector", description="Service name")

    hass: HassConfig = Field(default_factory=HassConfig)
    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    influxdb: InfluxDBConfig = Field(default_factory=InfluxDBConfig)

    # With "allow", entities matching entity_filter are dropped; with "deny", only they are kept
    default_filter: DefaultFilter = Field(default=DefaultFilter.ALLOW, description="allow or deny")
    entity_filter: List[IndividualEntityFilter] = Field(default_factory=list, description="Filter rules")
    workers: int = Field(default=1, ge=1, le=255, description="Dispatch worker count")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator('entity_filter', mode='before')
    @classmethod
    def decode_entity_filter(cls, v):
        if isinstance(v, (str, bytes)):
            return list(EntityFilter.from_json(v).rules)
        return v

    @field_validator('logging')
    @classmethod
    def validate_log_format(cls, v: LoggingConfig):
        if v.format.lower() not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v

    @property
    def queue_capacity(self) -> int:
        return self.workers * 2

    def build_entity_filter(self) -> EntityFilter:
        return EntityFilter(self.entity_filter)


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)

            var_name = var_expr.strip()
            value = os.getenv(var_name)
            if value is None:
                raise ValueError(f"Required environment variable '{var_name}' is not set")
            return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> CollectorSettings:
    """
    Load settings from an optional YAML file and environment variables.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        CollectorSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing or values are invalid
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return CollectorSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return CollectorSettings()
