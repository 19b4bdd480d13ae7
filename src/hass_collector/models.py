"""Data models for Home Assistant events, registry records and output points."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from influxdb_client import Point, WritePrecision
from pydantic import BaseModel, Field, model_validator


class HassState(BaseModel):
    """One entity state as carried in a state_changed event."""
    entity_id: str
    state: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    last_updated: str
    last_changed: Optional[str] = None


class EventData(BaseModel):
    """Payload of a state_changed event."""
    entity_id: str
    old_state: Optional[HassState] = None
    new_state: Optional[HassState] = None


class StateChangedEvent(BaseModel):
    """Event envelope published by the Home Assistant MQTT event stream."""
    event_type: str = "state_changed"
    event_data: EventData

    @model_validator(mode="before")
    @classmethod
    def wrap_bare_event_data(cls, data: Any) -> Any:
        # Some publishers send the event data without the envelope
        if isinstance(data, dict) and "event_data" not in data and "entity_id" in data:
            return {"event_data": data}
        return data

    @property
    def entity_id(self) -> str:
        return self.event_data.entity_id


class HassArea(BaseModel):
    """Area registry record."""
    area_id: str
    name: str


class HassDevice(BaseModel):
    """Device registry record."""
    id: str
    name: Optional[str] = None
    name_by_user: Optional[str] = None
    area_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name_by_user or self.name or self.id


class HassEntity(BaseModel):
    """Entity registry record."""
    entity_id: str
    name: Optional[str] = None
    original_name: Optional[str] = None
    device_id: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.original_name


@dataclass
class DataPoint:
    """A single time-series write: one numeric field plus string tags."""
    measurement: str
    value: float
    timestamp: datetime
    tags: Dict[str, str] = field(default_factory=dict)

    def to_influx(self) -> Point:
        """Convert to an InfluxDB client point."""
        point = Point(self.measurement)
        for key, tag_value in self.tags.items():
            point = point.tag(key, tag_value)

        return point.field("value", self.value).time(self.timestamp, WritePrecision.NS)
