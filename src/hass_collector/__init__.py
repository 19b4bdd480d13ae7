"""
Home Assistant Collector - state-change events to time-series points.

Consumes Home Assistant state-change events from MQTT, filters and enriches them with
entity/device/area registry metadata, and writes numeric points to InfluxDB.
"""

__version__ = "1.0.0"
__author__ = "Home Metrics Team"
