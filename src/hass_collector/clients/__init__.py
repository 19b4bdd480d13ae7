"""Adapters for the MQTT feed, Home Assistant registry and InfluxDB sink."""
