"""Configuration for the collector service."""
