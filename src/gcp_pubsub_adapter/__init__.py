"""Bidirectional relay between a ClearBlade MQTT broker and Google Cloud Pub/Sub."""

__version__ = "1.0.0"
