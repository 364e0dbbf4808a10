"""Realtime delivery to connected clients."""

from ctms.realtime.broadcaster import ConnectionManager, EventPublisher, connection_manager

__all__ = ["ConnectionManager", "EventPublisher", "connection_manager"]
