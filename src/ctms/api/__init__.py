"""CTMS API."""

from ctms.api.realtime import ws_router
from ctms.api.router import router

__all__ = ["router", "ws_router"]
