"""Adapters package - Bridge between the engine and its frontends.

This package contains the typed event model and the event bus that
connect the dev server registry to the HTTP/SSE server and the CLI.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "DevServerEvent",
    "event_to_dict",
    "dict_to_event",
]

from devserve.adapters.event_bus import EventBus
from devserve.adapters.events import DevServerEvent, dict_to_event, event_to_dict
