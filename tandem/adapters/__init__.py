"""Adapters package - bridge between assistant backends and the session engine.

This package contains the typed stream events, the event bus, the
stream-json parser and the durable permission policy store.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "PermissionPolicyStore",
    "StreamJsonParser",
    "dict_to_event",
    "event_to_dict",
]

from tandem.adapters.events import dict_to_event, event_to_dict
from tandem.adapters.event_bus import EventBus
from tandem.adapters.stream_parser import StreamJsonParser
from tandem.adapters.permission_store import PermissionPolicyStore
