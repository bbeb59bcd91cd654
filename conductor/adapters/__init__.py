"""Adapters package - Bridge between the engine and UI frontends.

Contains the orchestrator facade, the event broadcaster and the
normalized event types consumed by the HTTP bridge and client reducer.
"""
from __future__ import annotations

__all__ = [
    "Orchestrator",
    "EventBroadcaster",
    "EventQueue",
]


def __getattr__(name: str):
    # Lazy: the engine's stream adapter imports adapters.events.
    if name == "Orchestrator":
        from conductor.adapters.orchestrator import Orchestrator
        return Orchestrator
    if name == "EventBroadcaster":
        from conductor.adapters.event_bus import EventBroadcaster
        return EventBroadcaster
    if name == "EventQueue":
        from conductor.adapters.event_bus import EventQueue
        return EventQueue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
