"""Metric definitions for room synchronization."""

from __future__ import annotations

from .registry import registry

playback_updates_total = registry.counter(
    "playback_updates_total",
    "Playback state updates handled by synchronizers.",
    label_names=("direction", "outcome"),
)

widget_commands_total = registry.counter(
    "widget_commands_total",
    "Commands issued to the video widget.",
    label_names=("command", "outcome"),
)

store_errors_total = registry.counter(
    "store_errors_total",
    "Failed operations against the realtime store.",
    label_names=("operation",),
)

store_recoveries_total = registry.counter(
    "store_recoveries_total",
    "Number of realtime store reconnections.",
    label_names=("backend", "reason"),
)

room_sessions_active = registry.gauge(
    "room_sessions_active",
    "Room sessions currently joined by this process.",
)

rooms_reaped_total = registry.counter(
    "rooms_reaped_total",
    "Outcome of stale room checks performed by the reaper.",
    label_names=("outcome",),
)
