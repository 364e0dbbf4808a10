"""CTMS background tasks."""

from ctms.tasks.side_effects import (
    SideEffectJob,
    SideEffectQueue,
    get_side_effect_queue,
    start_side_effects,
    stop_side_effects,
)

__all__ = [
    "SideEffectJob",
    "SideEffectQueue",
    "get_side_effect_queue",
    "start_side_effects",
    "stop_side_effects",
]
