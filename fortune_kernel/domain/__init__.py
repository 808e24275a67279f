"""Pure domain helpers shared by the batch layer (time abstraction)."""

from fortune_kernel.domain.clock import Clock, DeterministicClock, SystemClock, local_today

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "local_today",
]
