"""
Partition lifecycle control for TierDB.

LifecycleController.tick() seals, archives, and retires partitions by
policy. It is driven by an external scheduler.
"""

from .controller import LifecycleController, TickResult

__all__ = ["LifecycleController", "TickResult"]
