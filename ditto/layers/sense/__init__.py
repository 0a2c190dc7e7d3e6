"""Sense Layer - element capture and context traversal."""

from ditto.layers.sense.bundle import BoundingBox, ElementBundle, FrameDescriptor
from ditto.layers.sense.context_tracker import ContextTracker, ExecutionContext
from ditto.layers.sense.labels import derive_label
from ditto.layers.sense.locator_generator import LocatorGenerator

__all__ = [
    "BoundingBox",
    "ElementBundle",
    "FrameDescriptor",
    "ContextTracker",
    "ExecutionContext",
    "derive_label",
    "LocatorGenerator",
]
