"""
Metric registry: stored values and the update loops that refresh them.
"""

from .value import Value, new_value
from .loop import UpdateLoop, LoopState, MetricComputation
from .store import MetricRegistry, NAMESPACE_ALL, NAMESPACE_DEFAULT

__all__ = [
    "Value",
    "new_value",
    "UpdateLoop",
    "LoopState",
    "MetricComputation",
    "MetricRegistry",
    "NAMESPACE_ALL",
    "NAMESPACE_DEFAULT",
]
