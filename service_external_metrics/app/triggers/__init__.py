"""
Trigger sources for metric update loops.
"""

from .sources import TriggerContext, TriggerSource, IntervalTrigger, EventTrigger, tick

__all__ = ["TriggerContext", "TriggerSource", "IntervalTrigger", "EventTrigger", "tick"]
