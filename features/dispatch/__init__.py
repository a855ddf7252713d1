"""
Dispatch feature — queueing agent runs and consuming them.

Public API:
    from features.dispatch import DispatchMessage, TemporalDispatchQueue, AgentDispatcher
"""

from features.dispatch.queue import (
    DISPATCH_WORKFLOW,
    DispatchMessage,
    DispatchQueue,
    InProcessDispatchQueue,
    TemporalDispatchQueue,
    dedup_key,
)
from features.dispatch.consumer import AgentDispatcher, completion_status

__all__ = [
    "AgentDispatcher",
    "DISPATCH_WORKFLOW",
    "DispatchMessage",
    "DispatchQueue",
    "InProcessDispatchQueue",
    "TemporalDispatchQueue",
    "completion_status",
    "dedup_key",
]
