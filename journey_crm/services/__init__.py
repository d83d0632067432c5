"""
Journey CRM - Services

Chaque service reçoit le store (et une horloge) à la construction.
Aucun client DB global.
"""

from .event_bus import EventBus, RecordingEventBus
from .event_logger import log_event
from .journey_state_machine import JourneyStateMachine, TransitionResult
from .message_policy import MessagePolicy, MessagePermission
from .metrics_aggregator import MetricsAggregator
from .operator_registry import OperatorRegistry
from .recycling_engine import RecyclingEngine, EligibilityResult, EligibleCustomer, RecycleResult

__all__ = [
    "EventBus",
    "RecordingEventBus",
    "log_event",
    "JourneyStateMachine",
    "TransitionResult",
    "MessagePolicy",
    "MessagePermission",
    "MetricsAggregator",
    "OperatorRegistry",
    "RecyclingEngine",
    "EligibilityResult",
    "EligibleCustomer",
    "RecycleResult",
]
