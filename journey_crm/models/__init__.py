"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - Models Package                                                ║
║                                                                              ║
║  Exporte tous les modèles pour import facile                                 ║
║  from journey_crm.models import Operator, CustomerJourneyState, etc.         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Operator
from .operator import (
    OperatorStatus,
    Operator,
    OperatorCreate,
    OperatorUpdate,
)

# Journey state + events
from .journey import (
    JourneyType,
    MessageChannel,
    UnsubscribeScope,
    CustomerJourneyState,
    StageChanged,
    MessagingSuppressed,
)

# Recycling
from .recycling import (
    RecyclingRuleCreate,
    OperatorRecyclingRule,
    CustomerRecyclingHistory,
)

# Metrics
from .metrics import (
    COUNTER_FIELDS,
    OPERATOR_TOTAL_FIELDS,
    OperatorMetrics,
    MetricsDelta,
)

__all__ = [
    # Operator
    "OperatorStatus",
    "Operator",
    "OperatorCreate",
    "OperatorUpdate",
    # Journey
    "JourneyType",
    "MessageChannel",
    "UnsubscribeScope",
    "CustomerJourneyState",
    "StageChanged",
    "MessagingSuppressed",
    # Recycling
    "RecyclingRuleCreate",
    "OperatorRecyclingRule",
    "CustomerRecyclingHistory",
    # Metrics
    "COUNTER_FIELDS",
    "OPERATOR_TOTAL_FIELDS",
    "OperatorMetrics",
    "MetricsDelta",
]
