"""
Journey CRM - Métriques journalières par operator
Une ligne par (operator_id, date). Upsert incrémental, jamais réécrit.
"""

import uuid
from decimal import Decimal
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field


COUNTER_FIELDS = (
    "leads",
    "registrations",
    "ftd",
    "deposits",
    "journeys_started",
    "messages_sent",
    "messages_failed",
    "recycled_in",
    "recycled_out",
)

# Champs des métriques reportés sur les totaux de l'operator
OPERATOR_TOTAL_FIELDS = {
    "leads": "total_leads",
    "registrations": "total_registrations",
    "ftd": "total_ftd",
}


class OperatorMetrics(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operator_id: str
    date: str  # YYYY-MM-DD
    leads: int = 0
    registrations: int = 0
    ftd: int = 0
    deposits: int = 0
    revenue: Decimal = Decimal("0")
    journeys_started: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    recycled_in: int = 0
    recycled_out: int = 0


class MetricsDelta(BaseModel):
    """Incréments à appliquer. Champ absent = +0"""
    leads: Optional[int] = Field(default=None, ge=0)
    registrations: Optional[int] = Field(default=None, ge=0)
    ftd: Optional[int] = Field(default=None, ge=0)
    deposits: Optional[int] = Field(default=None, ge=0)
    revenue: Optional[Decimal] = None
    journeys_started: Optional[int] = Field(default=None, ge=0)
    messages_sent: Optional[int] = Field(default=None, ge=0)
    messages_failed: Optional[int] = Field(default=None, ge=0)
    recycled_in: Optional[int] = Field(default=None, ge=0)
    recycled_out: Optional[int] = Field(default=None, ge=0)

    def increments(self) -> Dict[str, Any]:
        """Seulement les champs fournis et non nuls"""
        return {k: v for k, v in self.model_dump(exclude_none=True).items() if v}
