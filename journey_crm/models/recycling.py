"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - Recycling (règles + historique)                               ║
║                                                                              ║
║  OperatorRecyclingRule: une règle par couple (source, target), optionnelle   ║
║  CustomerRecyclingHistory: APPEND-ONLY, jamais modifié ni supprimé           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from journey_crm.config import now_utc


class RecyclingRuleCreate(BaseModel):
    """
    Création d'une règle de recycling source -> target

    Exemple:
    {
        "min_stage": 0,
        "max_stage": 2,
        "cooldown_days": 30,
        "max_recycles_per_user": 2
    }
    """
    min_stage: int = -1
    max_stage: int = 2
    exclude_high_value: bool = True
    min_days_since_last_deposit: int = Field(default=30, ge=0)
    max_recycles_per_user: int = Field(default=1, ge=0)
    cooldown_days: int = Field(default=90, ge=0)
    is_active: bool = True
    priority: int = 0

    @model_validator(mode="after")
    def validate_stage_window(self):
        if self.min_stage > self.max_stage:
            raise ValueError(f"min_stage ({self.min_stage}) doit être <= max_stage ({self.max_stage})")
        return self


class OperatorRecyclingRule(RecyclingRuleCreate):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_operator_id: str
    target_operator_id: str
    created_at: datetime = Field(default_factory=now_utc)


class CustomerRecyclingHistory(BaseModel):
    """Une ligne = un recycle exécuté"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: str
    from_operator_id: str
    to_operator_id: str
    stage_at_recycle: int
    days_since_deposit: Optional[int] = None
    last_deposit_amount: Optional[Decimal] = None
    recycled_at: datetime = Field(default_factory=now_utc)
