"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - Modèle Operator (marque casino / paris)                       ║
║                                                                              ║
║  Un operator = une marque vers laquelle le CRM pousse du trafic              ║
║  - status: ACTIVE / PAUSED / INACTIVE / TESTING                              ║
║  - Protection high value + fenêtre de stage pour le recycling                ║
║                                                                              ║
║  RÈGLE: min_stage_for_recycle <= max_stage_for_recycle                       ║
║  RÈGLE: jamais supprimé tant qu'un journey state le référence                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from journey_crm.config import now_utc


class OperatorStatus(str, Enum):
    ACTIVE = "ACTIVE"        # Recycling soumis aux fenêtres stage / délai
    PAUSED = "PAUSED"        # Tous les joueurs protégés
    INACTIVE = "INACTIVE"    # Recycling libre
    TESTING = "TESTING"      # Recycling libre


def _check_stage_window(min_stage: Optional[int], max_stage: Optional[int]):
    if min_stage is not None and max_stage is not None and min_stage > max_stage:
        raise ValueError(
            f"min_stage_for_recycle ({min_stage}) doit être <= max_stage_for_recycle ({max_stage})"
        )


class Operator(BaseModel):
    """Structure complète d'un operator en base"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    client_id: str = ""
    name: str
    slug: str
    brand: str = ""
    status: OperatorStatus = OperatorStatus.ACTIVE

    # Recycling
    protect_high_value: bool = True
    recycle_after_days: int = Field(default=30, ge=0)
    min_stage_for_recycle: int = -1
    max_stage_for_recycle: int = 2

    # Totaux cumulés (alimentés par le metrics aggregator)
    total_leads: int = 0
    total_registrations: int = 0
    total_ftd: int = 0

    # Taux qualité (recalculés)
    reg_rate: float = 0.0
    ftd_rate: float = 0.0

    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @model_validator(mode="after")
    def validate_stage_window(self):
        _check_stage_window(self.min_stage_for_recycle, self.max_stage_for_recycle)
        return self


class OperatorCreate(BaseModel):
    """
    Création d'un operator

    Exemple:
    {
        "client_id": "xxx",
        "name": "PinUp Casino",
        "slug": "pinup",
        "protect_high_value": true,
        "recycle_after_days": 14,
        "min_stage_for_recycle": -1,
        "max_stage_for_recycle": 1
    }
    """
    client_id: str = ""
    name: str
    slug: str = Field(min_length=1)
    brand: str = ""
    protect_high_value: bool = True
    recycle_after_days: int = Field(default=30, ge=0)
    min_stage_for_recycle: int = -1
    max_stage_for_recycle: int = 2

    @model_validator(mode="after")
    def validate_stage_window(self):
        _check_stage_window(self.min_stage_for_recycle, self.max_stage_for_recycle)
        return self


class OperatorUpdate(BaseModel):
    """Mise à jour de la config recycling d'un operator"""
    name: Optional[str] = None
    brand: Optional[str] = None
    protect_high_value: Optional[bool] = None
    recycle_after_days: Optional[int] = Field(default=None, ge=0)
    min_stage_for_recycle: Optional[int] = None
    max_stage_for_recycle: Optional[int] = None

    @model_validator(mode="after")
    def validate_stage_window(self):
        _check_stage_window(self.min_stage_for_recycle, self.max_stage_for_recycle)
        return self
