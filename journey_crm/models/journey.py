"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - Modèle CustomerJourneyState                                   ║
║                                                                              ║
║  RÈGLES FONDAMENTALES:                                                       ║
║  1. UN SEUL state par (customer_id, operator_id)                             ║
║  2. stage: -1 non inscrit, 0 inscrit, 1 FTD, 2 second dépôt, 3+ high value  ║
║  3. stage, deposit_count, total_deposit_value ne décroissent jamais          ║
║  4. ACQUISITION -> RETENTION au premier dépôt, une seule fois                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from journey_crm.config import now_utc, UNREGISTERED_STAGE


class JourneyType(str, Enum):
    ACQUISITION = "ACQUISITION"   # Pré-dépôt
    RETENTION = "RETENTION"       # Post-dépôt


class MessageChannel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class UnsubscribeScope(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    GLOBAL = "global"


class CustomerJourneyState(BaseModel):
    """
    State d'un customer chez un operator.
    `version` est incrémenté à chaque écriture (compare-and-swap).
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: str
    operator_id: str

    stage: int = Field(default=UNREGISTERED_STAGE, ge=UNREGISTERED_STAGE)
    current_journey: Optional[JourneyType] = None

    # Dépôts
    deposit_count: int = Field(default=0, ge=0)
    total_deposit_value: Decimal = Decimal("0")
    last_deposit_amount: Optional[Decimal] = None
    last_deposit_at: Optional[datetime] = None

    # Compteurs messaging
    email_count: int = 0
    sms_count: int = 0
    last_email_at: Optional[datetime] = None
    last_sms_at: Optional[datetime] = None

    # Désinscriptions
    unsub_email: bool = False
    unsub_sms: bool = False
    unsub_global: bool = False

    version: int = 0
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


# ==================== EVENTS (consommés par la couche messaging) ====================

class StageChanged(BaseModel):
    """
    Émis à chaque changement de stage ou de journey.
    journey_switch=True => annuler les messages ACQUISITION en attente.
    """
    customer_id: str
    operator_id: str
    old_stage: int
    new_stage: int
    old_journey: Optional[JourneyType] = None
    new_journey: Optional[JourneyType] = None
    journey_switch: bool = False
    occurred_at: datetime = Field(default_factory=now_utc)


class MessagingSuppressed(BaseModel):
    """Émis sur désinscription: annuler les messages en attente pour ce scope"""
    customer_id: str
    operator_id: str
    scope: UnsubscribeScope
    occurred_at: datetime = Field(default_factory=now_utc)
