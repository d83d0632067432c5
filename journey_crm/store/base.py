"""
Journey CRM - Store interface

Repository injecté dans chaque service (jamais de client global).
Deux implémentations: InMemoryStore (tests, embarqué) et MongoStore (motor).
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Optional, List, Dict, Any

from journey_crm.models import (
    Operator,
    CustomerJourneyState,
    OperatorRecyclingRule,
    CustomerRecyclingHistory,
    OperatorMetrics,
)


class JourneyStore(ABC):

    # ---- Operators ----

    @abstractmethod
    async def insert_operator(self, operator: Operator) -> Operator:
        """Raises DuplicateOperator si le slug existe déjà"""

    @abstractmethod
    async def get_operator(self, operator_id: str) -> Optional[Operator]:
        ...

    @abstractmethod
    async def find_operator_by_slug(self, slug: str) -> Optional[Operator]:
        ...

    @abstractmethod
    async def list_operators(self, client_id: Optional[str] = None) -> List[Operator]:
        """Plus récents d'abord"""

    @abstractmethod
    async def update_operator(self, operator_id: str, fields: Dict[str, Any]) -> Optional[Operator]:
        ...

    @abstractmethod
    async def increment_operator_totals(self, operator_id: str, deltas: Dict[str, int]) -> Optional[Operator]:
        """$inc atomique sur total_leads / total_registrations / total_ftd"""

    # ---- Journey states ----

    @abstractmethod
    async def get_journey_state(self, customer_id: str, operator_id: str) -> Optional[CustomerJourneyState]:
        ...

    @abstractmethod
    async def insert_journey_state(self, state: CustomerJourneyState) -> CustomerJourneyState:
        """Raises DuplicateJourneyState si (customer_id, operator_id) existe"""

    @abstractmethod
    async def replace_journey_state(self, state: CustomerJourneyState, expected_version: int) -> bool:
        """
        Compare-and-swap: écrit `state` seulement si la version stockée vaut
        encore `expected_version`. Retourne False sinon (écriture concurrente).
        """

    @abstractmethod
    async def list_journey_states(self, operator_id: str, limit: int) -> List[CustomerJourneyState]:
        """Ordre: updated_at décroissant (plus récemment mis à jour d'abord)"""

    @abstractmethod
    async def count_journey_states_by_stage(self, operator_id: Optional[str] = None) -> Dict[int, int]:
        ...

    # ---- Recycling rules ----

    @abstractmethod
    async def insert_recycling_rule(self, rule: OperatorRecyclingRule) -> OperatorRecyclingRule:
        """Raises DuplicateRecyclingRule si le couple existe"""

    @abstractmethod
    async def get_recycling_rule(self, source_operator_id: str, target_operator_id: str) -> Optional[OperatorRecyclingRule]:
        ...

    @abstractmethod
    async def list_recycling_rules(self, active_only: bool = True) -> List[OperatorRecyclingRule]:
        """Ordre: priority décroissante"""

    # ---- Recycling history (append-only) ----

    @abstractmethod
    async def insert_recycling_history(self, entry: CustomerRecyclingHistory) -> CustomerRecyclingHistory:
        ...

    @abstractmethod
    async def count_recycling_history(self, customer_id: str, from_operator_id: str, to_operator_id: str) -> int:
        ...

    @abstractmethod
    async def latest_recycling_history(
        self, customer_id: str, from_operator_id: str, to_operator_id: str
    ) -> Optional[CustomerRecyclingHistory]:
        ...

    # ---- Metrics ----

    @abstractmethod
    async def increment_metrics(self, operator_id: str, day: str, deltas: Dict[str, Any]) -> OperatorMetrics:
        """Upsert de la ligne (operator_id, day) + $inc des compteurs fournis"""

    @abstractmethod
    async def list_metrics(self, operator_id: str, since: str) -> List[OperatorMetrics]:
        """Lignes avec date >= since, ordre chronologique"""

    # ---- Audit ----

    @abstractmethod
    async def insert_event_log(self, document: Dict[str, Any]) -> None:
        ...

    # ---- Locking ----

    @abstractmethod
    def lock(self, key: str) -> AbstractAsyncContextManager:
        """Section critique exclusive pour `key` (tous appelants confondus)"""

    async def close(self):
        return None


def day_key(moment: datetime) -> str:
    """Clé de jour des métriques (YYYY-MM-DD)"""
    return moment.date().isoformat()
