"""
Journey CRM - In-memory store

Même contrat que MongoStore, sur des dicts. Les objets sont copiés à
l'entrée et à la sortie: un appelant ne peut pas modifier le store par alias.
Utilisé par les tests et pour embarquer le moteur sans base.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from journey_crm.errors import DuplicateJourneyState, DuplicateOperator, DuplicateRecyclingRule
from journey_crm.models import (
    Operator,
    CustomerJourneyState,
    OperatorRecyclingRule,
    CustomerRecyclingHistory,
    OperatorMetrics,
)
from journey_crm.store.base import JourneyStore


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryStore(JourneyStore):

    def __init__(self):
        self.operators: Dict[str, Operator] = {}
        self.journey_states: Dict[Tuple[str, str], CustomerJourneyState] = {}
        self.recycling_rules: Dict[Tuple[str, str], OperatorRecyclingRule] = {}
        self.recycling_history: List[CustomerRecyclingHistory] = []
        self.metrics: Dict[Tuple[str, str], OperatorMetrics] = {}
        self.event_log: List[Dict[str, Any]] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    # ---- Operators ----

    async def insert_operator(self, operator: Operator) -> Operator:
        if any(o.slug == operator.slug for o in self.operators.values()):
            raise DuplicateOperator(operator.slug)
        self.operators[operator.id] = _copy(operator)
        return _copy(operator)

    async def get_operator(self, operator_id: str) -> Optional[Operator]:
        return _copy(self.operators.get(operator_id))

    async def find_operator_by_slug(self, slug: str) -> Optional[Operator]:
        for operator in self.operators.values():
            if operator.slug == slug:
                return _copy(operator)
        return None

    async def list_operators(self, client_id: Optional[str] = None) -> List[Operator]:
        operators = [
            o for o in self.operators.values()
            if client_id is None or o.client_id == client_id
        ]
        operators.sort(key=lambda o: o.created_at, reverse=True)
        return [_copy(o) for o in operators]

    async def update_operator(self, operator_id: str, fields: Dict[str, Any]) -> Optional[Operator]:
        operator = self.operators.get(operator_id)
        if not operator:
            return None
        updated = operator.model_copy(update=fields, deep=True)
        self.operators[operator_id] = updated
        return _copy(updated)

    async def increment_operator_totals(self, operator_id: str, deltas: Dict[str, int]) -> Optional[Operator]:
        operator = self.operators.get(operator_id)
        if not operator:
            return None
        for field, value in deltas.items():
            setattr(operator, field, getattr(operator, field) + value)
        return _copy(operator)

    # ---- Journey states ----

    async def get_journey_state(self, customer_id: str, operator_id: str) -> Optional[CustomerJourneyState]:
        return _copy(self.journey_states.get((customer_id, operator_id)))

    async def insert_journey_state(self, state: CustomerJourneyState) -> CustomerJourneyState:
        key = (state.customer_id, state.operator_id)
        if key in self.journey_states:
            raise DuplicateJourneyState(state.customer_id, state.operator_id)
        self.journey_states[key] = _copy(state)
        return _copy(state)

    async def replace_journey_state(self, state: CustomerJourneyState, expected_version: int) -> bool:
        key = (state.customer_id, state.operator_id)
        current = self.journey_states.get(key)
        if current is None or current.version != expected_version:
            return False
        self.journey_states[key] = _copy(state)
        return True

    async def list_journey_states(self, operator_id: str, limit: int) -> List[CustomerJourneyState]:
        states = [s for s in self.journey_states.values() if s.operator_id == operator_id]
        states.sort(key=lambda s: s.updated_at, reverse=True)
        return [_copy(s) for s in states[:limit]]

    async def count_journey_states_by_stage(self, operator_id: Optional[str] = None) -> Dict[int, int]:
        counts: Dict[int, int] = defaultdict(int)
        for state in self.journey_states.values():
            if operator_id is None or state.operator_id == operator_id:
                counts[state.stage] += 1
        return dict(counts)

    # ---- Recycling rules ----

    async def insert_recycling_rule(self, rule: OperatorRecyclingRule) -> OperatorRecyclingRule:
        key = (rule.source_operator_id, rule.target_operator_id)
        if key in self.recycling_rules:
            raise DuplicateRecyclingRule(*key)
        self.recycling_rules[key] = _copy(rule)
        return _copy(rule)

    async def get_recycling_rule(self, source_operator_id: str, target_operator_id: str) -> Optional[OperatorRecyclingRule]:
        return _copy(self.recycling_rules.get((source_operator_id, target_operator_id)))

    async def list_recycling_rules(self, active_only: bool = True) -> List[OperatorRecyclingRule]:
        rules = [r for r in self.recycling_rules.values() if r.is_active or not active_only]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return [_copy(r) for r in rules]

    # ---- Recycling history ----

    def _history_for(self, customer_id, from_operator_id, to_operator_id):
        return [
            h for h in self.recycling_history
            if h.customer_id == customer_id
            and h.from_operator_id == from_operator_id
            and h.to_operator_id == to_operator_id
        ]

    async def insert_recycling_history(self, entry: CustomerRecyclingHistory) -> CustomerRecyclingHistory:
        self.recycling_history.append(_copy(entry))
        return _copy(entry)

    async def count_recycling_history(self, customer_id: str, from_operator_id: str, to_operator_id: str) -> int:
        return len(self._history_for(customer_id, from_operator_id, to_operator_id))

    async def latest_recycling_history(
        self, customer_id: str, from_operator_id: str, to_operator_id: str
    ) -> Optional[CustomerRecyclingHistory]:
        rows = self._history_for(customer_id, from_operator_id, to_operator_id)
        if not rows:
            return None
        return _copy(max(rows, key=lambda h: h.recycled_at))

    # ---- Metrics ----

    async def increment_metrics(self, operator_id: str, day: str, deltas: Dict[str, Any]) -> OperatorMetrics:
        key = (operator_id, day)
        row = self.metrics.get(key)
        if row is None:
            row = OperatorMetrics(operator_id=operator_id, date=day)
            self.metrics[key] = row
        for field, value in deltas.items():
            if field == "revenue":
                row.revenue = row.revenue + Decimal(value)
            else:
                setattr(row, field, getattr(row, field) + value)
        return _copy(row)

    async def list_metrics(self, operator_id: str, since: str) -> List[OperatorMetrics]:
        rows = [
            m for (op_id, day), m in self.metrics.items()
            if op_id == operator_id and day >= since
        ]
        rows.sort(key=lambda m: m.date)
        return [_copy(m) for m in rows]

    # ---- Audit ----

    async def insert_event_log(self, document: Dict[str, Any]) -> None:
        self.event_log.append(dict(document))

    # ---- Locking ----

    @asynccontextmanager
    async def lock(self, key: str):
        """Lock par clé, retiré dès que plus personne ne le détient ni ne l'attend"""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]
