"""
Journey CRM - Operator Registry

Config par operator (status, protection high value, fenêtre de recycling)
et règles de recycling entre operators.
Lecture majoritaire, écrit uniquement par des actions admin.
"""

import logging
from datetime import datetime
from typing import Optional, List, Callable

from journey_crm.config import now_utc
from journey_crm.errors import OperatorNotFound, InvalidOperatorConfig
from journey_crm.models import (
    Operator,
    OperatorCreate,
    OperatorUpdate,
    OperatorStatus,
    OperatorRecyclingRule,
    RecyclingRuleCreate,
)
from journey_crm.services.event_logger import log_event

logger = logging.getLogger("operator_registry")


class OperatorRegistry:

    def __init__(self, store, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.clock = clock

    async def create_operator(self, data: OperatorCreate, created_by: str = "system") -> Operator:
        """Crée un operator en status ACTIVE. Raises DuplicateOperator si slug pris."""
        now = self.clock()
        operator = Operator(
            **data.model_dump(),
            status=OperatorStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_operator(operator)

        await log_event(
            self.store,
            action="operator_created",
            entity_type="operator",
            entity_id=operator.id,
            user=created_by,
            details={"slug": operator.slug, "name": operator.name},
        )
        logger.info(f"[OPERATOR] Created {operator.slug} ({operator.id[:8]}...)")
        return operator

    async def get_operator(self, id_or_slug: str) -> Optional[Operator]:
        """Par ID ou par slug. None si introuvable."""
        operator = await self.store.get_operator(id_or_slug)
        if operator:
            return operator
        return await self.store.find_operator_by_slug(id_or_slug)

    async def require_operator(self, operator_id: str) -> Operator:
        operator = await self.store.get_operator(operator_id)
        if not operator:
            raise OperatorNotFound(operator_id)
        return operator

    async def list_operators(self, client_id: Optional[str] = None) -> List[Operator]:
        return await self.store.list_operators(client_id)

    async def update_operator_status(
        self,
        operator_id: str,
        status: OperatorStatus,
        updated_by: str = "system"
    ) -> Operator:
        current = await self.require_operator(operator_id)
        updated = await self.store.update_operator(
            operator_id, {"status": OperatorStatus(status), "updated_at": self.clock()}
        )
        if not updated:
            raise OperatorNotFound(operator_id)

        await log_event(
            self.store,
            action="operator_status_change",
            entity_type="operator",
            entity_id=operator_id,
            user=updated_by,
            details={"old_value": current.status.value, "new_value": updated.status.value},
        )
        logger.info(f"[OPERATOR] {current.slug}: {current.status.value} -> {updated.status.value}")
        return updated

    async def update_operator(
        self,
        operator_id: str,
        data: OperatorUpdate,
        updated_by: str = "system"
    ) -> Operator:
        """Met à jour la config. La fenêtre de stage est revalidée sur le résultat fusionné."""
        current = await self.require_operator(operator_id)
        fields = data.model_dump(exclude_none=True)
        if not fields:
            return current

        min_stage = fields.get("min_stage_for_recycle", current.min_stage_for_recycle)
        max_stage = fields.get("max_stage_for_recycle", current.max_stage_for_recycle)
        if min_stage > max_stage:
            raise InvalidOperatorConfig(
                f"min_stage_for_recycle ({min_stage}) must be <= max_stage_for_recycle ({max_stage})"
            )

        fields["updated_at"] = self.clock()
        updated = await self.store.update_operator(operator_id, fields)
        if not updated:
            raise OperatorNotFound(operator_id)

        await log_event(
            self.store,
            action="operator_updated",
            entity_type="operator",
            entity_id=operator_id,
            user=updated_by,
            details={k: v for k, v in fields.items() if k != "updated_at"},
        )
        return updated

    # ════════════════════════════════════════════════════════════════════════
    # RECYCLING RULES
    # ════════════════════════════════════════════════════════════════════════

    async def create_recycling_rule(
        self,
        source_operator_id: str,
        target_operator_id: str,
        options: RecyclingRuleCreate = None,
        created_by: str = "system"
    ) -> OperatorRecyclingRule:
        """Raises OperatorNotFound, InvalidOperatorConfig, DuplicateRecyclingRule"""
        if source_operator_id == target_operator_id:
            raise InvalidOperatorConfig("source and target operator must differ")

        await self.require_operator(source_operator_id)
        await self.require_operator(target_operator_id)

        rule = OperatorRecyclingRule(
            **(options or RecyclingRuleCreate()).model_dump(),
            source_operator_id=source_operator_id,
            target_operator_id=target_operator_id,
            created_at=self.clock(),
        )
        await self.store.insert_recycling_rule(rule)

        await log_event(
            self.store,
            action="recycling_rule_created",
            entity_type="recycling_rule",
            entity_id=rule.id,
            user=created_by,
            related={"source_operator_id": source_operator_id, "target_operator_id": target_operator_id},
        )
        logger.info(
            f"[OPERATOR] Rule {source_operator_id[:8]}... -> {target_operator_id[:8]}... "
            f"stages=[{rule.min_stage},{rule.max_stage}] cooldown={rule.cooldown_days}d"
        )
        return rule

    async def get_recycling_rule(self, source_operator_id: str, target_operator_id: str) -> Optional[OperatorRecyclingRule]:
        return await self.store.get_recycling_rule(source_operator_id, target_operator_id)

    async def list_active_rules(self) -> List[OperatorRecyclingRule]:
        """Règles actives, priority décroissante"""
        return await self.store.list_recycling_rules(active_only=True)
