"""
Journey CRM - Moteur de Recycling

Transfert d'un customer d'un operator source vers un operator target.

ORDRE DES CONTRÔLES (le premier qui échoue donne la raison):
1. Pas de journey chez la source        → éligible (rien à protéger)
2. Operator source introuvable           → refus
3. protect_high_value et stage >= 3      → refus
4. Source ACTIVE: fenêtre de stage, délai depuis dernier dépôt
5. Source PAUSED                         → refus (tous protégés)
   (INACTIVE / TESTING: pas de contrôle operator)
6. Règle source->target active: stage, high value, délai, plafond, cooldown
7. Journey déjà existant chez la target  → refus
8. Sinon éligible

L'évaluation est en lecture seule. Seul recycle() écrit (historique),
sous lock (customer, from, to) et après ré-évaluation.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable

from journey_crm.config import now_utc, days_between, HIGH_VALUE_STAGE, UNREGISTERED_STAGE
from journey_crm.errors import NotEligible
from journey_crm.models import (
    CustomerJourneyState,
    CustomerRecyclingHistory,
    MetricsDelta,
    OperatorStatus,
)
from journey_crm.services.event_logger import log_event

logger = logging.getLogger("recycling_engine")


REASON_NO_SOURCE_JOURNEY = "no journey with current operator"
REASON_OPERATOR_NOT_FOUND = "operator not found"
REASON_HIGH_VALUE_PROTECTED = "high-value player protected"
REASON_OPERATOR_PAUSED = "operator paused - all players protected"
REASON_HIGH_VALUE_EXCLUDED = "high-value player excluded by rule"
REASON_TARGET_JOURNEY_EXISTS = "already has journey with target operator"


class EligibilityResult:
    """Résultat d'une évaluation de recycling"""

    def __init__(
        self,
        eligible: bool,
        reason: Optional[str] = None,
        stage: Optional[int] = None,
        days_since_deposit: Optional[int] = None,
        recycle_count: Optional[int] = None
    ):
        self.eligible = eligible
        self.reason = reason
        self.stage = stage
        self.days_since_deposit = days_since_deposit
        self.recycle_count = recycle_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "stage": self.stage,
            "days_since_deposit": self.days_since_deposit,
            "recycle_count": self.recycle_count,
        }

    def __repr__(self):
        return f"EligibilityResult(eligible={self.eligible}, reason={self.reason!r})"


class EligibleCustomer:

    def __init__(self, customer_id: str, journey_state: CustomerJourneyState, eligibility: EligibilityResult):
        self.customer_id = customer_id
        self.journey_state = journey_state
        self.eligibility = eligibility

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "journey_state": self.journey_state.model_dump(mode="json"),
            "eligibility": self.eligibility.to_dict(),
        }


class RecycleResult:

    def __init__(self, history: CustomerRecyclingHistory, eligibility: EligibilityResult):
        self.success = True
        self.history = history
        self.eligibility = eligibility

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "history": self.history.model_dump(mode="json"),
            "eligibility": self.eligibility.to_dict(),
        }


class RecyclingEngine:

    def __init__(self, store, clock: Callable[[], datetime] = now_utc, metrics=None):
        self.store = store
        self.clock = clock
        self.metrics = metrics

    # ════════════════════════════════════════════════════════════════════════
    # ÉVALUATION (lecture seule)
    # ════════════════════════════════════════════════════════════════════════

    async def evaluate(
        self,
        customer_id: str,
        source_operator_id: str,
        target_operator_id: str
    ) -> EligibilityResult:
        now = self.clock()

        # 1. Journey chez la source ?
        state = await self.store.get_journey_state(customer_id, source_operator_id)
        if not state:
            return EligibilityResult(True, REASON_NO_SOURCE_JOURNEY)

        stage = state.stage
        days_since_deposit = (
            days_between(state.last_deposit_at, now) if state.last_deposit_at is not None else None
        )

        # 2. Config operator source
        operator = await self.store.get_operator(source_operator_id)
        if not operator:
            return EligibilityResult(False, REASON_OPERATOR_NOT_FOUND, stage=stage)

        # 3. Protection high value
        if operator.protect_high_value and stage >= HIGH_VALUE_STAGE:
            return EligibilityResult(False, REASON_HIGH_VALUE_PROTECTED, stage=stage)

        # 4-5. Status operator
        if operator.status == OperatorStatus.ACTIVE:
            if stage < operator.min_stage_for_recycle or stage > operator.max_stage_for_recycle:
                return EligibilityResult(
                    False, f"stage {stage} not eligible for recycling", stage=stage
                )
            if days_since_deposit is not None and days_since_deposit < operator.recycle_after_days:
                return EligibilityResult(
                    False,
                    f"must wait {operator.recycle_after_days} days since last deposit",
                    stage=stage,
                    days_since_deposit=days_since_deposit,
                )
        elif operator.status == OperatorStatus.PAUSED:
            return EligibilityResult(False, REASON_OPERATOR_PAUSED, stage=stage)

        # 6. Règle source -> target
        recycle_count = None
        rule = await self.store.get_recycling_rule(source_operator_id, target_operator_id)
        if rule and rule.is_active:
            if stage < rule.min_stage or stage > rule.max_stage:
                return EligibilityResult(
                    False, f"stage {stage} not eligible per recycling rule", stage=stage
                )

            if rule.exclude_high_value and stage >= HIGH_VALUE_STAGE:
                return EligibilityResult(False, REASON_HIGH_VALUE_EXCLUDED, stage=stage)

            if days_since_deposit is not None and days_since_deposit < rule.min_days_since_last_deposit:
                return EligibilityResult(
                    False,
                    f"must wait {rule.min_days_since_last_deposit} days since last deposit per recycling rule",
                    stage=stage,
                    days_since_deposit=days_since_deposit,
                )

            recycle_count = await self.store.count_recycling_history(
                customer_id, source_operator_id, target_operator_id
            )
            if recycle_count >= rule.max_recycles_per_user:
                return EligibilityResult(
                    False,
                    f"max recycles ({rule.max_recycles_per_user}) reached with {recycle_count} prior recycles",
                    stage=stage,
                    recycle_count=recycle_count,
                )

            last_recycle = await self.store.latest_recycling_history(
                customer_id, source_operator_id, target_operator_id
            )
            if last_recycle and days_between(last_recycle.recycled_at, now) < rule.cooldown_days:
                return EligibilityResult(
                    False,
                    f"must wait {rule.cooldown_days} days between recycles",
                    stage=stage,
                    recycle_count=recycle_count,
                )

        # 7. Un seul journey par (customer, operator)
        target_state = await self.store.get_journey_state(customer_id, target_operator_id)
        if target_state:
            return EligibilityResult(False, REASON_TARGET_JOURNEY_EXISTS, stage=stage)

        # 8. OK
        return EligibilityResult(
            True,
            stage=stage,
            days_since_deposit=days_since_deposit,
            recycle_count=recycle_count,
        )

    # ════════════════════════════════════════════════════════════════════════
    # BATCH FINDER
    # ════════════════════════════════════════════════════════════════════════

    async def find_eligible(
        self,
        source_operator_id: str,
        target_operator_id: str,
        limit: int = 100
    ) -> List[EligibleCustomer]:
        """
        Candidats = journey states de la source, plus récemment mis à jour d'abord.
        Sur-échantillonnage x2 pour compenser les refus.
        """
        if limit <= 0:
            return []

        states = await self.store.list_journey_states(source_operator_id, limit * 2)
        eligible = []

        for state in states:
            eligibility = await self.evaluate(state.customer_id, source_operator_id, target_operator_id)
            if not eligibility.eligible:
                continue
            eligible.append(EligibleCustomer(state.customer_id, state, eligibility))
            if len(eligible) >= limit:
                break

        logger.info(
            f"[RECYCLE] {source_operator_id[:8]}... -> {target_operator_id[:8]}...: "
            f"{len(eligible)} eligible / {len(states)} candidates (limit={limit})"
        )
        return eligible

    # ════════════════════════════════════════════════════════════════════════
    # EXECUTOR
    # ════════════════════════════════════════════════════════════════════════

    async def recycle(
        self,
        customer_id: str,
        from_operator_id: str,
        to_operator_id: str
    ) -> RecycleResult:
        """
        Ré-évalue sous lock puis écrit l'historique.
        Raises NotEligible sans aucune écriture.
        Le journey chez la target est créé par l'appelant (journey start).
        """
        async with self.store.lock(f"recycle:{customer_id}:{from_operator_id}:{to_operator_id}"):
            eligibility = await self.evaluate(customer_id, from_operator_id, to_operator_id)
            if not eligibility.eligible:
                logger.info(
                    f"[RECYCLE] REFUSED customer={customer_id} "
                    f"{from_operator_id[:8]}... -> {to_operator_id[:8]}...: {eligibility.reason}"
                )
                raise NotEligible(eligibility.reason, eligibility)

            state = await self.store.get_journey_state(customer_id, from_operator_id)
            entry = CustomerRecyclingHistory(
                customer_id=customer_id,
                from_operator_id=from_operator_id,
                to_operator_id=to_operator_id,
                stage_at_recycle=state.stage if state else UNREGISTERED_STAGE,
                days_since_deposit=eligibility.days_since_deposit,
                last_deposit_amount=state.last_deposit_amount if state else None,
                recycled_at=self.clock(),
            )
            await self.store.insert_recycling_history(entry)

        logger.info(
            f"[RECYCLE_OK] customer={customer_id} {from_operator_id[:8]}... -> {to_operator_id[:8]}... "
            f"stage={entry.stage_at_recycle}"
        )
        return RecycleResult(entry, eligibility)

    # ════════════════════════════════════════════════════════════════════════
    # BATCH RUN (scheduler / admin)
    # ════════════════════════════════════════════════════════════════════════

    async def run_batch(
        self,
        source_operator_id: str,
        target_operator_id: str,
        limit: int = 100,
        triggered_by: str = "system"
    ) -> Dict[str, Any]:
        """
        find_eligible puis recycle() pour chaque candidat.
        Un candidat devenu inéligible entre-temps est compté en skipped avec sa raison.
        """
        candidates = await self.find_eligible(source_operator_id, target_operator_id, limit)

        recycled = []
        skipped_reasons = Counter()

        for candidate in candidates:
            try:
                result = await self.recycle(candidate.customer_id, source_operator_id, target_operator_id)
            except NotEligible as e:
                skipped_reasons[e.reason] += 1
                continue

            recycled.append(result.history)
            await log_event(
                self.store,
                action="customer_recycled",
                entity_type="customer",
                entity_id=candidate.customer_id,
                user=triggered_by,
                details={
                    "stage_at_recycle": result.history.stage_at_recycle,
                    "days_since_deposit": result.history.days_since_deposit,
                },
                related={
                    "from_operator_id": source_operator_id,
                    "to_operator_id": target_operator_id,
                    "history_id": result.history.id,
                },
            )

            # Une ligne d'historique = un recycled_out + un recycled_in
            if self.metrics:
                day = result.history.recycled_at
                await self.metrics.increment(source_operator_id, day, MetricsDelta(recycled_out=1))
                await self.metrics.increment(target_operator_id, day, MetricsDelta(recycled_in=1))

        summary = {
            "source_operator_id": source_operator_id,
            "target_operator_id": target_operator_id,
            "candidates": len(candidates),
            "recycled": len(recycled),
            "skipped": sum(skipped_reasons.values()),
            "skipped_reasons": dict(skipped_reasons),
            "history_ids": [h.id for h in recycled],
        }
        logger.info(
            f"[RECYCLE_BATCH] {source_operator_id[:8]}... -> {target_operator_id[:8]}...: "
            f"recycled={summary['recycled']} skipped={summary['skipped']}"
        )
        return summary
