"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - Journey State Machine                                         ║
║                                                                              ║
║  SEUL CE MODULE modifie stage / deposit_count / current_journey              ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - stage ne décroît jamais                                                   ║
║  - stage >= 0  =>  stage == min(deposit_count, 3) (ou 0 si aucun dépôt)      ║
║  - ACQUISITION -> RETENTION exactement au passage stage <=0 -> >=1           ║
║  - montant négatif / non fini => InvalidAmount, aucun state modifié          ║
║  - écriture = compare-and-swap sur version (dépôts concurrents sérialisés)   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Callable, Tuple

from journey_crm.config import (
    now_utc,
    HIGH_VALUE_STAGE,
    REGISTERED_STAGE,
    MAX_STATE_UPDATE_ATTEMPTS,
)
from journey_crm.errors import (
    DuplicateJourneyState,
    InvalidAmount,
    JourneyStateNotFound,
    OperatorNotFound,
    StoreUnavailable,
)
from journey_crm.models import CustomerJourneyState, JourneyType, StageChanged

logger = logging.getLogger("journey_state_machine")

Transition = Callable[[CustomerJourneyState, datetime], Tuple[CustomerJourneyState, Optional[StageChanged]]]


class TransitionResult:
    """Résultat d'une transition: state écrit + event éventuel"""

    def __init__(self, state: CustomerJourneyState, event: Optional[StageChanged] = None):
        self.state = state
        self.event = event

    @property
    def stage_changed(self) -> bool:
        return self.event is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.state.customer_id,
            "operator_id": self.state.operator_id,
            "stage": self.state.stage,
            "journey": self.state.current_journey.value if self.state.current_journey else None,
            "deposit_count": self.state.deposit_count,
            "total_deposit_value": str(self.state.total_deposit_value),
            "stage_changed": self.stage_changed,
            "journey_switch": self.event.journey_switch if self.event else False,
        }


# ════════════════════════════════════════════════════════════════════════════
# PURE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

def validate_amount(amount) -> Decimal:
    """Montant de dépôt -> Decimal. Raises InvalidAmount si négatif, NaN, infini ou illisible."""
    if isinstance(amount, bool):
        raise InvalidAmount(amount)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(amount)
    if not value.is_finite() or value < 0:
        raise InvalidAmount(amount)
    return value


def compute_stage(current_stage: int, deposit_count: int) -> int:
    """stage = min(deposit_count, 3), sans jamais redescendre"""
    return max(current_stage, min(deposit_count, HIGH_VALUE_STAGE))


def _stage_event(old: CustomerJourneyState, new: CustomerJourneyState, now: datetime) -> Optional[StageChanged]:
    if old.stage == new.stage and old.current_journey == new.current_journey:
        return None
    return StageChanged(
        customer_id=new.customer_id,
        operator_id=new.operator_id,
        old_stage=old.stage,
        new_stage=new.stage,
        old_journey=old.current_journey,
        new_journey=new.current_journey,
        journey_switch=old.stage <= 0 < new.stage,
        occurred_at=now,
    )


def _next_version(state: CustomerJourneyState, now: datetime) -> CustomerJourneyState:
    new = state.model_copy(deep=True)
    new.version = state.version + 1
    new.updated_at = now
    return new


def apply_registration(state: CustomerJourneyState, now: datetime):
    new = _next_version(state, now)
    new.stage = max(state.stage, REGISTERED_STAGE)
    if new.current_journey is None:
        new.current_journey = JourneyType.ACQUISITION
    return new, _stage_event(state, new, now)


def apply_deposit(state: CustomerJourneyState, amount: Decimal, now: datetime):
    new = _next_version(state, now)
    new.deposit_count = state.deposit_count + 1
    new.total_deposit_value = state.total_deposit_value + amount
    new.last_deposit_amount = amount
    new.last_deposit_at = now
    new.stage = compute_stage(state.stage, new.deposit_count)

    # Premier dépôt: fin de l'acquisition
    if state.stage <= 0 < new.stage:
        new.current_journey = JourneyType.RETENTION
    return new, _stage_event(state, new, now)


# ════════════════════════════════════════════════════════════════════════════
# STATE MACHINE (store + event bus)
# ════════════════════════════════════════════════════════════════════════════

class JourneyStateMachine:

    def __init__(
        self,
        store,
        event_bus=None,
        clock: Callable[[], datetime] = now_utc,
        max_attempts: int = MAX_STATE_UPDATE_ATTEMPTS
    ):
        self.store = store
        self.event_bus = event_bus
        self.clock = clock
        self.max_attempts = max_attempts

    async def require_operator(self, operator_id: str):
        operator = await self.store.get_operator(operator_id)
        if not operator:
            raise OperatorNotFound(operator_id)
        return operator

    async def get_state(self, customer_id: str, operator_id: str) -> Optional[CustomerJourneyState]:
        return await self.store.get_journey_state(customer_id, operator_id)

    async def start_journey(self, customer_id: str, operator_id: str) -> CustomerJourneyState:
        """
        Crée le state (stage -1, pas de journey).
        Raises DuplicateJourneyState si le couple existe déjà (state existant inchangé).
        """
        await self.require_operator(operator_id)
        now = self.clock()
        state = CustomerJourneyState(
            customer_id=customer_id,
            operator_id=operator_id,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_journey_state(state)
        logger.info(f"[JOURNEY] New state customer={customer_id} operator={operator_id}")
        return state

    async def get_or_create_state(self, customer_id: str, operator_id: str) -> CustomerJourneyState:
        await self.require_operator(operator_id)
        return await self._load_or_create(customer_id, operator_id)

    async def _load_or_create(self, customer_id: str, operator_id: str) -> CustomerJourneyState:
        state = await self.store.get_journey_state(customer_id, operator_id)
        if state:
            return state
        now = self.clock()
        try:
            return await self.store.insert_journey_state(CustomerJourneyState(
                customer_id=customer_id,
                operator_id=operator_id,
                created_at=now,
                updated_at=now,
            ))
        except DuplicateJourneyState:
            # Créé entre-temps par un event concurrent
            return await self.store.get_journey_state(customer_id, operator_id)

    async def record_registration(self, customer_id: str, operator_id: str) -> TransitionResult:
        await self.require_operator(operator_id)
        return await self.update_state(customer_id, operator_id, apply_registration)

    async def record_deposit(self, customer_id: str, operator_id: str, amount) -> TransitionResult:
        value = validate_amount(amount)
        await self.require_operator(operator_id)
        return await self.update_state(
            customer_id, operator_id,
            lambda state, now: apply_deposit(state, value, now),
        )

    async def update_state(
        self,
        customer_id: str,
        operator_id: str,
        transition: Transition,
        create_missing: bool = True
    ) -> TransitionResult:
        """
        Applique `transition` par compare-and-swap.
        Relit et rejoue si un autre writer est passé entre la lecture et l'écriture.
        Raises StoreUnavailable après max_attempts conflits.
        """
        for attempt in range(self.max_attempts):
            if create_missing:
                state = await self._load_or_create(customer_id, operator_id)
            else:
                state = await self.store.get_journey_state(customer_id, operator_id)
                if not state:
                    raise JourneyStateNotFound(customer_id, operator_id)

            new_state, event = transition(state, self.clock())

            if await self.store.replace_journey_state(new_state, state.version):
                if event:
                    logger.info(
                        f"[JOURNEY] customer={customer_id} operator={operator_id} "
                        f"stage {event.old_stage} -> {event.new_stage} "
                        f"journey={event.new_journey.value if event.new_journey else None} "
                        f"switch={event.journey_switch}"
                    )
                    if self.event_bus:
                        await self.event_bus.publish(event)
                return TransitionResult(new_state, event)

            logger.debug(
                f"[JOURNEY] CAS conflict customer={customer_id} operator={operator_id} "
                f"version={state.version} attempt={attempt + 1}"
            )
            await asyncio.sleep(min(0.005 * (2 ** attempt), 0.2))

        raise StoreUnavailable(
            f"journey state {customer_id}/{operator_id}: {self.max_attempts} concurrent update conflicts"
        )
