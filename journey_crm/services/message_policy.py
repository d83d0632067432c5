"""
Journey CRM - Message Policy

Le core décide si un message peut partir, la couche messaging envoie.

ORDRE DES CONTRÔLES can_send_message():
1. Journey state absent
2. Désinscription globale
3. Désinscription du canal
4. Max 1 message / 24h par canal
5. Plafonds du journey ACQUISITION (3 emails, 2 SMS)
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from journey_crm.config import (
    now_utc,
    MIN_HOURS_BETWEEN_MESSAGES,
    ACQUISITION_MAX_EMAILS,
    ACQUISITION_MAX_SMS,
)
from journey_crm.models import (
    JourneyType,
    MessageChannel,
    MessagingSuppressed,
    UnsubscribeScope,
)

logger = logging.getLogger("message_policy")


class MessagePermission:

    def __init__(self, allowed: bool, reason: Optional[str] = None):
        self.allowed = allowed
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason}


class MessagePolicy:

    def __init__(self, state_machine, event_bus=None, clock: Callable[[], datetime] = None):
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.clock = clock or state_machine.clock or now_utc

    async def can_send_message(self, customer_id: str, operator_id: str, channel: MessageChannel) -> MessagePermission:
        channel = MessageChannel(channel)
        state = await self.state_machine.get_state(customer_id, operator_id)
        if not state:
            return MessagePermission(False, "journey state not found")

        if state.unsub_global:
            return MessagePermission(False, "user unsubscribed globally")
        if channel == MessageChannel.EMAIL and state.unsub_email:
            return MessagePermission(False, "user unsubscribed from emails")
        if channel == MessageChannel.SMS and state.unsub_sms:
            return MessagePermission(False, "user unsubscribed from SMS")

        last_message_at = state.last_email_at if channel == MessageChannel.EMAIL else state.last_sms_at
        if last_message_at is not None:
            hours = (self.clock() - last_message_at).total_seconds() / 3600
            if hours < MIN_HOURS_BETWEEN_MESSAGES:
                return MessagePermission(False, f"max 1 message per day - last sent {round(hours)}h ago")

        if state.current_journey == JourneyType.ACQUISITION:
            if channel == MessageChannel.EMAIL and state.email_count >= ACQUISITION_MAX_EMAILS:
                return MessagePermission(False, f"max {ACQUISITION_MAX_EMAILS} emails per acquisition journey reached")
            if channel == MessageChannel.SMS and state.sms_count >= ACQUISITION_MAX_SMS:
                return MessagePermission(False, f"max {ACQUISITION_MAX_SMS} SMS per acquisition journey reached")

        return MessagePermission(True)

    async def record_message_sent(self, customer_id: str, operator_id: str, channel: MessageChannel):
        """Compteur + horodatage du canal. Raises JourneyStateNotFound si pas de state."""
        channel = MessageChannel(channel)

        def transition(state, now):
            new = state.model_copy(deep=True)
            new.version = state.version + 1
            new.updated_at = now
            if channel == MessageChannel.EMAIL:
                new.email_count = state.email_count + 1
                new.last_email_at = now
            else:
                new.sms_count = state.sms_count + 1
                new.last_sms_at = now
            return new, None

        result = await self.state_machine.update_state(customer_id, operator_id, transition, create_missing=False)
        logger.info(f"[MESSAGE] {channel.value} sent customer={customer_id} operator={operator_id}")
        return result.state

    async def unsubscribe(self, customer_id: str, operator_id: str, scope: UnsubscribeScope):
        """Pose le flag puis publie MessagingSuppressed (annulation des messages en attente)"""
        scope = UnsubscribeScope(scope)
        flag = {
            UnsubscribeScope.EMAIL: "unsub_email",
            UnsubscribeScope.SMS: "unsub_sms",
            UnsubscribeScope.GLOBAL: "unsub_global",
        }[scope]

        def transition(state, now):
            new = state.model_copy(deep=True)
            new.version = state.version + 1
            new.updated_at = now
            setattr(new, flag, True)
            return new, None

        await self.state_machine.require_operator(operator_id)
        result = await self.state_machine.update_state(customer_id, operator_id, transition)

        if self.event_bus:
            await self.event_bus.publish(MessagingSuppressed(
                customer_id=customer_id,
                operator_id=operator_id,
                scope=scope,
                occurred_at=result.state.updated_at,
            ))
        logger.info(f"[MESSAGE] Unsubscribed customer={customer_id} from {scope.value} for operator {operator_id}")
        return result.state
