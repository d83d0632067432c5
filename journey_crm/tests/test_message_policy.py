"""
Journey CRM - Message Policy Tests
Ordre: state absent, désinscriptions, 1 message / 24h, plafonds ACQUISITION.
"""

import pytest

from journey_crm.errors import JourneyStateNotFound, OperatorNotFound
from journey_crm.models import MessageChannel, MessagingSuppressed, UnsubscribeScope


class TestCanSendMessage:

    @pytest.mark.asyncio
    async def test_missing_state(self, policy, operator_a):
        permission = await policy.can_send_message("cust-1", operator_a.id, MessageChannel.EMAIL)
        assert permission.to_dict() == {"allowed": False, "reason": "journey state not found"}

    @pytest.mark.asyncio
    async def test_one_message_per_day_per_channel(self, policy, state_machine, clock, operator_a):
        await state_machine.record_registration("cust-1", operator_a.id)
        assert (await policy.can_send_message("cust-1", operator_a.id, "EMAIL")).allowed is True

        await policy.record_message_sent("cust-1", operator_a.id, MessageChannel.EMAIL)
        clock.advance(hours=3)

        permission = await policy.can_send_message("cust-1", operator_a.id, MessageChannel.EMAIL)
        assert permission.allowed is False
        assert permission.reason == "max 1 message per day - last sent 3h ago"

        # L'autre canal n'est pas concerné
        assert (await policy.can_send_message("cust-1", operator_a.id, MessageChannel.SMS)).allowed is True

        clock.advance(hours=21)
        assert (await policy.can_send_message("cust-1", operator_a.id, MessageChannel.EMAIL)).allowed is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("channel,cap,reason", [
        (MessageChannel.EMAIL, 3, "max 3 emails per acquisition journey reached"),
        (MessageChannel.SMS, 2, "max 2 SMS per acquisition journey reached"),
    ])
    async def test_acquisition_caps(self, policy, state_machine, clock, operator_a, channel, cap, reason):
        await state_machine.record_registration("cust-1", operator_a.id)
        for _ in range(cap):
            assert (await policy.can_send_message("cust-1", operator_a.id, channel)).allowed is True
            await policy.record_message_sent("cust-1", operator_a.id, channel)
            clock.advance(days=1)

        permission = await policy.can_send_message("cust-1", operator_a.id, channel)
        assert permission.allowed is False
        assert permission.reason == reason
        print(f"✅ {reason}")

    @pytest.mark.asyncio
    async def test_retention_has_no_cap(self, policy, state_machine, clock, operator_a):
        await state_machine.record_deposit("cust-1", operator_a.id, 20)
        for _ in range(6):
            await policy.record_message_sent("cust-1", operator_a.id, MessageChannel.EMAIL)
            clock.advance(days=1)
        state = await state_machine.get_state("cust-1", operator_a.id)
        assert state.email_count == 6
        assert (await policy.can_send_message("cust-1", operator_a.id, MessageChannel.EMAIL)).allowed is True

    @pytest.mark.asyncio
    async def test_record_without_state(self, policy, store, operator_a):
        with pytest.raises(JourneyStateNotFound):
            await policy.record_message_sent("cust-1", operator_a.id, MessageChannel.SMS)
        assert store.journey_states == {}


class TestUnsubscribe:

    @pytest.mark.asyncio
    async def test_channel_unsubscribe(self, policy, state_machine, event_bus, operator_a):
        await state_machine.record_registration("cust-1", operator_a.id)
        await policy.record_message_sent("cust-1", operator_a.id, MessageChannel.EMAIL)

        state = await policy.unsubscribe("cust-1", operator_a.id, UnsubscribeScope.EMAIL)
        assert state.unsub_email is True

        # Désinscription avant le rate limit
        permission = await policy.can_send_message("cust-1", operator_a.id, MessageChannel.EMAIL)
        assert permission.reason == "user unsubscribed from emails"
        assert (await policy.can_send_message("cust-1", operator_a.id, MessageChannel.SMS)).allowed is True

        suppressed = [e for e in event_bus.events if isinstance(e, MessagingSuppressed)]
        assert len(suppressed) == 1
        assert suppressed[0].scope == UnsubscribeScope.EMAIL

    @pytest.mark.asyncio
    async def test_global_unsubscribe_wins(self, policy, state_machine, operator_a):
        await state_machine.record_registration("cust-1", operator_a.id)
        await policy.unsubscribe("cust-1", operator_a.id, "sms")
        await policy.unsubscribe("cust-1", operator_a.id, "global")

        for channel in (MessageChannel.EMAIL, MessageChannel.SMS):
            permission = await policy.can_send_message("cust-1", operator_a.id, channel)
            assert permission.reason == "user unsubscribed globally"

    @pytest.mark.asyncio
    async def test_unsubscribe_creates_missing_state(self, policy, store, operator_a):
        state = await policy.unsubscribe("cust-1", operator_a.id, UnsubscribeScope.SMS)
        assert state.stage == -1
        assert state.unsub_sms is True
        assert (await store.get_journey_state("cust-1", operator_a.id)).unsub_sms is True

    @pytest.mark.asyncio
    async def test_unknown_operator(self, policy):
        with pytest.raises(OperatorNotFound):
            await policy.unsubscribe("cust-1", "missing", UnsubscribeScope.GLOBAL)
