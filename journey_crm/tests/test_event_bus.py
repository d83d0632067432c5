"""
Journey CRM - Event Bus / Event Logger Tests
"""

import pytest

from journey_crm.models import StageChanged
from journey_crm.services import EventBus, log_event


def stage_event(new_stage=1):
    return StageChanged(customer_id="cust-1", operator_id="op-1", old_stage=0, new_stage=new_stage, journey_switch=True)


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_in_order(self):
        bus = EventBus()
        received = []

        @bus.subscribe
        def sync_handler(event):
            received.append(("sync", event.new_stage))

        @bus.subscribe
        async def async_handler(event):
            received.append(("async", event.new_stage))

        await bus.publish(stage_event())
        assert received == [("sync", 1), ("async", 1)]

        bus.unsubscribe(sync_handler)
        await bus.publish(stage_event(2))
        assert received[-1] == ("async", 2)
        assert len(received) == 3

    @pytest.mark.asyncio
    async def test_handler_error_reaches_publisher(self):
        bus = EventBus()

        def broken(event):
            raise RuntimeError("messaging down")

        bus.subscribe(broken)
        with pytest.raises(RuntimeError) as exc_info:
            await bus.publish(stage_event())
        assert "messaging down" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_state_machine_failure_is_not_hidden(self, state_machine, event_bus, operator_a):
        async def broken(event):
            raise RuntimeError("queue full")

        event_bus.subscribe(broken)
        with pytest.raises(RuntimeError):
            await state_machine.record_registration("cust-1", operator_a.id)
        # Le state est écrit avant la publication
        assert (await state_machine.get_state("cust-1", operator_a.id)).stage == 0


class TestEventLogger:

    @pytest.mark.asyncio
    async def test_log_event_document(self, store):
        document = await log_event(
            store,
            action="operator_status_change",
            entity_type="operator",
            entity_id="op-1",
            user="admin@crm.test",
            details={"old_value": "ACTIVE", "new_value": "PAUSED"},
        )
        assert store.event_log == [document]
        assert document["related"] == {}
        assert document["created_at"]
        assert set(document) == {
            "id", "action", "entity_type", "entity_id", "user", "details", "related", "created_at"
        }
