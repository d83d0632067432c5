"""
Journey CRM - Scheduler Tests
"""

import pytest

from journey_crm.models import MetricsDelta, RecyclingRuleCreate
from journey_crm.scheduler_service import TaskScheduler


class TestTaskScheduler:

    @pytest.mark.asyncio
    async def test_jobs_registered(self, store, clock):
        task_scheduler = TaskScheduler(store, clock=clock)
        task_scheduler.start()
        try:
            job_ids = {job.id for job in task_scheduler.scheduler.get_jobs()}
            assert job_ids == {"run_recycling_rules", "recalculate_operator_rates"}
        finally:
            task_scheduler.stop()
        assert task_scheduler.scheduler.running is False
        print(f"✅ Jobs: {sorted(job_ids)}")

    @pytest.mark.asyncio
    async def test_run_recycling_rules(self, store, clock, registry, state_machine, operator_a, operator_b):
        await registry.create_recycling_rule(operator_a.id, operator_b.id, RecyclingRuleCreate(priority=2))
        await registry.create_recycling_rule(operator_b.id, operator_a.id, RecyclingRuleCreate(priority=1))
        await state_machine.record_registration("cust-1", operator_a.id)
        await state_machine.record_registration("cust-2", operator_a.id)

        summaries = await TaskScheduler(store, clock=clock, batch_limit=10).run_recycling_rules()

        assert [(s["source_operator_id"], s["recycled"]) for s in summaries] == [
            (operator_a.id, 2),
            (operator_b.id, 0),
        ]
        recycled = [e for e in store.event_log if e["action"] == "customer_recycled"]
        assert {e["user"] for e in recycled} == {"scheduler"}

    @pytest.mark.asyncio
    async def test_recalculate_operator_rates(self, store, clock, metrics, operator_a, operator_b):
        await metrics.increment(operator_a.id, None, MetricsDelta(leads=4, registrations=1))
        rates = await TaskScheduler(store, clock=clock).recalculate_operator_rates()

        assert rates[operator_a.id] == {"reg_rate": 0.25, "ftd_rate": 0.0}
        assert rates[operator_b.id] == {"reg_rate": 0.0, "ftd_rate": 0.0}
