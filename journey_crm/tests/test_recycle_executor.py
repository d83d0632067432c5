"""
Journey CRM - Recycle executor, batch finder, batch run
"""

import asyncio
from decimal import Decimal

import pytest

from journey_crm.errors import NotEligible, StoreUnavailable
from journey_crm.models import OperatorCreate, RecyclingRuleCreate
from journey_crm.services import JourneyStateMachine, MetricsAggregator, OperatorRegistry, RecyclingEngine
from journey_crm.services.recycling_engine import REASON_TARGET_JOURNEY_EXISTS
from journey_crm.store import InMemoryStore, day_key


async def registered(state_machine, customer_id, operator_id):
    result = await state_machine.record_registration(customer_id, operator_id)
    return result.state


class TestRecycle:

    @pytest.mark.asyncio
    async def test_refused_recycle_writes_nothing(self, engine, store, state_machine, operator_a, operator_b):
        await state_machine.record_deposit("cust-1", operator_a.id, 40)
        before = await store.count_recycling_history("cust-1", operator_a.id, operator_b.id)

        with pytest.raises(NotEligible) as exc_info:
            await engine.recycle("cust-1", operator_a.id, operator_b.id)

        assert "must wait 30 days since last deposit" in str(exc_info.value)
        assert exc_info.value.eligibility.eligible is False
        after = await store.count_recycling_history("cust-1", operator_a.id, operator_b.id)
        assert before == after == 0
        print("✅ Recycle refusé: aucune ligne d'historique")

    @pytest.mark.asyncio
    async def test_history_snapshot(self, engine, store, state_machine, clock, operator_a, operator_b):
        await registered(state_machine, "cust-1", operator_a.id)
        await state_machine.record_deposit("cust-1", operator_a.id, Decimal("15.00"))
        await state_machine.record_deposit("cust-1", operator_a.id, Decimal("42.50"))
        clock.advance(days=40)

        result = await engine.recycle("cust-1", operator_a.id, operator_b.id)

        history = result.history
        assert result.success is True
        assert history.stage_at_recycle == 2
        assert history.days_since_deposit == 40
        assert history.last_deposit_amount == Decimal("42.50")
        assert history.recycled_at == clock.now
        assert result.eligibility.eligible is True
        assert store.recycling_history == [history]

    @pytest.mark.asyncio
    async def test_target_journey_left_to_caller(self, engine, store, state_machine, operator_a, operator_b):
        await registered(state_machine, "cust-1", operator_a.id)
        await engine.recycle("cust-1", operator_a.id, operator_b.id)
        assert await store.get_journey_state("cust-1", operator_b.id) is None

    @pytest.mark.asyncio
    async def test_customer_without_source_journey(self, engine, operator_a, operator_b):
        result = await engine.recycle("cust-1", operator_a.id, operator_b.id)
        assert result.history.stage_at_recycle == -1
        assert result.history.last_deposit_amount is None

    @pytest.mark.asyncio
    async def test_cooldown_then_success(self, engine, registry, store, state_machine, clock, operator_a, operator_b):
        """Règle 0..2, cooldown 30j: 2e tentative refusée, acceptée 31 jours plus tard"""
        await registry.create_recycling_rule(
            operator_a.id, operator_b.id,
            RecyclingRuleCreate(min_stage=0, max_stage=2, cooldown_days=30, max_recycles_per_user=5),
        )
        await registered(state_machine, "cust-1", operator_a.id)

        await engine.recycle("cust-1", operator_a.id, operator_b.id)

        with pytest.raises(NotEligible) as exc_info:
            await engine.recycle("cust-1", operator_a.id, operator_b.id)
        assert exc_info.value.reason == "must wait 30 days between recycles"

        clock.advance(days=31)
        result = await engine.recycle("cust-1", operator_a.id, operator_b.id)
        assert result.eligibility.recycle_count == 1
        assert await store.count_recycling_history("cust-1", operator_a.id, operator_b.id) == 2
        print("✅ Cooldown respecté puis recycle accepté")

    @pytest.mark.asyncio
    async def test_concurrent_recycles_respect_cap(self, engine, registry, store, state_machine, operator_a, operator_b):
        await registry.create_recycling_rule(
            operator_a.id, operator_b.id, RecyclingRuleCreate(max_recycles_per_user=1)
        )
        await registered(state_machine, "cust-1", operator_a.id)

        results = await asyncio.gather(
            *[engine.recycle("cust-1", operator_a.id, operator_b.id) for _ in range(5)],
            return_exceptions=True,
        )

        refused = [r for r in results if isinstance(r, NotEligible)]
        assert len(refused) == 4
        assert len(store.recycling_history) == 1


class TestFindEligible:

    @pytest.mark.asyncio
    async def test_most_recently_updated_first(self, engine, state_machine, clock, operator_a, operator_b):
        for i in range(5):
            await registered(state_machine, f"cust-{i}", operator_a.id)
            clock.advance(minutes=1)
        await state_machine.start_journey("cust-3", operator_b.id)

        found = await engine.find_eligible(operator_a.id, operator_b.id, limit=2)

        assert [c.customer_id for c in found] == ["cust-4", "cust-2"]
        assert all(c.eligibility.eligible for c in found)
        assert found[0].journey_state.operator_id == operator_a.id

    @pytest.mark.asyncio
    async def test_limit_zero(self, engine, state_machine, operator_a, operator_b):
        await registered(state_machine, "cust-1", operator_a.id)
        assert await engine.find_eligible(operator_a.id, operator_b.id, limit=0) == []

    @pytest.mark.asyncio
    async def test_candidates_exhausted(self, engine, state_machine, operator_a, operator_b):
        await registered(state_machine, "cust-1", operator_a.id)
        await state_machine.record_deposit("cust-2", operator_a.id, 10)
        found = await engine.find_eligible(operator_a.id, operator_b.id, limit=10)
        assert [c.customer_id for c in found] == ["cust-1"]


class TestRunBatch:

    @pytest.mark.asyncio
    async def test_summary_audit_and_metrics(self, engine, registry, store, state_machine, clock, operator_a, operator_b):
        await registry.create_recycling_rule(operator_a.id, operator_b.id)
        for i in range(3):
            await registered(state_machine, f"cust-{i}", operator_a.id)

        summary = await engine.run_batch(operator_a.id, operator_b.id, limit=10, triggered_by="admin@crm.test")

        assert summary["candidates"] == 3
        assert summary["recycled"] == 3
        assert summary["skipped"] == 0
        assert len(summary["history_ids"]) == 3

        audit = [e for e in store.event_log if e["action"] == "customer_recycled"]
        assert len(audit) == 3
        assert audit[0]["user"] == "admin@crm.test"
        assert audit[0]["related"]["to_operator_id"] == operator_b.id

        today = day_key(clock())
        assert store.metrics[(operator_a.id, today)].recycled_out == 3
        assert store.metrics[(operator_b.id, today)].recycled_in == 3

        # Plafond de 1 atteint pour tout le monde
        again = await engine.run_batch(operator_a.id, operator_b.id, limit=10)
        assert again["candidates"] == 0
        assert again["recycled"] == 0
        print(f"✅ Batch: {summary}")

    @pytest.mark.asyncio
    async def test_stale_candidate_is_skipped(self, engine, store, state_machine, operator_a, operator_b, monkeypatch):
        await registered(state_machine, "cust-1", operator_a.id)
        await registered(state_machine, "cust-2", operator_a.id)
        stale = await engine.find_eligible(operator_a.id, operator_b.id)

        # cust-1 démarre un journey chez la target entre la recherche et l'exécution
        await state_machine.start_journey("cust-1", operator_b.id)

        async def cached_find_eligible(*args, **kwargs):
            return stale

        monkeypatch.setattr(engine, "find_eligible", cached_find_eligible)
        summary = await engine.run_batch(operator_a.id, operator_b.id)

        assert summary["recycled"] == 1
        assert summary["skipped"] == 1
        assert summary["skipped_reasons"] == {REASON_TARGET_JOURNEY_EXISTS: 1}
        assert [h.customer_id for h in store.recycling_history] == ["cust-2"]


class FlakyLockStore(InMemoryStore):
    """Le n-ième lock demandé échoue (lease occupé / Mongo indisponible)"""

    def __init__(self, fail_on_call: int):
        super().__init__()
        self.fail_on_call = fail_on_call
        self.lock_calls = 0

    def lock(self, key):
        self.lock_calls += 1
        if self.lock_calls == self.fail_on_call:
            raise StoreUnavailable(f"lock busy: {key}")
        return super().lock(key)


class TestRunBatchInterrupted:

    @pytest.mark.asyncio
    async def test_metrics_match_history_when_batch_fails(self, clock):
        store = FlakyLockStore(fail_on_call=3)
        registry = OperatorRegistry(store, clock=clock)
        state_machine = JourneyStateMachine(store, clock=clock)
        engine = RecyclingEngine(store, clock=clock, metrics=MetricsAggregator(store, clock=clock))

        operator_a = await registry.create_operator(OperatorCreate(name="Operator A", slug="operator-a"))
        operator_b = await registry.create_operator(OperatorCreate(name="Operator B", slug="operator-b"))
        for i in range(3):
            await registered(state_machine, f"cust-{i}", operator_a.id)

        with pytest.raises(StoreUnavailable) as exc_info:
            await engine.run_batch(operator_a.id, operator_b.id, limit=10)
        assert "lock busy" in str(exc_info.value)

        today = day_key(clock())
        assert len(store.recycling_history) == 2
        assert len([e for e in store.event_log if e["action"] == "customer_recycled"]) == 2
        assert store.metrics[(operator_a.id, today)].recycled_out == 2
        assert store.metrics[(operator_b.id, today)].recycled_in == 2
        print("✅ Batch interrompu: métriques alignées sur l'historique")
