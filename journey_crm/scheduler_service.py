"""
Scheduler pour les tâches automatiques Journey CRM
- Recycling des règles actives toutes les 6 heures
- Recalcul quotidien des taux operator (reg_rate / ftd_rate) à 2h
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Any, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from journey_crm.config import (
    now_utc,
    configure_logging,
    create_mongo_store,
    BATCH_RECYCLE_LIMIT,
    RATES_CRON_HOUR,
    RECYCLE_CRON_HOURS,
    SCHEDULER_TIMEZONE,
)
from journey_crm.errors import CRMError
from journey_crm.services.metrics_aggregator import MetricsAggregator
from journey_crm.services.operator_registry import OperatorRegistry
from journey_crm.services.recycling_engine import RecyclingEngine

logger = logging.getLogger("scheduler")


class TaskScheduler:
    """Gestionnaire de tâches planifiées"""

    def __init__(self, store, clock: Callable[[], datetime] = now_utc, batch_limit: int = BATCH_RECYCLE_LIMIT):
        self.store = store
        self.batch_limit = batch_limit
        self.registry = OperatorRegistry(store, clock=clock)
        self.metrics = MetricsAggregator(store, clock=clock)
        self.engine = RecyclingEngine(store, clock=clock, metrics=self.metrics)
        self.scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)

    def start(self):
        """Démarre le scheduler avec toutes les tâches"""
        self.scheduler.add_job(
            self.run_recycling_rules,
            CronTrigger(hour=RECYCLE_CRON_HOURS, minute=0),
            id="run_recycling_rules",
            name="Recycling des règles actives",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.recalculate_operator_rates,
            CronTrigger(hour=RATES_CRON_HOUR, minute=0),
            id="recalculate_operator_rates",
            name="Recalcul des taux operator",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("Scheduler démarré avec succès")

    def stop(self):
        """Arrête le scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler arrêté")

    # ==================== TÂCHES PLANIFIÉES ====================

    async def run_recycling_rules(self) -> List[Dict[str, Any]]:
        """Un run_batch par règle active, priority décroissante"""
        summaries = []
        for rule in await self.registry.list_active_rules():
            try:
                summary = await self.engine.run_batch(
                    rule.source_operator_id,
                    rule.target_operator_id,
                    limit=self.batch_limit,
                    triggered_by="scheduler",
                )
            except CRMError as e:
                # Une règle en échec ne bloque pas les suivantes
                logger.error(
                    f"Erreur recycling {rule.source_operator_id[:8]}... -> "
                    f"{rule.target_operator_id[:8]}...: {str(e)}"
                )
                continue
            summaries.append(summary)

        total = sum(s["recycled"] for s in summaries)
        logger.info(f"Recycling planifié: {total} customers sur {len(summaries)} règle(s)")
        return summaries

    async def recalculate_operator_rates(self) -> Dict[str, Dict[str, float]]:
        rates = {}
        for operator in await self.registry.list_operators():
            try:
                rates[operator.id] = await self.metrics.calculate_rates(operator.id)
            except CRMError as e:
                logger.error(f"Erreur recalcul taux {operator.slug}: {str(e)}")
        logger.info(f"Taux recalculés pour {len(rates)} operator(s)")
        return rates


async def run_forever():
    store = create_mongo_store()
    await store.ensure_indexes()
    task_scheduler = TaskScheduler(store)
    task_scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        task_scheduler.stop()
        await store.close()


def main():
    configure_logging()
    try:
        asyncio.run(run_forever())
    except KeyboardInterrupt:
        logger.info("Arrêt demandé")


if __name__ == "__main__":
    main()
