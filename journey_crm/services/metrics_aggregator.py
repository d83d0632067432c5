"""
Journey CRM - Metrics Aggregator

- increment(): upsert de la ligne journalière (operator_id, date), $inc des compteurs fournis
- calculate_rates(): reg_rate / ftd_rate recalculés depuis les totaux de l'operator
- get_operator_stats(): vue dashboard sur N jours
- get_journey_stats(): distribution des stages
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, Callable, Union

from journey_crm.config import now_utc
from journey_crm.errors import OperatorNotFound, StoreUnavailable
from journey_crm.models import OPERATOR_TOTAL_FIELDS, MetricsDelta, OperatorMetrics
from journey_crm.store.base import day_key

logger = logging.getLogger("metrics_aggregator")

DayLike = Union[date, datetime, str, None]


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


class MetricsAggregator:

    def __init__(self, store, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.clock = clock

    def _day(self, day: DayLike) -> str:
        if day is None:
            return day_key(self.clock())
        if isinstance(day, datetime):
            return day_key(day)
        if isinstance(day, date):
            return day.isoformat()
        return day

    async def increment(self, operator_id: str, day: DayLike, deltas: MetricsDelta) -> OperatorMetrics:
        """
        Champs absents = inchangés.
        leads / registrations / ftd sont aussi reportés sur les totaux de l'operator.
        Ordre: ligne journalière puis totaux (deux écritures, pas de transaction).
        Si les totaux échouent, la ligne reste écrite et StoreUnavailable remonte.
        """
        operator = await self.store.get_operator(operator_id)
        if not operator:
            raise OperatorNotFound(operator_id)

        increments = deltas.increments()
        row = await self.store.increment_metrics(operator_id, self._day(day), increments)

        totals = {
            OPERATOR_TOTAL_FIELDS[field]: value
            for field, value in increments.items()
            if field in OPERATOR_TOTAL_FIELDS
        }
        if totals:
            try:
                await self.store.increment_operator_totals(operator_id, totals)
            except StoreUnavailable as e:
                logger.error(
                    f"[METRICS] {operator.slug} {row.date}: daily row written but operator totals "
                    f"not updated ({totals}): {e}"
                )
                raise

        logger.debug(f"[METRICS] {operator.slug} {row.date}: {increments}")
        return row

    async def calculate_rates(self, operator_id: str) -> Dict[str, float]:
        """regRate = registrations / leads, ftdRate = ftd / registrations (0 si dénominateur nul)"""
        operator = await self.store.get_operator(operator_id)
        if not operator:
            raise OperatorNotFound(operator_id)

        reg_rate = _ratio(operator.total_registrations, operator.total_leads)
        ftd_rate = _ratio(operator.total_ftd, operator.total_registrations)

        await self.store.update_operator(operator_id, {
            "reg_rate": reg_rate,
            "ftd_rate": ftd_rate,
            "updated_at": self.clock(),
        })
        logger.info(f"[METRICS] {operator.slug}: reg_rate={reg_rate:.4f} ftd_rate={ftd_rate:.4f}")
        return {"reg_rate": reg_rate, "ftd_rate": ftd_rate}

    async def get_operator_stats(self, operator_id: str, days: int = 30) -> Dict[str, Any]:
        """Totaux et taux (en %) sur les `days` derniers jours"""
        operator = await self.store.get_operator(operator_id)
        if not operator:
            raise OperatorNotFound(operator_id)

        end = self.clock()
        start = end - timedelta(days=days)
        rows = await self.store.list_metrics(operator_id, day_key(start))

        totals = {
            "leads": sum(m.leads for m in rows),
            "registrations": sum(m.registrations for m in rows),
            "ftd": sum(m.ftd for m in rows),
            "revenue": sum((m.revenue for m in rows), Decimal("0")),
            "recycled_in": sum(m.recycled_in for m in rows),
            "recycled_out": sum(m.recycled_out for m in rows),
        }

        return {
            "period": {"days": days, "start_date": start.isoformat(), "end_date": end.isoformat()},
            "totals": totals,
            "rates": {
                "reg_rate": round(_ratio(totals["registrations"], totals["leads"]) * 100, 2),
                "ftd_rate": round(_ratio(totals["ftd"], totals["registrations"]) * 100, 2),
            },
            "daily_metrics": rows,
        }

    async def get_journey_stats(self, operator_id: Optional[str] = None) -> Dict[str, Any]:
        distribution = await self.store.count_journey_states_by_stage(operator_id)
        return {
            "total_journeys": sum(distribution.values()),
            "stage_distribution": [
                {"stage": stage, "count": count}
                for stage, count in sorted(distribution.items())
            ],
        }
