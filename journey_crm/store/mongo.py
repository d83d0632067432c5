"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Journey CRM - MongoDB store (motor)                                         ║
║                                                                              ║
║  Collections:                                                                ║
║  - operators, customer_journey_states, operator_recycling_rules              ║
║  - customer_recycling_history (append-only), operator_metrics                ║
║  - event_log (audit), locks (lease locks)                                    ║
║                                                                              ║
║  GARANTIES:                                                                  ║
║  - index unique (customer_id, operator_id) => un seul journey state          ║
║  - écriture journey state = replace_one filtré sur version (CAS)             ║
║  - recycle sérialisé par lease lock sur (customer, from, to)                 ║
║  - erreurs réseau / timeout => StoreUnavailable (retryable)                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from functools import wraps
from typing import Optional, List, Dict, Any, Callable

from bson.decimal128 import Decimal128
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout, WTimeoutError

from journey_crm.config import now_utc, LOCK_TTL_SECONDS, LOCK_WAIT_SECONDS
from journey_crm.errors import (
    DuplicateJourneyState,
    DuplicateOperator,
    DuplicateRecyclingRule,
    StoreUnavailable,
)
from journey_crm.models import (
    COUNTER_FIELDS,
    Operator,
    CustomerJourneyState,
    OperatorRecyclingRule,
    CustomerRecyclingHistory,
    OperatorMetrics,
)
from journey_crm.store.base import JourneyStore

logger = logging.getLogger("mongo_store")

TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


# ════════════════════════════════════════════════════════════════════════════
# ENCODING (Decimal -> Decimal128, datetime -> ISO, Enum -> value)
# ════════════════════════════════════════════════════════════════════════════

def encode_value(value):
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value):
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: decode_value(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def to_document(model) -> Dict[str, Any]:
    return encode_value(model.model_dump())


def from_document(model_cls, document):
    if not document:
        return None
    return model_cls(**decode_value(document))


def _translate_errors(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.error(f"[MONGO] {func.__name__} failed: {e}")
            raise StoreUnavailable(f"{func.__name__}: {e}") from e
    return wrapper


class MongoStore(JourneyStore):

    def __init__(self, db, client=None, clock: Callable[[], datetime] = now_utc):
        self.db = db
        self.client = client
        self._clock = clock

    async def close(self):
        if self.client:
            self.client.close()

    @_translate_errors
    async def ensure_indexes(self):
        await self.db.operators.create_index("id", unique=True)
        await self.db.operators.create_index("slug", unique=True)
        await self.db.customer_journey_states.create_index(
            [("customer_id", ASCENDING), ("operator_id", ASCENDING)], unique=True
        )
        await self.db.customer_journey_states.create_index(
            [("operator_id", ASCENDING), ("updated_at", DESCENDING)]
        )
        await self.db.operator_recycling_rules.create_index(
            [("source_operator_id", ASCENDING), ("target_operator_id", ASCENDING)], unique=True
        )
        await self.db.customer_recycling_history.create_index(
            [("customer_id", ASCENDING), ("from_operator_id", ASCENDING),
             ("to_operator_id", ASCENDING), ("recycled_at", DESCENDING)]
        )
        await self.db.operator_metrics.create_index(
            [("operator_id", ASCENDING), ("date", ASCENDING)], unique=True
        )
        logger.info("[MONGO] Indexes OK")

    # ---- Operators ----

    @_translate_errors
    async def insert_operator(self, operator: Operator) -> Operator:
        try:
            await self.db.operators.insert_one(to_document(operator))
        except DuplicateKeyError:
            raise DuplicateOperator(operator.slug)
        return operator

    @_translate_errors
    async def get_operator(self, operator_id: str) -> Optional[Operator]:
        doc = await self.db.operators.find_one({"id": operator_id}, {"_id": 0})
        return from_document(Operator, doc)

    @_translate_errors
    async def find_operator_by_slug(self, slug: str) -> Optional[Operator]:
        doc = await self.db.operators.find_one({"slug": slug}, {"_id": 0})
        return from_document(Operator, doc)

    @_translate_errors
    async def list_operators(self, client_id: Optional[str] = None) -> List[Operator]:
        query = {"client_id": client_id} if client_id is not None else {}
        docs = await self.db.operators.find(query, {"_id": 0}).sort("created_at", -1).to_list(None)
        return [from_document(Operator, d) for d in docs]

    @_translate_errors
    async def update_operator(self, operator_id: str, fields: Dict[str, Any]) -> Optional[Operator]:
        doc = await self.db.operators.find_one_and_update(
            {"id": operator_id},
            {"$set": encode_value(fields)},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return from_document(Operator, doc)

    @_translate_errors
    async def increment_operator_totals(self, operator_id: str, deltas: Dict[str, int]) -> Optional[Operator]:
        doc = await self.db.operators.find_one_and_update(
            {"id": operator_id},
            {"$inc": deltas, "$set": {"updated_at": self._clock().isoformat()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return from_document(Operator, doc)

    # ---- Journey states ----

    @_translate_errors
    async def get_journey_state(self, customer_id: str, operator_id: str) -> Optional[CustomerJourneyState]:
        doc = await self.db.customer_journey_states.find_one(
            {"customer_id": customer_id, "operator_id": operator_id}, {"_id": 0}
        )
        return from_document(CustomerJourneyState, doc)

    @_translate_errors
    async def insert_journey_state(self, state: CustomerJourneyState) -> CustomerJourneyState:
        try:
            await self.db.customer_journey_states.insert_one(to_document(state))
        except DuplicateKeyError:
            raise DuplicateJourneyState(state.customer_id, state.operator_id)
        return state

    @_translate_errors
    async def replace_journey_state(self, state: CustomerJourneyState, expected_version: int) -> bool:
        result = await self.db.customer_journey_states.replace_one(
            {"id": state.id, "version": expected_version},
            to_document(state),
        )
        return result.matched_count == 1

    @_translate_errors
    async def list_journey_states(self, operator_id: str, limit: int) -> List[CustomerJourneyState]:
        docs = await self.db.customer_journey_states.find(
            {"operator_id": operator_id}, {"_id": 0}
        ).sort("updated_at", -1).limit(limit).to_list(limit)
        return [from_document(CustomerJourneyState, d) for d in docs]

    @_translate_errors
    async def count_journey_states_by_stage(self, operator_id: Optional[str] = None) -> Dict[int, int]:
        pipeline = []
        if operator_id is not None:
            pipeline.append({"$match": {"operator_id": operator_id}})
        pipeline.append({"$group": {"_id": "$stage", "count": {"$sum": 1}}})
        rows = await self.db.customer_journey_states.aggregate(pipeline).to_list(None)
        return {row["_id"]: row["count"] for row in rows}

    # ---- Recycling rules ----

    @_translate_errors
    async def insert_recycling_rule(self, rule: OperatorRecyclingRule) -> OperatorRecyclingRule:
        try:
            await self.db.operator_recycling_rules.insert_one(to_document(rule))
        except DuplicateKeyError:
            raise DuplicateRecyclingRule(rule.source_operator_id, rule.target_operator_id)
        return rule

    @_translate_errors
    async def get_recycling_rule(self, source_operator_id: str, target_operator_id: str) -> Optional[OperatorRecyclingRule]:
        doc = await self.db.operator_recycling_rules.find_one(
            {"source_operator_id": source_operator_id, "target_operator_id": target_operator_id},
            {"_id": 0},
        )
        return from_document(OperatorRecyclingRule, doc)

    @_translate_errors
    async def list_recycling_rules(self, active_only: bool = True) -> List[OperatorRecyclingRule]:
        query = {"is_active": True} if active_only else {}
        docs = await self.db.operator_recycling_rules.find(query, {"_id": 0}).sort("priority", -1).to_list(None)
        return [from_document(OperatorRecyclingRule, d) for d in docs]

    # ---- Recycling history ----

    @_translate_errors
    async def insert_recycling_history(self, entry: CustomerRecyclingHistory) -> CustomerRecyclingHistory:
        await self.db.customer_recycling_history.insert_one(to_document(entry))
        return entry

    @_translate_errors
    async def count_recycling_history(self, customer_id: str, from_operator_id: str, to_operator_id: str) -> int:
        return await self.db.customer_recycling_history.count_documents({
            "customer_id": customer_id,
            "from_operator_id": from_operator_id,
            "to_operator_id": to_operator_id,
        })

    @_translate_errors
    async def latest_recycling_history(
        self, customer_id: str, from_operator_id: str, to_operator_id: str
    ) -> Optional[CustomerRecyclingHistory]:
        docs = await self.db.customer_recycling_history.find(
            {
                "customer_id": customer_id,
                "from_operator_id": from_operator_id,
                "to_operator_id": to_operator_id,
            },
            {"_id": 0},
        ).sort("recycled_at", -1).limit(1).to_list(1)
        return from_document(CustomerRecyclingHistory, docs[0]) if docs else None

    # ---- Metrics ----

    @_translate_errors
    async def increment_metrics(self, operator_id: str, day: str, deltas: Dict[str, Any]) -> OperatorMetrics:
        inc = {
            field: Decimal128(Decimal(value)) if field == "revenue" else value
            for field, value in deltas.items()
        }
        # $setOnInsert et $inc ne peuvent pas viser le même champ
        on_insert = {"id": str(uuid.uuid4()), "operator_id": operator_id, "date": day}
        for field in COUNTER_FIELDS:
            if field not in inc:
                on_insert[field] = 0
        if "revenue" not in inc:
            on_insert["revenue"] = Decimal128("0")

        update = {"$setOnInsert": on_insert}
        if inc:
            update["$inc"] = inc

        for attempt in range(2):
            try:
                doc = await self.db.operator_metrics.find_one_and_update(
                    {"operator_id": operator_id, "date": day},
                    update,
                    projection={"_id": 0},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                return from_document(OperatorMetrics, doc)
            except DuplicateKeyError:
                # Deux upserts concurrents: le second repasse en update
                if attempt == 1:
                    raise StoreUnavailable(f"metrics upsert conflict for {operator_id}/{day}")

    @_translate_errors
    async def list_metrics(self, operator_id: str, since: str) -> List[OperatorMetrics]:
        docs = await self.db.operator_metrics.find(
            {"operator_id": operator_id, "date": {"$gte": since}}, {"_id": 0}
        ).sort("date", 1).to_list(None)
        return [from_document(OperatorMetrics, d) for d in docs]

    # ---- Audit ----

    @_translate_errors
    async def insert_event_log(self, document: Dict[str, Any]) -> None:
        await self.db.event_log.insert_one(encode_value(document))

    # ---- Locking ----

    @asynccontextmanager
    async def lock(self, key: str):
        """
        Lease lock: document {_id: key, token, expires_at} dans `locks`.
        Un lock expiré (holder mort) est repris. Attente bornée par LOCK_WAIT_SECONDS.
        """
        token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + LOCK_WAIT_SECONDS

        while True:
            now = self._clock()
            try:
                await self.db.locks.find_one_and_update(
                    {"_id": key, "expires_at": {"$lt": now.isoformat()}},
                    {"$set": {
                        "token": token,
                        "expires_at": (now + timedelta(seconds=LOCK_TTL_SECONDS)).isoformat(),
                    }},
                    upsert=True,
                )
                break
            except DuplicateKeyError:
                if loop.time() >= deadline:
                    raise StoreUnavailable(f"lock busy: {key}")
                await asyncio.sleep(0.05)
            except TRANSIENT_ERRORS as e:
                raise StoreUnavailable(f"lock {key}: {e}") from e

        try:
            yield
        finally:
            try:
                await self.db.locks.delete_one({"_id": key, "token": token})
            except TRANSIENT_ERRORS as e:
                # Le lease expirera de lui-même après LOCK_TTL_SECONDS
                logger.warning(f"[MONGO] lock release failed for {key}: {e}")
