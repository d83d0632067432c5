"""
Journey CRM - Event Logger

Centralized audit trail for admin and batch actions.
Single function to call from any service.
"""

import uuid

from journey_crm.config import now_iso


async def log_event(
    store,
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    details: dict = None,
    related: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        store: JourneyStore receiving the document
        action: e.g. operator_status_change, customer_recycled, recycling_rule_created
        entity_type: operator | journey_state | recycling_rule | customer
        entity_id: ID of the primary entity
        user: email of user performing action
        details: free-form dict (reason, old_value, new_value, etc.)
        related: linked entity IDs (customer_id, from_operator_id, etc.)
    """
    document = {
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "user": user,
        "details": details or {},
        "related": related or {},
        "created_at": now_iso()
    }
    await store.insert_event_log(document)
    return document
