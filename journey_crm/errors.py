"""
Journey CRM - Errors

Raised by mutating services. Eligibility checks never raise: they return
an EligibilityResult. StoreUnavailable is the only retryable error.
"""


class CRMError(Exception):
    """Base class for every journey CRM error"""
    retryable = False


class OperatorNotFound(CRMError):
    def __init__(self, operator_id: str):
        self.operator_id = operator_id
        super().__init__(f"Operator {operator_id} not found")


class InvalidAmount(CRMError):
    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Invalid deposit amount: {amount!r}")


class NotEligible(CRMError):
    """Recycle refused. `eligibility` is the EligibilityResult that refused it."""

    def __init__(self, reason: str, eligibility=None):
        self.reason = reason
        self.eligibility = eligibility
        super().__init__(f"Customer not eligible for recycling: {reason}")


class DuplicateJourneyState(CRMError):
    def __init__(self, customer_id: str, operator_id: str):
        self.customer_id = customer_id
        self.operator_id = operator_id
        super().__init__(
            f"Customer {customer_id} already has a journey state with operator {operator_id}"
        )


class JourneyStateNotFound(CRMError):
    def __init__(self, customer_id: str, operator_id: str):
        self.customer_id = customer_id
        self.operator_id = operator_id
        super().__init__(f"No journey state for customer {customer_id} with operator {operator_id}")


class DuplicateOperator(CRMError):
    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Operator slug '{slug}' already exists")


class DuplicateRecyclingRule(CRMError):
    def __init__(self, source_operator_id: str, target_operator_id: str):
        self.source_operator_id = source_operator_id
        self.target_operator_id = target_operator_id
        super().__init__(
            f"Recycling rule {source_operator_id} -> {target_operator_id} already exists"
        )


class InvalidOperatorConfig(CRMError):
    pass


class StoreUnavailable(CRMError):
    """Transient store failure. Safe to retry with backoff."""
    retryable = True
