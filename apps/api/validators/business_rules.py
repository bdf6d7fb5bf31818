"""Billing and delivery rule configuration"""
import os
from pydantic import BaseModel


class BillingRules(BaseModel):
    """Billing and delivery tunables"""
    # Control numbers
    CONTROL_NUMBER_VALIDITY_DAYS: int = 7

    # Invoices are flagged overdue this many days after the service date
    INVOICE_DUE_DAYS: int = 30

    # Provider calls
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Live push
    SSE_HEARTBEAT_SECONDS: float = 30.0
    PUSH_SEND_TIMEOUT_SECONDS: float = 5.0

    # Client-side status polling
    POLL_MAX_ATTEMPTS: int = 6
    POLL_BASE_DELAY_SECONDS: float = 1.0
    POLL_MAX_DELAY_SECONDS: float = 16.0
    POLL_MAX_TOTAL_SECONDS: float = 60.0


def _load_rules() -> BillingRules:
    overrides = {}
    for name, field in BillingRules.model_fields.items():
        raw = os.getenv(name)
        if raw is not None:
            overrides[name] = field.annotation(raw)
    return BillingRules(**overrides)


# Global instance, overridable per key through environment variables
billing_rules = _load_rules()


def get_billing_rules() -> BillingRules:
    """Get current billing rules"""
    return billing_rules

