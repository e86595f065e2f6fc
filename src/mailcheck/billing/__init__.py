"""Billing module for credit metering and partner provisioning.

Provides the credit ledger, the account provisioner, and the partner
webhook route.
"""

from mailcheck.billing.ledger import (
    ApiKeyRejected,
    CreditLedger,
    KeyGenerationError,
    KeyRejection,
)
from mailcheck.billing.provisioner import (
    AccountProvisioner,
    LifecycleEvent,
    ProvisioningError,
    ProvisionResult,
    WebhookOutcome,
    credits_for_plan,
)
from mailcheck.billing.routes import get_provisioner
from mailcheck.billing.routes import router as webhook_router

__all__ = [
    "AccountProvisioner",
    "ApiKeyRejected",
    "CreditLedger",
    "KeyGenerationError",
    "KeyRejection",
    "LifecycleEvent",
    "ProvisionResult",
    "ProvisioningError",
    "WebhookOutcome",
    "credits_for_plan",
    "get_provisioner",
    "webhook_router",
]
