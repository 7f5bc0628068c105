"""
Billing collaborator boundary.

The engine records premium activations/deactivations with billing and only
looks at the success flag. Payment processor responses are never
interpreted here.

Activations carry an idempotency key. A gateway must treat a repeated key as
the same charge, so a caller retrying a failed activation is not billed twice.
"""

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from harbor_entitlements.entitlements.models import BillingCycle, Tier

logger = logging.getLogger(__name__)

# Idempotency keys the logging gateway remembers, oldest dropped first
MAX_REMEMBERED_KEYS = 10000


@dataclass(frozen=True)
class BillingResult:
    success: bool
    reference: Optional[str] = None
    message: Optional[str] = None


class BillingGateway(ABC):
    """What membership changes need from billing."""

    @abstractmethod
    def record_activation(
        self,
        account_id: str,
        tier: Tier,
        billing_cycle: BillingCycle,
        payment_method_id: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> BillingResult:
        """Record the payment method and amount for a premium term."""

    @abstractmethod
    def record_deactivation(self, account_id: str, tier_id: Optional[str]) -> BillingResult:
        """Record that the premium plan ended."""


class LoggingBillingGateway(BillingGateway):
    """
    Default gateway when no payment processor is wired in.

    Logs the charge that would be recorded and reports success. Repeated
    idempotency keys return the first result without logging a new charge.
    """

    def __init__(self):
        self._lock = Lock()
        self._activations: "OrderedDict[str, BillingResult]" = OrderedDict()

    def record_activation(self, account_id, tier, billing_cycle, payment_method_id, idempotency_key=None):
        with self._lock:
            if idempotency_key is not None and idempotency_key in self._activations:
                logger.info(
                    "Premium activation already recorded",
                    extra={"account_id": account_id, "idempotency_key": idempotency_key},
                )
                return self._activations[idempotency_key]

            amount = tier.pricing.amount_for(billing_cycle)
            logger.info(
                "Premium activation recorded",
                extra={
                    "account_id": account_id,
                    "tier_id": tier.tier_id,
                    "billing_cycle": billing_cycle.value,
                    "amount_cents": amount,
                    "currency": tier.pricing.currency,
                    "payment_method_id": payment_method_id,
                    "idempotency_key": idempotency_key,
                },
            )
            result = BillingResult(success=True, reference=idempotency_key)
            if idempotency_key is not None:
                self._activations[idempotency_key] = result
                if len(self._activations) > MAX_REMEMBERED_KEYS:
                    self._activations.popitem(last=False)
            return result

    def record_deactivation(self, account_id, tier_id):
        logger.info(
            "Premium deactivation recorded",
            extra={"account_id": account_id, "tier_id": tier_id},
        )
        return BillingResult(success=True)
