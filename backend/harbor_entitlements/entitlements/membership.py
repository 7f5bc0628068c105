"""
Membership lifecycle manager: the premium state machine.

Transitions:
    Inactive -> Active     activate()
    Active   -> Inactive   deactivate()      explicit, user or admin
    Active   -> Inactive   expire_if_due()   sweeper, once expires_at <= now

There is no grace period. Once expires_at has passed the account is
non-premium until it is activated again.

Re-activating an active membership starts a fresh term from `now`; leftover
time from the previous term is not carried over.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Optional, Tuple

from harbor_entitlements.entitlements.accounts import check_downgrade_quota, load_account
from harbor_entitlements.entitlements.audit import AuditAction, AuditEvent, AuditSink, emit_audit_event
from harbor_entitlements.entitlements.billing import BillingGateway, LoggingBillingGateway
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.errors import BillingFailedError, InvalidTierTransitionError
from harbor_entitlements.entitlements.models import (
    Account,
    BillingCycle,
    MembershipDetails,
    SalesAccount,
    Tier,
    utcnow,
)
from harbor_entitlements.entitlements.retry import run_with_optimistic_retry
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

# Actor recorded on expiration events
EXPIRATION_ACTOR = "system:expiration-sweeper"


class MembershipLifecycleManager:
    """
    Owns membership state on accounts.

    Every transition is a read-compute-conditional-write, re-run from a fresh
    read when a concurrent writer wins.
    """

    def __init__(
        self,
        repository: AccountRepository,
        catalog: TierCatalog,
        billing: Optional[BillingGateway] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.billing = billing or LoggingBillingGateway()
        self.audit_sink = audit_sink

    # =========================================================================
    # Activate
    # =========================================================================

    def activate(
        self,
        account_id: str,
        tier_id: str,
        billing_cycle: BillingCycle,
        payment_method_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> Account:
        """
        Activate (or renew) premium membership on a premium tier.

        Billing is recorded once, before the state write, under
        idempotency_key (generated when not given). The write is retried on
        conflict without charging again. If the write still fails the charge
        stands and TransientFailureError is raised; retry the activation with
        the same idempotency_key so billing does not record a second charge.

        The term is computed from each fresh read. When a concurrent
        activation committed a term that started after `now`, this one starts
        at that instant instead, so the stored expiry never moves backward.

        Raises:
            AccountNotFoundError: No such account
            TierNotFoundError: Unknown tier
            InvalidTierTransitionError: Non-premium tier, class mismatch, sales
                account, or too many sub-accounts for the tier
            BillingFailedError: Billing reported failure; state is unchanged
            TransientFailureError: State write failed after billing succeeded
        """
        now = now or utcnow()
        cycle = BillingCycle(billing_cycle)
        tier = self.catalog.get_tier(tier_id)
        idempotency_key = idempotency_key or f"activation:{account_id}:{uuid.uuid4()}"

        self._validate_activation(load_account(self.repository, account_id), tier)

        billing_result = self.billing.record_activation(
            account_id, tier, cycle, payment_method_id, idempotency_key=idempotency_key
        )
        if not billing_result.success:
            logger.warning(
                "Billing rejected premium activation",
                extra={"account_id": account_id, "tier_id": tier_id, "message": billing_result.message},
            )
            raise BillingFailedError(
                billing_result.message or "Billing rejected the activation",
                account_id=account_id,
                tier_id=tier_id,
            )

        def _write() -> Tuple[Account, str]:
            account = load_account(self.repository, account_id)
            self._validate_activation(account, tier)
            saved = self.repository.save_account(replace(
                account,
                current_tier_id=tier.tier_id,
                membership=self._new_term(account, tier, cycle, now),
                payment_method_id=payment_method_id or account.payment_method_id,
            ))
            return saved, account.current_tier_id

        account, previous_tier_id = run_with_optimistic_retry(
            _write, operation_name="membership_activate", entity_id=account_id
        )
        membership = account.membership

        logger.info(
            "Premium membership activated",
            extra={
                "account_id": account_id,
                "tier_id": tier.tier_id,
                "billing_cycle": cycle.value,
                "expires_at": membership.expires_at.isoformat(),
            },
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.PREMIUM_MEMBERSHIP_ACTIVATED,
            actor_id=actor_id or account_id,
            target_account_id=account_id,
            timestamp=now.isoformat(),
            details={
                "tier_id": tier.tier_id,
                "previous_tier_id": previous_tier_id,
                "billing_cycle": cycle.value,
                "expires_at": membership.expires_at.isoformat(),
                "billing_reference": billing_result.reference,
                "idempotency_key": idempotency_key,
            },
        ))
        return account

    # =========================================================================
    # Deactivate
    # =========================================================================

    def deactivate(
        self,
        account_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        """
        Explicitly end premium membership and fall back to the class baseline.

        No-op on an account without an active membership.

        Raises:
            AccountNotFoundError: No such account
            InvalidTierTransitionError: Dealer has more active sub-accounts than
                the baseline tier allows
        """
        now = now or utcnow()

        def _write() -> Tuple[Account, Optional[str], Optional[Tier]]:
            account = load_account(self.repository, account_id)
            if not account.membership.premium_active:
                return account, None, None
            baseline = self.catalog.baseline_tier(account.account_class)
            check_downgrade_quota(self.repository, account, baseline)
            saved = self.repository.save_account(self._downgraded(account, baseline))
            return saved, account.membership.plan_tier_id, baseline

        account, previous_plan, baseline = run_with_optimistic_retry(
            _write, operation_name="membership_deactivate", entity_id=account_id
        )
        if baseline is None:
            logger.info("Deactivate skipped, membership not active", extra={"account_id": account_id})
            return account

        billing_result = self.billing.record_deactivation(account_id, previous_plan)
        if not billing_result.success:
            logger.warning(
                "Billing failed to record deactivation",
                extra={"account_id": account_id, "tier_id": previous_plan, "message": billing_result.message},
            )

        logger.info(
            "Premium membership deactivated",
            extra={"account_id": account_id, "previous_plan": previous_plan, "downgraded_to": baseline.tier_id},
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.PREMIUM_MEMBERSHIP_DEACTIVATED,
            actor_id=actor_id or account_id,
            target_account_id=account_id,
            reason=reason,
            timestamp=now.isoformat(),
            details={"previous_plan": previous_plan, "downgraded_to": baseline.tier_id},
        ))
        return account

    # =========================================================================
    # Expire
    # =========================================================================

    def expire_if_due(self, account_id: str, now: Optional[datetime] = None) -> bool:
        """
        Downgrade the account if its membership has lapsed. Idempotent.

        Returns:
            True if this call performed the downgrade, False if there was
            nothing to do

        Raises:
            AccountNotFoundError: No such account
        """
        now = now or utcnow()

        def _write() -> Optional[Tuple[str, datetime, str]]:
            account = load_account(self.repository, account_id)
            # The flag, not the timestamp, decides whether there is anything left to expire
            if not account.membership.premium_active:
                return None
            if not account.membership.is_due(now):
                return None
            baseline = self.catalog.baseline_tier(account.account_class)
            self.repository.save_account(self._downgraded(account, baseline))
            return account.membership.plan_tier_id, account.membership.expires_at, baseline.tier_id

        outcome = run_with_optimistic_retry(
            _write, operation_name="membership_expire", entity_id=account_id
        )
        if outcome is None:
            return False

        previous_plan, expired_at, downgraded_to = outcome
        logger.info(
            "Premium membership expired",
            extra={
                "account_id": account_id,
                "previous_plan": previous_plan,
                "expired_at": expired_at.isoformat(),
                "downgraded_to": downgraded_to,
            },
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.PREMIUM_MEMBERSHIP_EXPIRED,
            actor_id=EXPIRATION_ACTOR,
            target_account_id=account_id,
            timestamp=now.isoformat(),
            details={
                "previous_plan": previous_plan,
                "expired_at": expired_at.isoformat(),
                "downgraded_to": downgraded_to,
            },
        ))
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate_activation(self, account: Account, tier: Tier) -> None:
        if isinstance(account, SalesAccount):
            raise InvalidTierTransitionError(
                "Sales accounts cannot hold a premium membership",
                account_id=account.account_id,
                tier_id=tier.tier_id,
            )
        if not tier.is_premium:
            raise InvalidTierTransitionError(
                f"{tier.tier_id} is not a premium tier",
                account_id=account.account_id,
                tier_id=tier.tier_id,
            )
        if not tier.active:
            raise InvalidTierTransitionError(
                f"{tier.tier_id} is no longer offered",
                account_id=account.account_id,
                tier_id=tier.tier_id,
            )
        if tier.account_class != account.account_class:
            raise InvalidTierTransitionError(
                f"{tier.tier_id} is a {tier.account_class.value} tier, "
                f"account is {account.account_class.value}",
                account_id=account.account_id,
                tier_id=tier.tier_id,
            )
        check_downgrade_quota(self.repository, account, tier)

    @staticmethod
    def _new_term(account: Account, tier: Tier, cycle: BillingCycle, now: datetime) -> MembershipDetails:
        current = account.membership
        start = now
        # A concurrent activation already started a later term
        if current.premium_active and current.activated_at is not None and current.activated_at > now:
            start = current.activated_at
        return MembershipDetails(
            premium_active=True,
            plan_tier_id=tier.tier_id,
            features_snapshot=tier.feature_ids,
            limits_snapshot=tier.limits,
            expires_at=start + cycle.term,
            auto_renew=True,
            billing_cycle=cycle,
            activated_at=start,
        )

    @staticmethod
    def _downgraded(account: Account, baseline: Tier) -> Account:
        return replace(
            account,
            current_tier_id=baseline.tier_id,
            membership=MembershipDetails(
                premium_active=False,
                plan_tier_id=baseline.tier_id,
                features_snapshot=baseline.feature_ids,
                limits_snapshot=baseline.limits,
            ),
        )
