"""
Account service: opening accounts, admin tier changes, sales assignments.

Handles:
- Opening individual / dealer / sales accounts on their baseline tier
- Admin tier changes (single and bulk, max 100 per batch)
- Assigning customers to sales accounts

Also hosts the shared loaders every engine service uses to read accounts
with the read-retry policy.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from harbor_entitlements.entitlements.audit import AuditAction, AuditEvent, AuditSink, emit_audit_event
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.errors import (
    AccountNotFoundError,
    BulkOperationLimitError,
    EntitlementError,
    InvalidAccountTypeError,
    InvalidTierTransitionError,
    SubAccountNotFoundError,
)
from harbor_entitlements.entitlements.models import (
    ACCOUNT_TYPES,
    Account,
    AccountClass,
    DealerAccount,
    SalesAccount,
    SubAccount,
    Tier,
    utcnow,
)
from harbor_entitlements.entitlements.retry import read_with_retry, run_with_optimistic_retry
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

# Maximum accounts per bulk operation
MAX_BULK_BATCH_SIZE = 100


def load_account(repository: AccountRepository, account_id: str) -> Account:
    """
    Raises:
        AccountNotFoundError: No such account
        TransientFailureError: Persistence failed twice
    """
    account = read_with_retry(
        lambda: repository.get_account(account_id),
        operation_name="get_account",
        before_retry=repository.db.rollback,
    )
    if account is None:
        raise AccountNotFoundError(account_id)
    return account


def load_sub_account(repository: AccountRepository, sub_account_id: str) -> SubAccount:
    """
    Raises:
        SubAccountNotFoundError: No such sub-account
        TransientFailureError: Persistence failed twice
    """
    sub_account = read_with_retry(
        lambda: repository.get_sub_account(sub_account_id),
        operation_name="get_sub_account",
        before_retry=repository.db.rollback,
    )
    if sub_account is None:
        raise SubAccountNotFoundError(sub_account_id)
    return sub_account


def check_downgrade_quota(repository: AccountRepository, account: Account, target: Tier) -> None:
    """
    Reject moving a dealer to a tier whose sub-account quota is below the
    number of active sub-accounts it already has.

    Raises:
        InvalidTierTransitionError: Too many active sub-accounts for the target tier
    """
    if not isinstance(account, DealerAccount):
        return
    active = repository.count_active_sub_accounts(account.account_id)
    if active > target.limits.max_sub_accounts:
        raise InvalidTierTransitionError(
            f"Dealer has {active} active sub-accounts but {target.tier_id} allows "
            f"{target.limits.max_sub_accounts}; suspend sub-accounts first",
            account_id=account.account_id,
            tier_id=target.tier_id,
            active_sub_accounts=active,
            max_sub_accounts=target.limits.max_sub_accounts,
        )


@dataclass
class BulkItemResult:
    """Outcome for one account in a bulk operation."""
    account_id: str
    success: bool
    tier_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "success": self.success,
            "tier_id": self.tier_id,
            "error_code": self.error_code,
            "message": self.message,
        }


@dataclass
class BulkUpdateResult:
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class AccountService:
    """
    Service for account-level administration.

    Premium membership changes live in MembershipLifecycleManager; this
    service only moves accounts between non-premium tiers.
    """

    def __init__(
        self,
        repository: AccountRepository,
        catalog: TierCatalog,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.audit_sink = audit_sink

    # =========================================================================
    # Open / Get
    # =========================================================================

    def open_account(
        self,
        account_class: AccountClass,
        tier_id: Optional[str] = None,
        account_id: Optional[str] = None,
        business_name: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Account:
        """
        Create an account on its class baseline, or on a given non-premium tier.

        Raises:
            TierNotFoundError: Unknown tier
            InvalidTierTransitionError: Premium tier or class mismatch
            AccountAlreadyExistsError: account_id is already taken
        """
        account_class = AccountClass(account_class)
        if tier_id is None:
            tier = self.catalog.baseline_tier(account_class)
        else:
            tier = self.catalog.get_tier(tier_id)
            self._validate_basic_tier(account_class, tier)

        kwargs = {"account_id": account_id or str(uuid.uuid4()), "current_tier_id": tier.tier_id}
        if account_class == AccountClass.DEALER:
            kwargs["business_name"] = business_name
        account = self.repository.add_account(ACCOUNT_TYPES[account_class](**kwargs))

        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.ACCOUNT_OPENED,
            actor_id=actor_id,
            target_account_id=account.account_id,
            details={"account_class": account_class.value, "tier_id": tier.tier_id},
        ))
        return account

    def get_account(self, account_id: str) -> Account:
        """
        Raises:
            AccountNotFoundError: No such account
        """
        return load_account(self.repository, account_id)

    # =========================================================================
    # Tier changes
    # =========================================================================

    def change_tier(
        self,
        account_id: str,
        tier_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        """
        Move an account to another non-premium tier of its class.

        Raises:
            AccountNotFoundError: No such account
            TierNotFoundError: Unknown tier
            InvalidTierTransitionError: Premium target, class mismatch, premium
                membership still active, or too many sub-accounts for the target
        """
        now = now or utcnow()
        tier = self.catalog.get_tier(tier_id)

        def _write() -> Tuple[Account, str]:
            account = load_account(self.repository, account_id)
            self._validate_basic_tier(account.account_class, tier)
            if account.membership.premium_active:
                raise InvalidTierTransitionError(
                    "Deactivate the premium membership before changing tier",
                    account_id=account_id,
                    tier_id=tier_id,
                )
            check_downgrade_quota(self.repository, account, tier)
            if account.current_tier_id == tier.tier_id:
                return account, account.current_tier_id
            saved = self.repository.save_account(replace(account, current_tier_id=tier.tier_id))
            return saved, account.current_tier_id

        account, previous_tier_id = run_with_optimistic_retry(
            _write, operation_name="change_tier", entity_id=account_id
        )

        if previous_tier_id != tier.tier_id:
            logger.info(
                "Account tier changed",
                extra={"account_id": account_id, "from_tier": previous_tier_id, "to_tier": tier.tier_id},
            )
            emit_audit_event(self.audit_sink, AuditEvent(
                action=AuditAction.TIER_CHANGED,
                actor_id=actor_id,
                target_account_id=account_id,
                timestamp=now.isoformat(),
                details={"previous_tier_id": previous_tier_id, "tier_id": tier.tier_id},
            ))
        return account

    def bulk_update_tiers(
        self,
        updates: Sequence[Tuple[str, str]],
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BulkUpdateResult:
        """
        Change the tier of many accounts. Each item succeeds or fails on its own.

        Args:
            updates: (account_id, tier_id) pairs, at most MAX_BULK_BATCH_SIZE

        Raises:
            BulkOperationLimitError: More than MAX_BULK_BATCH_SIZE items
        """
        if len(updates) > MAX_BULK_BATCH_SIZE:
            raise BulkOperationLimitError(len(updates), MAX_BULK_BATCH_SIZE)

        now = now or utcnow()
        result = BulkUpdateResult()
        for account_id, tier_id in updates:
            try:
                account = self.change_tier(account_id, tier_id, actor_id=actor_id, now=now)
                result.results.append(BulkItemResult(
                    account_id=account_id,
                    success=True,
                    tier_id=account.current_tier_id,
                ))
            except EntitlementError as e:
                result.results.append(BulkItemResult(
                    account_id=account_id,
                    success=False,
                    tier_id=tier_id,
                    error_code=e.error_code,
                    message=e.message,
                ))

        logger.info(
            "Bulk tier update complete",
            extra={"actor_id": actor_id, "succeeded": result.succeeded, "failed": result.failed},
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.BULK_TIER_UPDATE,
            actor_id=actor_id,
            target_account_id=None,
            timestamp=now.isoformat(),
            details={
                "requested": len(updates),
                "succeeded": result.succeeded,
                "failed": result.failed,
                "account_ids": [account_id for account_id, _ in updates],
            },
        ))
        return result

    # =========================================================================
    # Sales assignments
    # =========================================================================

    def assign_customer(
        self,
        sales_account_id: str,
        customer_account_id: str,
        actor_id: Optional[str] = None,
    ) -> SalesAccount:
        """
        Assign a customer account to a sales account. Idempotent.

        Raises:
            AccountNotFoundError: Sales or customer account missing
            InvalidAccountTypeError: First account is not a sales account
        """
        load_account(self.repository, customer_account_id)

        def _write() -> SalesAccount:
            sales = self._load_sales(sales_account_id)
            if customer_account_id in sales.assigned_customer_ids:
                return sales
            return self.repository.save_account(replace(
                sales,
                assigned_customer_ids=sales.assigned_customer_ids | {customer_account_id},
            ))

        sales = run_with_optimistic_retry(
            _write, operation_name="assign_customer", entity_id=sales_account_id
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.SALES_CUSTOMER_ASSIGNED,
            actor_id=actor_id,
            target_account_id=sales_account_id,
            details={"customer_account_id": customer_account_id},
        ))
        return sales

    def list_customers(self, sales_account_id: str) -> List[str]:
        return sorted(self._load_sales(sales_account_id).assigned_customer_ids)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_sales(self, sales_account_id: str) -> SalesAccount:
        account = load_account(self.repository, sales_account_id)
        if not isinstance(account, SalesAccount):
            raise InvalidAccountTypeError(
                sales_account_id, account.account_class.value, AccountClass.SALES.value
            )
        return account

    def _validate_basic_tier(self, account_class: AccountClass, tier: Tier) -> None:
        if tier.is_premium:
            raise InvalidTierTransitionError(
                f"{tier.tier_id} is a premium tier; use membership activation",
                tier_id=tier.tier_id,
            )
        expected = self.catalog.baseline_tier(account_class).account_class
        if tier.account_class != expected:
            raise InvalidTierTransitionError(
                f"{tier.tier_id} is a {tier.account_class.value} tier, "
                f"account class is {AccountClass(account_class).value}",
                tier_id=tier.tier_id,
            )
