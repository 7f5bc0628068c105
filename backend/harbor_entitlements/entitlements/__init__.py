"""
Entitlement and delegation engine.

Services live in their own modules (accounts, capabilities, membership,
sub_accounts, delegation) and are imported from there; this package only
re-exports the value types, errors and the resolver.
"""

from harbor_entitlements.entitlements.errors import (
    AccountNotFoundError,
    EntitlementError,
    InvalidAccessScopeError,
    InvalidTierTransitionError,
    ParentEntitlementLapsedError,
    PermissionNotDelegatableError,
    SubAccountLimitReachedError,
    SubAccountNotFoundError,
    SubAccountSuspendedError,
    TierNotFoundError,
    TransientFailureError,
)
from harbor_entitlements.entitlements.models import (
    AccessScope,
    Account,
    AccountClass,
    BillingCycle,
    CapabilityGrant,
    DealerAccount,
    EffectiveEntitlement,
    IndividualAccount,
    Limits,
    MembershipDetails,
    SalesAccount,
    SubAccount,
    Tier,
)
from harbor_entitlements.entitlements.resolver import EntitlementResolver, resolve_entitlement

__all__ = [
    "AccessScope",
    "Account",
    "AccountClass",
    "AccountNotFoundError",
    "BillingCycle",
    "CapabilityGrant",
    "DealerAccount",
    "EffectiveEntitlement",
    "EntitlementError",
    "EntitlementResolver",
    "IndividualAccount",
    "InvalidAccessScopeError",
    "InvalidTierTransitionError",
    "Limits",
    "MembershipDetails",
    "ParentEntitlementLapsedError",
    "PermissionNotDelegatableError",
    "SalesAccount",
    "SubAccount",
    "SubAccountLimitReachedError",
    "SubAccountNotFoundError",
    "SubAccountSuspendedError",
    "Tier",
    "TierNotFoundError",
    "TransientFailureError",
    "resolve_entitlement",
]
