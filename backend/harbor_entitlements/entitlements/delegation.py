"""
Delegation authorization engine.

Single decision function every resource service calls before a mutation:

    engine.authorize(actor_id, action, resource_id=None) -> AuthorizationDecision

Primary accounts: allowed iff their resolved entitlement has the feature
backing the action.

Sub-accounts, checked in this fixed order (first failure wins):
    1. status                 SUSPENDED
    2. delegated permission   PERMISSION_NOT_DELEGATED
    3. access scope           OUT_OF_SCOPE
    4. resource ownership     NOT_OWNED_BY_PARENT
    5. parent ceiling         PARENT_ENTITLEMENT_LAPSED

The parent ceiling always runs last so a scope violation is never reported
as an entitlement problem.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from harbor_entitlements.constants.permissions import (
    Action,
    ActionRequirement,
    get_action_requirement,
)
from harbor_entitlements.entitlements.accounts import load_account
from harbor_entitlements.entitlements.audit import AuditAction, AuditEvent, AuditSink, emit_audit_event
from harbor_entitlements.entitlements.errors import (
    AccountNotFoundError,
    AuthorizationDeniedError,
    ParentEntitlementLapsedError,
    SubAccountSuspendedError,
)
from harbor_entitlements.entitlements.models import SubAccount, utcnow
from harbor_entitlements.entitlements.ownership import OwnershipLookup, is_owned_by
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.entitlements.retry import read_with_retry
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)


class DenyReason(str, Enum):
    """Machine-readable denial reasons."""
    SUSPENDED = "SUSPENDED"
    PERMISSION_NOT_DELEGATED = "PERMISSION_NOT_DELEGATED"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"
    NOT_OWNED_BY_PARENT = "NOT_OWNED_BY_PARENT"
    PARENT_ENTITLEMENT_LAPSED = "PARENT_ENTITLEMENT_LAPSED"
    FEATURE_NOT_ENTITLED = "FEATURE_NOT_ENTITLED"
    ACTOR_NOT_FOUND = "ACTOR_NOT_FOUND"


# Denials that are written to the audit trail
AUDITED_DENIALS = frozenset({
    DenyReason.SUSPENDED,
    DenyReason.NOT_OWNED_BY_PARENT,
    DenyReason.PARENT_ENTITLEMENT_LAPSED,
})


@dataclass(frozen=True)
class AuthorizationDecision:
    """Allow, or Deny with a reason code."""
    allowed: bool
    actor_id: str
    action: Action
    reason: Optional[DenyReason] = None
    resource_id: Optional[str] = None
    parent_account_id: Optional[str] = None
    feature_id: Optional[str] = None

    @classmethod
    def allow(cls, actor_id: str, action: Action, **kwargs) -> "AuthorizationDecision":
        return cls(allowed=True, actor_id=actor_id, action=action, **kwargs)

    @classmethod
    def deny(cls, reason: DenyReason, actor_id: str, action: Action, **kwargs) -> "AuthorizationDecision":
        return cls(allowed=False, reason=reason, actor_id=actor_id, action=action, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
        }

    def raise_if_denied(self) -> None:
        """
        Raise the matching EntitlementError for a denial.

        Raises:
            SubAccountSuspendedError: SUSPENDED
            ParentEntitlementLapsedError: PARENT_ENTITLEMENT_LAPSED
            AccountNotFoundError: ACTOR_NOT_FOUND
            AuthorizationDeniedError: Any other reason
        """
        if self.allowed:
            return
        if self.reason == DenyReason.SUSPENDED:
            raise SubAccountSuspendedError(self.actor_id)
        if self.reason == DenyReason.PARENT_ENTITLEMENT_LAPSED:
            raise ParentEntitlementLapsedError(self.parent_account_id, self.feature_id)
        if self.reason == DenyReason.ACTOR_NOT_FOUND:
            raise AccountNotFoundError(self.actor_id)
        raise AuthorizationDeniedError(
            self.reason.value, self.actor_id, self.action.value, self.resource_id
        )


class DelegationAuthorizationEngine:
    """
    Usage:
        engine = DelegationAuthorizationEngine(repository, resolver, ownership, audit_sink)
        decision = engine.authorize(actor_id, Action.LISTING_EDIT, listing_id)
        decision.raise_if_denied()
    """

    def __init__(
        self,
        repository: AccountRepository,
        resolver: EntitlementResolver,
        ownership: OwnershipLookup,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.repository = repository
        self.resolver = resolver
        self.ownership = ownership
        self.audit_sink = audit_sink

    def authorize(
        self,
        actor_id: str,
        action: Action,
        resource_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuthorizationDecision:
        """
        Decide whether an actor may perform an action.

        Raises:
            ValueError: Unknown action
            AccountNotFoundError: A sub-account's parent no longer exists
            TransientFailureError: A read failed twice
        """
        now = now or utcnow()
        action = Action(action)
        requirement = get_action_requirement(action)

        account = read_with_retry(
            lambda: self.repository.get_account(actor_id),
            operation_name="get_account",
            before_retry=self.repository.db.rollback,
        )
        if account is not None:
            entitlement = self.resolver.resolve(account, now)
            if entitlement.has_feature(requirement.feature_id):
                return AuthorizationDecision.allow(actor_id, action, resource_id=resource_id)
            return self._deny(
                DenyReason.FEATURE_NOT_ENTITLED, actor_id, action,
                resource_id=resource_id, feature_id=requirement.feature_id,
            )

        sub_account = read_with_retry(
            lambda: self.repository.get_sub_account(actor_id),
            operation_name="get_sub_account",
            before_retry=self.repository.db.rollback,
        )
        if sub_account is None:
            return self._deny(DenyReason.ACTOR_NOT_FOUND, actor_id, action, resource_id=resource_id)

        return self._authorize_delegated(sub_account, action, requirement, resource_id, now)

    def _authorize_delegated(
        self,
        sub_account: SubAccount,
        action: Action,
        requirement: ActionRequirement,
        resource_id: Optional[str],
        now: datetime,
    ) -> AuthorizationDecision:
        actor_id = sub_account.sub_account_id
        parent_id = sub_account.parent_account_id
        context = {"resource_id": resource_id, "parent_account_id": parent_id}

        # 1. Status
        if not sub_account.is_active:
            return self._deny(DenyReason.SUSPENDED, actor_id, action, **context)

        # 2. Delegated permission
        if requirement.permission not in sub_account.delegated_permissions:
            return self._deny(DenyReason.PERMISSION_NOT_DELEGATED, actor_id, action, **context)

        # 3. Access scope: the area flag, then the listing set for any resource
        scope = sub_account.access_scope
        if not scope.allows(requirement.scope_area):
            return self._deny(DenyReason.OUT_OF_SCOPE, actor_id, action, **context)
        if resource_id is not None and not scope.covers_listing(resource_id):
            return self._deny(DenyReason.OUT_OF_SCOPE, actor_id, action, **context)

        # 4. Ownership
        if resource_id is not None and not is_owned_by(
            self.ownership, self.repository, parent_id, resource_id
        ):
            return self._deny(DenyReason.NOT_OWNED_BY_PARENT, actor_id, action, **context)

        # 5. Parent ceiling
        parent = load_account(self.repository, parent_id)
        if not self.resolver.resolve(parent, now).has_feature(requirement.feature_id):
            return self._deny(
                DenyReason.PARENT_ENTITLEMENT_LAPSED, actor_id, action,
                feature_id=requirement.feature_id, **context,
            )

        return AuthorizationDecision.allow(actor_id, action, **context)

    def _deny(self, reason: DenyReason, actor_id: str, action: Action, **kwargs) -> AuthorizationDecision:
        decision = AuthorizationDecision.deny(reason, actor_id, action, **kwargs)
        logger.info(
            "Authorization denied",
            extra={
                "actor_id": actor_id,
                "action": action.value,
                "reason": reason.value,
                "resource_id": decision.resource_id,
            },
        )
        if reason in AUDITED_DENIALS:
            emit_audit_event(self.audit_sink, AuditEvent(
                action=AuditAction.DELEGATION_DENIED,
                actor_id=actor_id,
                target_account_id=decision.parent_account_id,
                reason=reason.value,
                details={
                    "action": action.value,
                    "resource_id": decision.resource_id,
                    "feature_id": decision.feature_id,
                },
            ))
        return decision
