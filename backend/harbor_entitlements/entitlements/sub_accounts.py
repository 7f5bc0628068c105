"""
Sub-account service for dealer accounts.

Handles:
- Creating sub-accounts within the parent's tier quota (max_sub_accounts)
- Role defaults for delegated permissions and access scope
- Scope and permission updates
- Soft deletion (suspension)

Quota enforcement:
    The active count is read at the parent's current version, and the insert
    is committed together with a version bump on the parent row. Two
    concurrent creations cannot both pass the same count; the loser re-runs
    from a fresh read and sees the winner's sub-account.

A parent can only delegate permissions whose backing feature it currently
resolves, and can only scope a sub-account to listings it owns. Role
defaults are cut down to what the parent can delegate; explicitly requested
permissions are rejected instead.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from harbor_entitlements.constants.permissions import (
    PERMISSION_FEATURES,
    ROLE_DEFAULT_PERMISSIONS,
    DelegatedPermission,
    SubAccountRole,
)
from harbor_entitlements.entitlements.accounts import load_account, load_sub_account
from harbor_entitlements.entitlements.audit import AuditAction, AuditEvent, AuditSink, emit_audit_event
from harbor_entitlements.entitlements.errors import (
    InvalidAccessScopeError,
    InvalidAccountTypeError,
    PermissionNotDelegatableError,
    SubAccountLimitReachedError,
    SubAccountNotFoundError,
    SubAccountSuspendedError,
)
from harbor_entitlements.entitlements.models import (
    AccessScope,
    AccountClass,
    DealerAccount,
    EffectiveEntitlement,
    SubAccount,
    SubAccountStatus,
    permission_set,
    utcnow,
)
from harbor_entitlements.entitlements.ownership import OwnershipLookup, is_owned_by
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.entitlements.retry import read_with_retry, run_with_optimistic_retry
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

ScopeInput = Union[AccessScope, Mapping[str, Any], None]


# Access scope a new sub-account gets when none is given
ROLE_DEFAULT_SCOPES = {
    SubAccountRole.ADMIN: AccessScope(
        leads=True, analytics=True, inventory=True, pricing=True, communications=True,
    ),
    SubAccountRole.MANAGER: AccessScope(
        leads=True, analytics=True, inventory=True, communications=True,
    ),
    SubAccountRole.STAFF: AccessScope(leads=True),
}


def delegatable_role_defaults(
    role: SubAccountRole,
    entitlement: EffectiveEntitlement,
) -> FrozenSet[DelegatedPermission]:
    """Role default permissions, limited to those the parent can delegate right now."""
    return frozenset(
        p for p in ROLE_DEFAULT_PERMISSIONS[SubAccountRole(role)]
        if entitlement.has_feature(PERMISSION_FEATURES[p])
    )


class SubAccountService:
    """
    Service for managing a dealer's sub-accounts.

    All operations take the parent account id; a sub-account belonging to a
    different parent is reported as not found.
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

    # =========================================================================
    # Create
    # =========================================================================

    def create_sub_account(
        self,
        parent_account_id: str,
        email: str,
        name: Optional[str],
        role: SubAccountRole,
        access_scope: ScopeInput = None,
        delegated_permissions: Optional[Iterable[str]] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubAccount:
        """
        Create a sub-account under a dealer.

        Raises:
            ValueError: Invalid email, role, permission id or scope field
            AccountNotFoundError: Parent missing
            InvalidAccountTypeError: Parent is not a dealer
            PermissionNotDelegatableError: Parent lacks a permission's feature
            InvalidAccessScopeError: Scope names listings the parent does not own
            SubAccountLimitReachedError: Parent is at its tier quota
        """
        now = now or utcnow()
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValueError("A valid email is required")
        role = SubAccountRole(role)
        scope = _coerce_scope(access_scope) if access_scope is not None else ROLE_DEFAULT_SCOPES[role]
        explicit_permissions = (
            permission_set(delegated_permissions) if delegated_permissions is not None else None
        )

        self._validate_scope_ownership(parent_account_id, scope.listing_ids)

        def _write() -> SubAccount:
            parent = self._load_dealer(parent_account_id)
            entitlement = self.resolver.resolve(parent, now)
            if explicit_permissions is None:
                permissions = delegatable_role_defaults(role, entitlement)
            else:
                permissions = explicit_permissions
                self._validate_delegatable(parent_account_id, permissions, entitlement)

            active_count = self.repository.count_active_sub_accounts(parent_account_id)
            max_count = entitlement.limits.max_sub_accounts
            if active_count >= max_count:
                logger.info(
                    "Sub-account quota reached",
                    extra={
                        "parent_account_id": parent_account_id,
                        "current_count": active_count,
                        "max_count": max_count,
                    },
                )
                raise SubAccountLimitReachedError(parent_account_id, active_count, max_count)

            sub_account = SubAccount(
                sub_account_id=str(uuid.uuid4()),
                parent_account_id=parent_account_id,
                email=email,
                name=name,
                role=role,
                access_scope=scope,
                delegated_permissions=permissions,
                created_by=created_by,
                created_at=now,
            )
            return self.repository.add_sub_account(sub_account, parent_version=parent.version)

        sub_account = run_with_optimistic_retry(
            _write, operation_name="create_sub_account", entity_id=parent_account_id
        )

        logger.info(
            "Sub-account created",
            extra={
                "parent_account_id": parent_account_id,
                "sub_account_id": sub_account.sub_account_id,
                "role": role.value,
            },
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.SUB_ACCOUNT_CREATED,
            actor_id=created_by or parent_account_id,
            target_account_id=parent_account_id,
            timestamp=now.isoformat(),
            details={
                "sub_account_id": sub_account.sub_account_id,
                "role": role.value,
                "delegated_permissions": sorted(p.value for p in sub_account.delegated_permissions),
                "access_scope": scope.to_dict(),
            },
        ))
        return sub_account

    # =========================================================================
    # Read
    # =========================================================================

    def get_sub_account(self, parent_account_id: str, sub_account_id: str) -> SubAccount:
        """
        Raises:
            SubAccountNotFoundError: Missing, or owned by another parent
        """
        sub_account = load_sub_account(self.repository, sub_account_id)
        if sub_account.parent_account_id != parent_account_id:
            raise SubAccountNotFoundError(sub_account_id)
        return sub_account

    def list_sub_accounts(
        self,
        parent_account_id: str,
        include_suspended: bool = False,
    ) -> List[SubAccount]:
        """
        Raises:
            AccountNotFoundError: Parent missing
        """
        load_account(self.repository, parent_account_id)
        return read_with_retry(
            lambda: self.repository.list_sub_accounts(parent_account_id, include_suspended),
            operation_name="list_sub_accounts",
            before_retry=self.repository.db.rollback,
        )

    # =========================================================================
    # Update
    # =========================================================================

    def update_sub_account(
        self,
        parent_account_id: str,
        sub_account_id: str,
        role: Optional[SubAccountRole] = None,
        access_scope: ScopeInput = None,
        delegated_permissions: Optional[Iterable[str]] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubAccount:
        """
        Change role, access scope or delegated permissions.

        A mapping access_scope is merged into the current scope. A role
        change without explicit permissions resets permissions to the role
        defaults the parent can delegate.

        Raises:
            ValueError: Nothing to change, or invalid values
            SubAccountNotFoundError: Missing, or owned by another parent
            SubAccountSuspendedError: Sub-account is suspended
            PermissionNotDelegatableError: Parent lacks a permission's feature
            InvalidAccessScopeError: Scope names listings the parent does not own
        """
        if role is None and access_scope is None and delegated_permissions is None:
            raise ValueError("No changes requested")
        now = now or utcnow()
        new_role = SubAccountRole(role) if role is not None else None
        new_permissions = (
            permission_set(delegated_permissions) if delegated_permissions is not None else None
        )

        def _write() -> Tuple[SubAccount, List[str]]:
            current = self.get_sub_account(parent_account_id, sub_account_id)
            if not current.is_active:
                raise SubAccountSuspendedError(sub_account_id)

            changes = {}
            reset_to_role_defaults = False
            if new_role is not None and new_role != current.role:
                changes["role"] = new_role
                reset_to_role_defaults = new_permissions is None
            if new_permissions is not None and new_permissions != current.delegated_permissions:
                changes["delegated_permissions"] = new_permissions
            if access_scope is not None:
                if isinstance(access_scope, AccessScope):
                    scope = access_scope
                else:
                    scope = current.access_scope.merged(access_scope)
                if scope != current.access_scope:
                    self._validate_scope_ownership(
                        parent_account_id,
                        scope.listing_ids - current.access_scope.listing_ids,
                    )
                    changes["access_scope"] = scope

            if not changes:
                return current, []

            if reset_to_role_defaults or "delegated_permissions" in changes:
                parent = self._load_dealer(parent_account_id)
                entitlement = self.resolver.resolve(parent, now)
                if reset_to_role_defaults:
                    changes["delegated_permissions"] = delegatable_role_defaults(new_role, entitlement)
                else:
                    self._validate_delegatable(
                        parent_account_id, changes["delegated_permissions"], entitlement
                    )

            saved = self.repository.save_sub_account(replace(current, **changes))
            return saved, sorted(changes)

        sub_account, changed_fields = run_with_optimistic_retry(
            _write, operation_name="update_sub_account", entity_id=sub_account_id
        )
        if not changed_fields:
            return sub_account

        logger.info(
            "Sub-account updated",
            extra={
                "parent_account_id": parent_account_id,
                "sub_account_id": sub_account_id,
                "changed_fields": changed_fields,
            },
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.SUB_ACCOUNT_UPDATED,
            actor_id=actor_id or parent_account_id,
            target_account_id=parent_account_id,
            timestamp=now.isoformat(),
            details={"sub_account_id": sub_account_id, "changed_fields": changed_fields},
        ))
        return sub_account

    def suspend_sub_account(
        self,
        parent_account_id: str,
        sub_account_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubAccount:
        """
        Soft-delete a sub-account. Idempotent.

        Suspended sub-accounts no longer count against the quota.

        Raises:
            SubAccountNotFoundError: Missing, or owned by another parent
        """
        now = now or utcnow()

        def _write() -> Tuple[SubAccount, bool]:
            current = self.get_sub_account(parent_account_id, sub_account_id)
            if not current.is_active:
                return current, False
            saved = self.repository.save_sub_account(
                replace(current, status=SubAccountStatus.SUSPENDED)
            )
            return saved, True

        sub_account, changed = run_with_optimistic_retry(
            _write, operation_name="suspend_sub_account", entity_id=sub_account_id
        )
        if changed:
            logger.info(
                "Sub-account suspended",
                extra={"parent_account_id": parent_account_id, "sub_account_id": sub_account_id},
            )
            emit_audit_event(self.audit_sink, AuditEvent(
                action=AuditAction.SUB_ACCOUNT_SUSPENDED,
                actor_id=actor_id or parent_account_id,
                target_account_id=parent_account_id,
                reason=reason,
                timestamp=now.isoformat(),
                details={"sub_account_id": sub_account_id},
            ))
        return sub_account

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_dealer(self, parent_account_id: str) -> DealerAccount:
        parent = load_account(self.repository, parent_account_id)
        if not isinstance(parent, DealerAccount):
            raise InvalidAccountTypeError(
                parent_account_id, parent.account_class.value, AccountClass.DEALER.value
            )
        return parent

    @staticmethod
    def _validate_delegatable(
        parent_account_id: str,
        permissions: FrozenSet[DelegatedPermission],
        entitlement: EffectiveEntitlement,
    ) -> None:
        missing = [
            p for p in permissions if not entitlement.has_feature(PERMISSION_FEATURES[p])
        ]
        if missing:
            raise PermissionNotDelegatableError(parent_account_id, missing)

    def _validate_scope_ownership(self, parent_account_id: str, listing_ids: Iterable[str]) -> None:
        not_owned = [
            listing_id
            for listing_id in sorted(listing_ids)
            if not is_owned_by(self.ownership, self.repository, parent_account_id, listing_id)
        ]
        if not_owned:
            raise InvalidAccessScopeError(parent_account_id, not_owned)


def _coerce_scope(value: ScopeInput) -> AccessScope:
    if isinstance(value, AccessScope):
        return value
    return AccessScope.from_dict(value)
