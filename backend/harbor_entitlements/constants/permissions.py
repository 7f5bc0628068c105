"""
Canonical action and delegated-permission matrix for the marketplace.

IMPORTANT: This is the single source of truth for what every action needs.
Resource services name an Action; the authorization engine looks up the
feature, delegated permission and scope area it requires here.
Do NOT re-implement these mappings inline in resource services.

Sub-account roles (dealer staff):
- ADMIN: everything the parent dealer can delegate
- MANAGER: everything except pricing changes
- STAFF: listing view/edit and lead responses

A sub-account only receives the role defaults its parent can delegate at the
time (see PERMISSION_FEATURES).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet


class SubAccountRole(str, Enum):
    """Roles a dealer can assign to a sub-account."""
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


class ScopeArea(str, Enum):
    """
    Areas of a dealer's business a sub-account's access scope covers.

    LISTINGS is scoped by listing id ("all" or an explicit set), the other
    areas are plain on/off flags.
    """
    LISTINGS = "listings"
    LEADS = "leads"
    ANALYTICS = "analytics"
    INVENTORY = "inventory"
    PRICING = "pricing"
    COMMUNICATIONS = "communications"


class DelegatedPermission(str, Enum):
    """
    Permissions a parent account can delegate to a sub-account.

    Naming convention: VERB_RESOURCE
    """
    VIEW_LISTINGS = "view_listings"
    CREATE_LISTINGS = "create_listings"
    EDIT_LISTINGS = "edit_listings"
    DELETE_LISTINGS = "delete_listings"
    BULK_OPERATIONS = "bulk_operations"
    RESPOND_LEADS = "respond_leads"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_INVENTORY = "manage_inventory"
    MANAGE_PRICING = "manage_pricing"
    SEND_COMMUNICATIONS = "send_communications"


class Action(str, Enum):
    """Actions resource services ask the engine about."""
    LISTING_VIEW = "listing_view"
    LISTING_CREATE = "listing_create"
    LISTING_EDIT = "listing_edit"
    LISTING_DELETE = "listing_delete"
    LISTING_BULK_UPDATE = "listing_bulk_update"
    LEAD_RESPOND = "lead_respond"
    ANALYTICS_VIEW = "analytics_view"
    INVENTORY_MANAGE = "inventory_manage"
    PRICING_UPDATE = "pricing_update"
    COMMUNICATION_SEND = "communication_send"


@dataclass(frozen=True)
class ActionRequirement:
    """What an action needs: a feature on the account, a permission, a scope area."""
    feature_id: str
    permission: DelegatedPermission
    scope_area: ScopeArea


# Feature each delegated permission is backed by. A parent can only delegate
# a permission whose backing feature it currently resolves.
PERMISSION_FEATURES: Dict[DelegatedPermission, str] = {
    DelegatedPermission.VIEW_LISTINGS: "listings",
    DelegatedPermission.CREATE_LISTINGS: "listings",
    DelegatedPermission.EDIT_LISTINGS: "listings",
    DelegatedPermission.DELETE_LISTINGS: "listings",
    DelegatedPermission.BULK_OPERATIONS: "bulk-operations",
    DelegatedPermission.RESPOND_LEADS: "lead-management",
    DelegatedPermission.VIEW_ANALYTICS: "analytics",
    DelegatedPermission.MANAGE_INVENTORY: "inventory-management",
    DelegatedPermission.MANAGE_PRICING: "pricing-tools",
    DelegatedPermission.SEND_COMMUNICATIONS: "messaging",
}


def _requirement(permission: DelegatedPermission, area: ScopeArea) -> ActionRequirement:
    return ActionRequirement(
        feature_id=PERMISSION_FEATURES[permission],
        permission=permission,
        scope_area=area,
    )


ACTION_REQUIREMENTS: Dict[Action, ActionRequirement] = {
    Action.LISTING_VIEW: _requirement(DelegatedPermission.VIEW_LISTINGS, ScopeArea.LISTINGS),
    Action.LISTING_CREATE: _requirement(DelegatedPermission.CREATE_LISTINGS, ScopeArea.LISTINGS),
    Action.LISTING_EDIT: _requirement(DelegatedPermission.EDIT_LISTINGS, ScopeArea.LISTINGS),
    Action.LISTING_DELETE: _requirement(DelegatedPermission.DELETE_LISTINGS, ScopeArea.LISTINGS),
    Action.LISTING_BULK_UPDATE: _requirement(DelegatedPermission.BULK_OPERATIONS, ScopeArea.LISTINGS),
    Action.LEAD_RESPOND: _requirement(DelegatedPermission.RESPOND_LEADS, ScopeArea.LEADS),
    Action.ANALYTICS_VIEW: _requirement(DelegatedPermission.VIEW_ANALYTICS, ScopeArea.ANALYTICS),
    Action.INVENTORY_MANAGE: _requirement(DelegatedPermission.MANAGE_INVENTORY, ScopeArea.INVENTORY),
    Action.PRICING_UPDATE: _requirement(DelegatedPermission.MANAGE_PRICING, ScopeArea.PRICING),
    Action.COMMUNICATION_SEND: _requirement(DelegatedPermission.SEND_COMMUNICATIONS, ScopeArea.COMMUNICATIONS),
}


ROLE_DEFAULT_PERMISSIONS: Dict[SubAccountRole, FrozenSet[DelegatedPermission]] = {
    SubAccountRole.ADMIN: frozenset(DelegatedPermission),
    SubAccountRole.MANAGER: frozenset(DelegatedPermission) - {DelegatedPermission.MANAGE_PRICING},
    SubAccountRole.STAFF: frozenset({
        DelegatedPermission.VIEW_LISTINGS,
        DelegatedPermission.EDIT_LISTINGS,
        DelegatedPermission.RESPOND_LEADS,
    }),
}


def get_action_requirement(action: Action) -> ActionRequirement:
    """Look up what an action requires."""
    return ACTION_REQUIREMENTS[Action(action)]
