"""
API tests through FastAPI's TestClient.

Every collaborator dependency is overridden with the test fixtures, so the
routes run against the in-memory database and the in-memory ownership map.
"""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from harbor_entitlements.api.dependencies import (
    create_authorization_check,
    get_audit_sink,
    get_billing_gateway,
    get_ownership_lookup,
    get_tier_catalog,
)
from harbor_entitlements.constants.permissions import Action, SubAccountRole
from harbor_entitlements.database.session import get_db_session
from harbor_entitlements.entitlements.billing import LoggingBillingGateway
from harbor_entitlements.main import app


def _override_dependencies(target_app, db_session, catalog, ownership, audit_sink):
    def _db_session():
        yield db_session

    target_app.dependency_overrides[get_db_session] = _db_session
    target_app.dependency_overrides[get_tier_catalog] = lambda: catalog
    target_app.dependency_overrides[get_ownership_lookup] = lambda: ownership
    target_app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    target_app.dependency_overrides[get_billing_gateway] = LoggingBillingGateway


@pytest.fixture
def client(db_session, catalog, ownership, audit_sink):
    _override_dependencies(app, db_session, catalog, ownership, audit_sink)
    yield TestClient(app)
    app.dependency_overrides.clear()


# =============================================================================
# Health / Tiers
# =============================================================================

class TestHealthAndTiers:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["tier_catalog_version"] == 1
        assert body["active_tiers"] == 4

    def test_list_tiers(self, client):
        body = client.get("/api/tiers").json()

        assert body["total"] == 4
        assert [t["tier_id"] for t in body["tiers"]][0] == "individual-basic"

    def test_list_tiers_by_class(self, client):
        body = client.get("/api/tiers", params={"account_class": "dealer"}).json()

        assert [t["tier_id"] for t in body["tiers"]] == ["dealer-basic", "dealer-premium"]
        assert body["tiers"][1]["pricing"]["monthly_cents"] == 19999

    def test_invalid_account_class(self, client):
        assert client.get("/api/tiers", params={"account_class": "robot"}).status_code == 422

    def test_get_tier(self, client):
        body = client.get("/api/tiers/dealer-basic").json()

        assert body["limits"]["max_sub_accounts"] == 3
        assert "analytics" not in body["features"]

    def test_unknown_tier(self, client):
        response = client.get("/api/tiers/platinum")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "TIER_NOT_FOUND"


# =============================================================================
# Authorize
# =============================================================================

class TestAuthorizeRoute:

    def test_allowed(self, client, dealer):
        response = client.post(
            "/api/authorize", json={"actor_id": dealer.account_id, "action": "listing_edit"}
        )

        assert response.status_code == 200
        assert response.json() == {"allowed": True, "reason": None}

    def test_denied_is_not_an_error(self, client, dealer):
        response = client.post(
            "/api/authorize", json={"actor_id": dealer.account_id, "action": "analytics_view"}
        )

        assert response.status_code == 200
        assert response.json() == {"allowed": False, "reason": "FEATURE_NOT_ENTITLED"}

    def test_sub_account_scope(self, client, sub_account_service, ownership, dealer, now):
        ownership.register("L1", dealer.account_id)
        sub = sub_account_service.create_sub_account(
            dealer.account_id, "staff@example.com", None, SubAccountRole.STAFF,
            access_scope={"listings": ["L1"], "leads": True}, now=now,
        )

        response = client.post(
            "/api/authorize",
            json={"actor_id": sub.sub_account_id, "action": "listing_edit", "resource_id": "L2"},
        )

        assert response.json() == {"allowed": False, "reason": "OUT_OF_SCOPE"}

    def test_invalid_action(self, client, dealer):
        response = client.post(
            "/api/authorize", json={"actor_id": dealer.account_id, "action": "launch_rockets"}
        )

        assert response.status_code == 422


# =============================================================================
# Accounts
# =============================================================================

class TestAccountRoutes:

    def test_entitlements(self, client, individual):
        response = client.get(f"/api/accounts/{individual.account_id}/entitlements")

        assert response.status_code == 200
        body = response.json()
        assert body["tier_id"] == "individual-basic"
        assert body["premium_active"] is False
        assert body["limits"]["max_listings"] == 3

    def test_entitlements_missing_account(self, client):
        response = client.get("/api/accounts/nobody/entitlements")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "ACCOUNT_NOT_FOUND"

    def test_activate_then_deactivate(self, client, individual, audit_sink):
        activated = client.post(
            f"/api/accounts/{individual.account_id}/membership",
            json={"tier_id": "individual-premium", "billing_cycle": "yearly", "actor_id": "user-1"},
        )

        assert activated.status_code == 200
        assert activated.json()["premium_active"] is True
        assert activated.json()["billing_cycle"] == "yearly"
        assert activated.json()["tier_id"] == "individual-premium"

        entitlements = client.get(f"/api/accounts/{individual.account_id}/entitlements").json()
        assert entitlements["premium_active"] is True
        assert entitlements["limits"]["max_listings"] == 10

        deactivated = client.delete(
            f"/api/accounts/{individual.account_id}/membership",
            params={"actor_id": "user-1", "reason": "too expensive"},
        )

        assert deactivated.status_code == 200
        assert deactivated.json()["premium_active"] is False
        assert deactivated.json()["tier_id"] == "individual-basic"
        assert audit_sink.of("PREMIUM_MEMBERSHIP_DEACTIVATED")[0].reason == "too expensive"

    def test_activate_wrong_class(self, client, individual):
        response = client.post(
            f"/api/accounts/{individual.account_id}/membership", json={"tier_id": "dealer-premium"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "INVALID_TIER_TRANSITION"

    def test_activate_invalid_body(self, client, individual):
        response = client.post(
            f"/api/accounts/{individual.account_id}/membership",
            json={"tier_id": "individual-premium", "billing_cycle": "weekly"},
        )

        assert response.status_code == 422


# =============================================================================
# create_authorization_check
# =============================================================================

class TestAuthorizationCheckDependency:

    @pytest.fixture
    def listing_client(self, db_session, catalog, ownership, audit_sink):
        listing_app = FastAPI()
        check_listing_edit = create_authorization_check(Action.LISTING_EDIT, "listing_id")

        @listing_app.put("/listings/{listing_id}")
        async def edit_listing(listing_id: str, decision=Depends(check_listing_edit)):
            return {"listing_id": listing_id, "actor_id": decision.actor_id}

        _override_dependencies(listing_app, db_session, catalog, ownership, audit_sink)
        return TestClient(listing_app)

    @pytest.fixture
    def staff(self, sub_account_service, ownership, dealer, now):
        ownership.register("L1", dealer.account_id)
        ownership.register("L-foreign", "dealer-2")
        return sub_account_service.create_sub_account(
            dealer.account_id, "staff@example.com", None, SubAccountRole.STAFF, now=now
        )

    def test_allowed(self, listing_client, staff):
        response = listing_client.put("/listings/L1", headers={"X-Actor-Id": staff.sub_account_id})

        assert response.status_code == 200
        assert response.json() == {"listing_id": "L1", "actor_id": staff.sub_account_id}

    def test_not_owned(self, listing_client, staff):
        response = listing_client.put("/listings/L-foreign", headers={"X-Actor-Id": staff.sub_account_id})

        assert response.status_code == 403
        assert response.json()["detail"]["details"]["reason"] == "NOT_OWNED_BY_PARENT"

    def test_suspended(self, listing_client, sub_account_service, staff, dealer, now):
        sub_account_service.suspend_sub_account(dealer.account_id, staff.sub_account_id, now=now)

        response = listing_client.put("/listings/L1", headers={"X-Actor-Id": staff.sub_account_id})

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "SUSPENDED"

    def test_unknown_actor(self, listing_client, staff):
        response = listing_client.put("/listings/L1", headers={"X-Actor-Id": "ghost"})

        assert response.status_code == 404

    def test_missing_actor_header(self, listing_client, staff):
        assert listing_client.put("/listings/L1").status_code == 422
