"""
Tests for the premium membership state machine.

Tests cover:
- activate: term length, renewal from `now`, validation, billing failures
- deactivate: downgrade to baseline, sub-account quota, no-op
- expire_if_due: idempotence, audit, quota not enforced on expiry
- Write conflicts: re-run without charging again
"""

import logging
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from harbor_entitlements.config.tier_catalog import TierCatalogLoader
from harbor_entitlements.constants.permissions import SubAccountRole
from harbor_entitlements.entitlements.audit import AuditAction
from harbor_entitlements.entitlements.billing import BillingResult, LoggingBillingGateway
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.errors import (
    AccountNotFoundError,
    BillingFailedError,
    ConcurrentModificationError,
    InvalidTierTransitionError,
    TierNotFoundError,
    TransientFailureError,
)
from harbor_entitlements.entitlements.membership import (
    EXPIRATION_ACTOR,
    MembershipLifecycleManager,
)
from harbor_entitlements.entitlements.models import AccountClass, BillingCycle
from harbor_entitlements.repositories.account_repo import AccountRepository


@pytest.fixture
def billing():
    return MagicMock(wraps=LoggingBillingGateway())


@pytest.fixture
def manager(repository, catalog, billing, audit_sink):
    return MembershipLifecycleManager(repository, catalog, billing=billing, audit_sink=audit_sink)


def _add_staff(sub_account_service, parent_id, count, now):
    for i in range(count):
        sub_account_service.create_sub_account(
            parent_id, f"staff{i}@example.com", f"Staff {i}", SubAccountRole.STAFF, now=now
        )


# =============================================================================
# Activate
# =============================================================================

class TestActivate:

    def test_yearly_activation(self, premium_dealer, repository, now):
        stored = repository.get_account(premium_dealer.account_id)

        assert stored.current_tier_id == "dealer-premium"
        assert stored.membership.premium_active is True
        assert stored.membership.plan_tier_id == "dealer-premium"
        assert stored.membership.billing_cycle == BillingCycle.YEARLY
        assert stored.membership.expires_at == now + timedelta(days=365)
        assert stored.membership.activated_at == now
        assert stored.membership.auto_renew is True
        assert stored.membership.limits_snapshot.max_sub_accounts == 10
        assert "pricing-tools" in stored.membership.features_snapshot

    def test_monthly_activation_and_audit(self, manager, individual, audit_sink, now):
        account = manager.activate(
            individual.account_id,
            "individual-premium",
            BillingCycle.MONTHLY,
            payment_method_id="pm_123",
            actor_id="user-1",
            now=now,
        )

        assert account.membership.expires_at == now + timedelta(days=30)
        assert account.payment_method_id == "pm_123"
        assert account.version == individual.version + 1

        events = audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_ACTIVATED)
        assert len(events) == 1
        assert events[0].actor_id == "user-1"
        assert events[0].details["previous_tier_id"] == "individual-basic"
        assert events[0].details["tier_id"] == "individual-premium"
        assert events[0].details["billing_cycle"] == "monthly"

    def test_reactivation_starts_fresh_term(self, manager, individual, now):
        manager.activate(individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now)
        later = now + timedelta(days=10)

        account = manager.activate(individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=later)

        # Leftover 20 days are not stacked on top
        assert account.membership.expires_at == later + timedelta(days=30)

    def test_non_premium_tier_rejected(self, manager, individual, billing, now):
        with pytest.raises(InvalidTierTransitionError):
            manager.activate(individual.account_id, "individual-basic", BillingCycle.MONTHLY, now=now)
        billing.record_activation.assert_not_called()

    def test_class_mismatch_rejected(self, manager, individual, now):
        with pytest.raises(InvalidTierTransitionError, match="dealer tier"):
            manager.activate(individual.account_id, "dealer-premium", BillingCycle.MONTHLY, now=now)

    def test_sales_account_rejected(self, manager, account_service, now):
        sales = account_service.open_account(AccountClass.SALES, account_id="sales-1")

        with pytest.raises(InvalidTierTransitionError, match="Sales accounts"):
            manager.activate(sales.account_id, "individual-premium", BillingCycle.MONTHLY, now=now)

    def test_unknown_tier(self, manager, individual, now):
        with pytest.raises(TierNotFoundError):
            manager.activate(individual.account_id, "platinum", BillingCycle.MONTHLY, now=now)

    def test_unknown_account(self, manager, now):
        with pytest.raises(AccountNotFoundError):
            manager.activate("nobody", "individual-premium", BillingCycle.MONTHLY, now=now)

    def test_billing_failure_leaves_state_unchanged(self, repository, catalog, audit_sink, individual, now):
        billing = MagicMock()
        billing.record_activation.return_value = BillingResult(success=False, message="card declined")
        manager = MembershipLifecycleManager(repository, catalog, billing=billing, audit_sink=audit_sink)

        with pytest.raises(BillingFailedError) as exc_info:
            manager.activate(individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now)

        assert exc_info.value.error_code == "BILLING_FAILED"
        stored = repository.get_account(individual.account_id)
        assert stored.version == individual.version
        assert stored.membership.premium_active is False
        assert audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_ACTIVATED) == []

    @pytest.mark.concurrency
    def test_write_conflict_does_not_charge_twice(self, manager, repository, billing, individual, now):
        original_save = repository.save_account
        calls = []

        def flaky_save(account):
            calls.append(account.version)
            if len(calls) == 1:
                raise ConcurrentModificationError(account.account_id, account.version)
            return original_save(account)

        with patch.object(repository, "save_account", side_effect=flaky_save):
            account = manager.activate(
                individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now
            )

        assert len(calls) == 2
        assert billing.record_activation.call_count == 1
        assert account.membership.premium_active is True

    @pytest.mark.concurrency
    def test_concurrent_activation_last_writer_wins(
        self, manager, repository, db_session, catalog, audit_sink, individual, now
    ):
        competitor = MembershipLifecycleManager(AccountRepository(db_session), catalog)
        original_save = repository.save_account
        raced = []

        def racing_save(account):
            if not raced:
                raced.append(True)
                competitor.activate(
                    individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now
                )
            return original_save(account)

        later = now + timedelta(hours=1)
        with patch.object(repository, "save_account", side_effect=racing_save):
            account = manager.activate(
                individual.account_id, "individual-premium", BillingCycle.YEARLY, now=later
            )

        stored = repository.get_account(individual.account_id)
        assert stored.version == 3
        assert stored.membership.billing_cycle == BillingCycle.YEARLY
        assert stored.membership.expires_at == later + timedelta(days=365)
        assert account.version == stored.version
        assert len(audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_ACTIVATED)) == 1

    @pytest.mark.concurrency
    def test_earlier_activation_never_shortens_a_later_term(
        self, manager, repository, db_session, catalog, individual, now
    ):
        competitor = MembershipLifecycleManager(AccountRepository(db_session), catalog)
        original_save = repository.save_account
        later = now + timedelta(hours=1)
        winner = []

        def racing_save(account):
            if not winner:
                winner.append(competitor.activate(
                    individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=later
                ))
            return original_save(account)

        with patch.object(repository, "save_account", side_effect=racing_save):
            account = manager.activate(
                individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now
            )

        stored = repository.get_account(individual.account_id)
        assert stored.version == 3
        assert stored.membership.expires_at == later + timedelta(days=30)
        assert stored.membership.expires_at == winner[0].membership.expires_at
        assert account.membership.expires_at == stored.membership.expires_at

    def test_billing_receives_idempotency_key(self, manager, billing, audit_sink, individual, now):
        manager.activate(
            individual.account_id, "individual-premium", BillingCycle.MONTHLY,
            now=now, idempotency_key="req-1",
        )

        assert billing.record_activation.call_args.kwargs["idempotency_key"] == "req-1"
        event = audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_ACTIVATED)[0]
        assert event.details["billing_reference"] == "req-1"

    def test_generated_idempotency_keys_are_unique(self, manager, billing, individual, now):
        for _ in range(2):
            manager.activate(individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now)

        keys = [c.kwargs["idempotency_key"] for c in billing.record_activation.call_args_list]
        assert len(set(keys)) == 2

    @pytest.mark.concurrency
    def test_retry_after_failed_write_not_charged_twice(
        self, manager, repository, individual, caplog, now
    ):
        conflict = ConcurrentModificationError(individual.account_id, individual.version)
        with patch.object(repository, "save_account", side_effect=conflict):
            with pytest.raises(TransientFailureError):
                manager.activate(
                    individual.account_id, "individual-premium", BillingCycle.MONTHLY,
                    now=now, idempotency_key="req-1",
                )

        with caplog.at_level(logging.INFO, logger="harbor_entitlements.entitlements.billing"):
            account = manager.activate(
                individual.account_id, "individual-premium", BillingCycle.MONTHLY,
                now=now, idempotency_key="req-1",
            )

        messages = [r.getMessage() for r in caplog.records if r.name.endswith("billing")]
        assert messages == ["Premium activation already recorded"]
        assert account.membership.premium_active is True

    def test_activation_checks_sub_account_quota(
        self, account_service, sub_account_service, repository,
        make_yaml_config, default_catalog_config, now,
    ):
        # A premium tier with room for fewer sub-accounts than the dealer holds
        config = dict(default_catalog_config)
        small = dict(default_catalog_config["tiers"][3])
        small["tier_id"] = "dealer-premium-lite"
        small["limits"] = dict(small["limits"], max_sub_accounts=1)
        config["tiers"] = list(default_catalog_config["tiers"]) + [small]

        lite_catalog = TierCatalog(TierCatalogLoader(str(make_yaml_config("tiers.yml", config))))
        dealer = account_service.open_account(AccountClass.DEALER, account_id="dealer-q")
        _add_staff(sub_account_service, dealer.account_id, 2, now)

        lite_manager = MembershipLifecycleManager(repository, lite_catalog)
        with pytest.raises(InvalidTierTransitionError, match="sub-accounts"):
            lite_manager.activate(dealer.account_id, "dealer-premium-lite", BillingCycle.MONTHLY, now=now)


# =============================================================================
# Deactivate
# =============================================================================

class TestDeactivate:

    def test_deactivate_downgrades_to_baseline(self, membership_manager, premium_dealer, audit_sink, now):
        account = membership_manager.deactivate(
            premium_dealer.account_id, actor_id="admin-1", reason="requested", now=now + timedelta(days=1)
        )

        assert account.current_tier_id == "dealer-basic"
        assert account.membership.premium_active is False
        assert account.membership.plan_tier_id == "dealer-basic"
        assert account.membership.limits_snapshot.max_sub_accounts == 3

        event = audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_DEACTIVATED)[0]
        assert event.actor_id == "admin-1"
        assert event.reason == "requested"
        assert event.details == {"previous_plan": "dealer-premium", "downgraded_to": "dealer-basic"}

    def test_deactivate_non_premium_is_noop(self, manager, individual, billing, audit_sink, now):
        account = manager.deactivate(individual.account_id, now=now)

        assert account.version == individual.version
        billing.record_deactivation.assert_not_called()
        assert audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_DEACTIVATED) == []

    def test_billing_failure_on_deactivation_is_tolerated(self, repository, catalog, individual, now):
        billing = MagicMock()
        billing.record_activation.return_value = BillingResult(success=True, reference="ch_1")
        billing.record_deactivation.return_value = BillingResult(success=False, message="timeout")
        manager = MembershipLifecycleManager(repository, catalog, billing=billing)
        manager.activate(individual.account_id, "individual-premium", BillingCycle.MONTHLY, now=now)

        account = manager.deactivate(individual.account_id, now=now)

        assert account.membership.premium_active is False
        billing.record_deactivation.assert_called_once_with(individual.account_id, "individual-premium")

    def test_deactivate_rejected_when_sub_accounts_exceed_baseline(
        self, membership_manager, sub_account_service, repository, premium_dealer, now
    ):
        _add_staff(sub_account_service, premium_dealer.account_id, 5, now)

        with pytest.raises(InvalidTierTransitionError) as exc_info:
            membership_manager.deactivate(premium_dealer.account_id, now=now)

        assert exc_info.value.details["active_sub_accounts"] == 5
        assert exc_info.value.details["max_sub_accounts"] == 3
        assert repository.get_account(premium_dealer.account_id).membership.premium_active is True

    def test_deactivate_allowed_after_suspending(
        self, membership_manager, sub_account_service, premium_dealer, now
    ):
        _add_staff(sub_account_service, premium_dealer.account_id, 4, now)
        first = sub_account_service.list_sub_accounts(premium_dealer.account_id)[0]
        sub_account_service.suspend_sub_account(premium_dealer.account_id, first.sub_account_id, now=now)

        account = membership_manager.deactivate(premium_dealer.account_id, now=now)

        assert account.current_tier_id == "dealer-basic"


# =============================================================================
# Expire
# =============================================================================

class TestExpireIfDue:

    def test_not_due(self, membership_manager, premium_dealer, audit_sink, now):
        assert membership_manager.expire_if_due(premium_dealer.account_id, now=now + timedelta(days=364)) is False
        assert audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_EXPIRED) == []

    def test_expires_at_boundary(self, membership_manager, premium_dealer, now):
        assert membership_manager.expire_if_due(premium_dealer.account_id, now=now + timedelta(days=365)) is True

    def test_idempotent_single_event(self, membership_manager, premium_dealer, repository, audit_sink, now):
        later = now + timedelta(days=400)

        assert membership_manager.expire_if_due(premium_dealer.account_id, now=later) is True
        version = repository.get_account(premium_dealer.account_id).version
        assert membership_manager.expire_if_due(premium_dealer.account_id, now=later) is False

        stored = repository.get_account(premium_dealer.account_id)
        assert stored.version == version
        assert stored.current_tier_id == "dealer-basic"
        assert stored.membership.premium_active is False

        events = audit_sink.of(AuditAction.PREMIUM_MEMBERSHIP_EXPIRED)
        assert len(events) == 1
        assert events[0].actor_id == EXPIRATION_ACTOR
        assert events[0].details["previous_plan"] == "dealer-premium"
        assert events[0].details["downgraded_to"] == "dealer-basic"
        assert events[0].details["expired_at"] == (now + timedelta(days=365)).isoformat()

    def test_expiry_ignores_sub_account_quota(
        self, membership_manager, sub_account_service, repository, premium_dealer, now
    ):
        _add_staff(sub_account_service, premium_dealer.account_id, 5, now)

        assert membership_manager.expire_if_due(premium_dealer.account_id, now=now + timedelta(days=400)) is True
        assert repository.get_account(premium_dealer.account_id).current_tier_id == "dealer-basic"
        assert repository.count_active_sub_accounts(premium_dealer.account_id) == 5

    def test_non_premium_account(self, membership_manager, individual, now):
        assert membership_manager.expire_if_due(individual.account_id, now=now) is False

    def test_missing_account(self, membership_manager, now):
        with pytest.raises(AccountNotFoundError):
            membership_manager.expire_if_due("nobody", now=now)
