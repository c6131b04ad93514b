"""
Tests for the Delegation Registry
"""

import pytest
from datetime import timedelta

from policy_approvals.delegation import Delegation, DelegationType
from policy_approvals.errors import NotFoundError

from conftest import START


class TestDelegationCreation:

    def test_create_and_get(self, delegations):
        delegation = delegations.create_delegation(
            "alice", "bob", DelegationType.OUT_OF_OFFICE,
            start_at=START, end_at=START + timedelta(days=14), reason="Annual leave"
        )

        loaded = delegations.get_delegation(delegation.id)
        assert loaded.delegator_id == "alice"
        assert loaded.delegate_id == "bob"
        assert loaded.delegation_type == DelegationType.OUT_OF_OFFICE
        assert loaded.end_at == START + timedelta(days=14)

    def test_self_delegation_rejected(self, delegations):
        with pytest.raises(ValueError, match="themselves"):
            delegations.create_delegation("alice", "alice", start_at=START)

    def test_end_before_start_rejected(self, delegations):
        with pytest.raises(ValueError, match="precede"):
            delegations.create_delegation("alice", "bob", start_at=START, end_at=START - timedelta(days=1))

    def test_missing_delegation(self, delegations):
        with pytest.raises(NotFoundError):
            delegations.get_delegation("nope")


class TestResolution:

    def test_resolve_within_window(self, delegations):
        delegations.create_delegation("alice", "bob", start_at=START, end_at=START + timedelta(days=7))

        assert delegations.resolve("alice", START + timedelta(days=1)) == "bob"
        assert delegations.resolve("alice", START - timedelta(hours=1)) == "alice"
        assert delegations.resolve("alice", START + timedelta(days=8)) == "alice"
        assert delegations.resolve("carol", START) == "carol"

    def test_open_ended_delegation(self, delegations):
        delegations.create_delegation("alice", "bob", DelegationType.PERMANENT, start_at=START)
        assert delegations.resolve("alice", START + timedelta(days=365)) == "bob"

    def test_category_scoped_delegation(self, delegations):
        delegations.create_delegation("alice", "bob", start_at=START, categories=["HR"])

        assert delegations.resolve("alice", START, category="HR") == "bob"
        assert delegations.resolve("alice", START, category="Finance") == "alice"
        assert delegations.resolve("alice", START) == "alice"

    def test_most_recent_delegation_wins(self, storage, delegations):
        for delegation_id, delegate, created in (("d-old", "bob", START),
                                                 ("d-new", "carol", START + timedelta(hours=1))):
            storage.save(delegations.table_name, delegation_id, Delegation(
                id=delegation_id,
                created_at=created,
                updated_at=created,
                delegator_id="alice",
                delegate_id=delegate,
                delegation_type=DelegationType.TEMPORARY,
                start_at=START
            ).to_dict())

        assert delegations.resolve("alice", START + timedelta(days=1)) == "carol"
        assert delegations.get_active_delegation("alice", START + timedelta(days=1)).id == "d-new"

    def test_revoked_delegation_no_longer_applies(self, delegations):
        delegation = delegations.create_delegation("alice", "bob", start_at=START)
        revoked = delegations.revoke_delegation(delegation.id)

        assert not revoked.is_active
        assert revoked.end_at is not None
        assert delegations.resolve("alice", START + timedelta(days=1)) == "alice"


class TestUserDelegations:

    def test_outgoing_and_incoming(self, delegations):
        delegations.create_delegation("alice", "bob", start_at=START)
        delegations.create_delegation("carol", "alice", start_at=START + timedelta(days=1))

        result = delegations.get_user_delegations("alice")
        assert [d.delegate_id for d in result['outgoing']] == ["bob"]
        assert [d.delegator_id for d in result['incoming']] == ["carol"]
        assert delegations.get_user_delegations("dave") == {'outgoing': [], 'incoming': []}
