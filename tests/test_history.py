"""
Tests for the hash-chained workflow history
"""

import pytest

from policy_approvals.history import HistoryAction, HistoryEntry, WorkflowHistory
from policy_approvals.storage import InMemoryStorage


@pytest.fixture
def populated(history):
    history.record("wf-1", HistoryAction.STARTED, "Workflow started", actor="alice")
    history.record("wf-2", HistoryAction.STARTED, "Workflow started", actor="bob")
    history.record("wf-1", HistoryAction.APPROVED, "Approved by carol", actor="carol",
                   metadata={"stage_id": "review"})
    history.record("wf-1", HistoryAction.COMPLETED, "Workflow approved")
    return history


class TestHistoryRecording:

    def test_entries_are_chained(self, history):
        first = history.record("wf-1", HistoryAction.STARTED, "Workflow started")
        second = history.record("wf-1", HistoryAction.APPROVED, "Approved")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert first.verify_hash()
        assert second.verify_hash()

    def test_entries_per_instance_in_order(self, populated):
        actions = [e.action for e in populated.get_entries("wf-1")]
        assert actions == [HistoryAction.STARTED, HistoryAction.APPROVED, HistoryAction.COMPLETED]
        assert len(populated.get_entries("wf-2")) == 1
        assert populated.get_entries("unknown") == []

    def test_metadata_survives_storage(self, populated):
        approved = populated.get_entries("wf-1")[1]
        assert isinstance(approved, HistoryEntry)
        assert approved.metadata == {"stage_id": "review"}
        assert approved.actor == "carol"

    def test_chain_resumes_after_restart(self, storage, populated):
        last = populated.get_entries("wf-1")[-1]
        reopened = WorkflowHistory(storage)
        entry = reopened.record("wf-3", HistoryAction.STARTED, "Workflow started")

        assert entry.previous_hash == last.current_hash
        assert reopened.verify_integrity()['valid']


class TestIntegrity:

    def test_clean_chain(self, populated):
        result = populated.verify_integrity()
        assert result['valid']
        assert result['total_entries'] == 4
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_details_detected(self, storage, populated):
        target = populated.get_entries("wf-1")[1]
        data = storage.load(populated.table_name, target.id)
        data['details'] = "Rejected by carol"
        storage.save(populated.table_name, target.id, data)

        result = populated.verify_integrity()
        assert not result['valid']
        assert [e['entry_id'] for e in result['hash_errors']] == [target.id]

    def test_deleted_entry_breaks_chain(self, storage, populated):
        target = populated.get_entries("wf-2")[0]
        storage.delete(populated.table_name, target.id)

        result = populated.verify_integrity()
        assert not result['valid']
        assert result['chain_breaks'][0]['position'] == 1

    def test_empty_history_is_valid(self):
        result = WorkflowHistory(InMemoryStorage()).verify_integrity()
        assert result == {'valid': True, 'total_entries': 0, 'hash_errors': [], 'chain_breaks': []}
