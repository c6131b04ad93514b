"""
Tests for the Workflow Instance Manager

Starting workflows, submitting decisions, stage advancement and finalization,
delegation at stage entry, all-or-nothing transitions and concurrent
submissions.
"""

import threading
import pytest
from datetime import timedelta

from policy_approvals.decisions import DecisionValue
from policy_approvals.delegation import DelegationType
from policy_approvals.errors import (
    InvalidStateError, NotFoundError, TemplateNotFoundError, UnauthorizedError, WorkflowError
)
from policy_approvals.history import HistoryAction, HistoryRecorder
from policy_approvals.notifications import ChannelNotificationDispatcher, NotificationKind
from policy_approvals.subjects import SubjectStatus
from policy_approvals.templates import ApprovalRule, StageType
from policy_approvals.workflows import WorkflowManager, WorkflowStatus

from conftest import START, RecordingChannelProvider, make_stage, make_template


def decision_of(manager, instance_id, approver_id):
    matches = [d for d in manager.decisions.for_instance(instance_id) if d.approver_id == approver_id]
    assert len(matches) == 1
    return matches[0]


def actions_of(manager, instance_id):
    return [entry.action for entry in manager.get_history(instance_id)]


@pytest.fixture
def two_stage_template(templates):
    return make_template(templates, [
        make_stage("review", 1, ["alice", "bob"], stage_type=StageType.REVIEW),
        make_stage("approval", 2, ["carol", "dave"], due_days=3),
    ], category="HR", is_default=True)


class TestStartWorkflow:

    def test_any_one_approves_single_stage(self, manager, templates):
        """First approval finalizes; the other approver can no longer answer"""
        template = make_template(templates, [
            make_stage("sign-off", 1, ["alice", "bob"], ApprovalRule.ANY_ONE_APPROVES)
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)
        finished = manager.get_instance(instance.id)
        assert finished.status == WorkflowStatus.APPROVED
        assert finished.completed_by == "alice"

        with pytest.raises(InvalidStateError):
            manager.submit_decision(decision_of(manager, instance.id, "bob").id, True)
        assert decision_of(manager, instance.id, "bob").value == DecisionValue.SUPERSEDED

    def test_start_creates_current_stage_decisions(self, manager, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")

        assert instance.template_id == two_stage_template.id
        assert instance.status == WorkflowStatus.PENDING_REVIEW
        assert instance.current_stage_id == "review"
        decisions = manager.decisions.for_instance(instance.id)
        assert sorted(d.approver_id for d in decisions) == ["alice", "bob"]
        assert all(d.due_at == START + timedelta(days=5) for d in decisions)
        assert all(d.is_pending for d in decisions)

    def test_policy_moves_to_in_review(self, manager, subjects, two_stage_template):
        manager.start_workflow("POL-001", "ivan")
        assert subjects.get_subject("POL-001").status == SubjectStatus.IN_REVIEW

    def test_approval_requests_sent(self, manager, recorder, two_stage_template):
        manager.start_workflow("POL-001", "ivan")
        assert recorder.kinds_for("alice") == [NotificationKind.APPROVAL_REQUEST]
        assert recorder.kinds_for("bob") == [NotificationKind.APPROVAL_REQUEST]
        assert recorder.sent[0].metadata["policy_name"] == "Remote Working Policy"

    def test_unknown_policy(self, manager, two_stage_template):
        with pytest.raises(NotFoundError):
            manager.start_workflow("POL-404", "ivan")


class TestStageResolution:

    def test_explicit_template_wins(self, manager, templates, two_stage_template):
        other = make_template(templates, [make_stage("only", 1, ["zoe"])], name="Fast Track")
        instance = manager.start_workflow("POL-001", "ivan", template_id=other.id,
                                          custom_stages=[make_stage("c", 1, ["carl"])])
        assert instance.template_name == "Fast Track"
        assert [s.stage_id for s in instance.stages] == ["only"]

    def test_custom_stages_before_default(self, manager, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan", custom_stages=[
            make_stage("second", 2, ["bob"]), make_stage("first", 1, ["alice"])
        ])
        assert instance.template_id is None
        assert instance.template_name == "Custom Workflow"
        assert [s.stage_id for s in instance.stages] == ["first", "second"]

    def test_default_for_category(self, manager, templates, two_stage_template):
        compliance = make_template(templates, [make_stage("c", 1, ["cora"])],
                                   name="Compliance Flow", category="Compliance", is_default=True)
        assert manager.start_workflow("POL-002", "ivan").template_id == compliance.id
        assert manager.start_workflow("POL-001", "ivan").template_id == two_stage_template.id

    def test_no_template_available(self, manager):
        with pytest.raises(TemplateNotFoundError):
            manager.start_workflow("POL-001", "ivan")
        assert manager.list_instances() == []

    def test_inactive_template(self, manager, templates, two_stage_template):
        templates.deactivate_template(two_stage_template.id)
        with pytest.raises(InvalidStateError):
            manager.start_workflow("POL-001", "ivan", template_id=two_stage_template.id)

    def test_template_edits_do_not_reach_running_instance(self, manager, storage, templates, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")

        data = storage.load(templates.table_name, two_stage_template.id)
        data['stages'][1]['approver_ids'] = ["mallory"]
        storage.save(templates.table_name, two_stage_template.id, data)

        assert manager.get_instance(instance.id).stages[1].approver_ids == ["carol", "dave"]


class TestStageAdvancement:

    def test_two_stage_all_must_approve(self, manager, clock, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        clock.advance(days=1)

        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)
        assert manager.get_instance(instance.id).current_stage_id == "review"

        manager.submit_decision(decision_of(manager, instance.id, "bob").id, True)
        advanced = manager.get_instance(instance.id)
        assert advanced.current_stage_id == "approval"
        assert advanced.status == WorkflowStatus.PENDING_APPROVAL

        stage_two = manager.decisions.for_stage(instance.id, "approval")
        assert len(stage_two) == 2
        assert all(d.is_pending for d in stage_two)
        assert all(d.due_at == START + timedelta(days=4) for d in stage_two)

    def test_majority_stage(self, manager, templates):
        template = make_template(templates, [
            make_stage("committee", 1, ["p1", "p2", "p3"], ApprovalRule.MAJORITY_APPROVES)
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        manager.submit_decision(decision_of(manager, instance.id, "p1").id, True)
        assert manager.get_instance(instance.id).status == WorkflowStatus.PENDING_APPROVAL
        manager.submit_decision(decision_of(manager, instance.id, "p2").id, True)
        assert manager.get_instance(instance.id).status == WorkflowStatus.APPROVED

    def test_rejection_finalizes(self, manager, subjects, recorder, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)
        manager.submit_decision(decision_of(manager, instance.id, "bob").id, False, comments="Too vague")

        finished = manager.get_instance(instance.id)
        assert finished.status == WorkflowStatus.REJECTED
        assert finished.comments == 'Stage "Review" rejected'
        assert manager.decisions.for_stage(instance.id, "approval") == []
        assert subjects.get_subject("POL-001").status == SubjectStatus.REJECTED
        assert recorder.kinds_for("ivan") == [NotificationKind.WORKFLOW_REJECTED]

    def test_full_approval(self, manager, subjects, recorder, clock, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        for approver in ("alice", "bob"):
            manager.submit_decision(decision_of(manager, instance.id, approver).id, True)
        clock.advance(days=2, hours=1)
        for approver in ("carol", "dave"):
            manager.submit_decision(decision_of(manager, instance.id, approver).id, True)

        finished = manager.get_instance(instance.id)
        assert finished.status == WorkflowStatus.APPROVED
        assert finished.completed_at == clock.now
        assert finished.total_duration_days == 3
        assert subjects.get_subject("POL-001").status == SubjectStatus.APPROVED
        assert recorder.kinds_for("ivan") == [NotificationKind.WORKFLOW_APPROVED]
        assert actions_of(manager, instance.id) == [
            HistoryAction.STARTED,
            HistoryAction.APPROVED, HistoryAction.APPROVED, HistoryAction.STAGE_ADVANCED,
            HistoryAction.APPROVED, HistoryAction.APPROVED, HistoryAction.COMPLETED
        ]

    def test_process_stage_completion_is_idempotent(self, manager, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        for approver in ("alice", "bob"):
            manager.submit_decision(decision_of(manager, instance.id, approver).id, True)

        manager.process_stage_completion(instance.id, "review")
        manager.process_stage_completion(instance.id, "approval")
        assert len(manager.decisions.for_stage(instance.id, "approval")) == 2
        assert actions_of(manager, instance.id).count(HistoryAction.STAGE_ADVANCED) == 1


class TestSubmitValidation:

    def test_answered_decision(self, manager, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        decision_id = decision_of(manager, instance.id, "alice").id
        manager.submit_decision(decision_id, True)
        with pytest.raises(InvalidStateError, match="already been answered"):
            manager.submit_decision(decision_id, False)

    def test_unknown_decision(self, manager):
        with pytest.raises(NotFoundError):
            manager.submit_decision("missing", True)

    def test_comments_required(self, manager, templates):
        template = make_template(templates, [make_stage("legal", 1, ["lena"], require_comments=True)])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        decision_id = decision_of(manager, instance.id, "lena").id

        with pytest.raises(WorkflowError, match="Comments are required"):
            manager.submit_decision(decision_id, True, comments="   ")
        manager.submit_decision(decision_id, True, comments="Reviewed clause 4")
        assert manager.decisions.get(decision_id).comments == "Reviewed clause 4"

    def test_authorizer(self, storage, templates, delegations, decisions, subjects, clock):
        manager = WorkflowManager(
            storage, templates, delegations, decisions, subjects, clock=clock,
            authorizer=lambda actor, decision: actor == decision.approver_id
        )
        template = make_template(templates, [make_stage("s", 1, ["alice"])])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        decision_id = decision_of(manager, instance.id, "alice").id

        with pytest.raises(UnauthorizedError):
            manager.submit_decision(decision_id, True, actor_id="mallory")
        manager.submit_decision(decision_id, True, actor_id="alice")
        assert manager.decisions.get(decision_id).responded_by == "alice"


class TestApproverResolution:

    def test_delegation_resolved_at_stage_entry(self, manager, delegations, two_stage_template):
        delegation = delegations.create_delegation(
            "alice", "zara", DelegationType.OUT_OF_OFFICE, start_at=START - timedelta(days=1)
        )
        instance = manager.start_workflow("POL-001", "ivan")

        decision = decision_of(manager, instance.id, "zara")
        assert decision.original_approver_id == "alice"
        assert decision.delegated_by_id == "alice"

        delegations.revoke_delegation(delegation.id)
        assert decision_of(manager, instance.id, "zara").id == decision.id

    def test_delegation_disabled_for_stage(self, manager, delegations, templates):
        delegations.create_delegation("lena", "zara", start_at=START - timedelta(days=1))
        template = make_template(templates, [make_stage("legal", 1, ["lena"], allow_delegation=False)])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        assert decision_of(manager, instance.id, "lena").original_approver_id is None

    def test_delegate_already_an_approver(self, manager, delegations, two_stage_template):
        delegations.create_delegation("alice", "bob", start_at=START - timedelta(days=1))
        instance = manager.start_workflow("POL-001", "ivan")

        decisions = manager.decisions.for_instance(instance.id)
        assert [d.approver_id for d in decisions] == ["bob"]

    def test_roles_expand_to_members(self, manager, templates):
        stage = make_stage("legal", 1, ["lena"], stage_type=StageType.LEGAL_REVIEW,
                           approver_roles=["Legal Team"])
        template = make_template(templates, [stage])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        assert sorted(d.approver_id for d in manager.decisions.for_instance(instance.id)) == ["lena", "luis"]
        assert manager.get_instance(instance.id).status == WorkflowStatus.PENDING_REVIEW

    def test_early_completion_supersedes_unanswered(self, manager, clock, templates):
        template = make_template(templates, [
            make_stage("s1", 1, ["alice", "bob"], ApprovalRule.ANY_ONE_APPROVES),
            make_stage("s2", 2, ["carol"]),
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        bob_id = decision_of(manager, instance.id, "bob").id
        clock.advance(days=1)

        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)

        assert manager.get_instance(instance.id).current_stage_id == "s2"
        bob = manager.decisions.get(bob_id)
        assert bob.value == DecisionValue.SUPERSEDED
        assert bob.responded_at == clock.now
        assert not any(d.is_pending for d in manager.decisions.for_stage(instance.id, "s1"))
        assert manager.decisions.pending_for_approver("bob") == []

        with pytest.raises(InvalidStateError, match="closed"):
            manager.submit_decision(bob_id, True)

    def test_rejected_stage_supersedes_unanswered(self, manager, templates):
        template = make_template(templates, [
            make_stage("committee", 1, ["p1", "p2", "p3"], ApprovalRule.MAJORITY_APPROVES)
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        manager.submit_decision(decision_of(manager, instance.id, "p1").id, False)
        manager.submit_decision(decision_of(manager, instance.id, "p2").id, False)

        assert manager.get_instance(instance.id).status == WorkflowStatus.REJECTED
        assert decision_of(manager, instance.id, "p3").value == DecisionValue.SUPERSEDED
        view = manager.get_instance_view(instance.id)
        assert view['stages'][0]['status'] == "Rejected"

    def test_empty_role_rejects_start(self, manager, storage, templates):
        template = make_template(templates, [make_stage("x", 1, [], approver_roles=["Nobody"])])
        with pytest.raises(InvalidStateError):
            manager.start_workflow("POL-001", "ivan", template_id=template.id)
        assert storage.count(manager.table_name) == 0
        assert storage.count(manager.decisions.table_name) == 0


class TestAtomicity:

    def test_failed_advance_leaves_stage_unchanged(self, manager, templates, subjects):
        template = make_template(templates, [
            make_stage("first", 1, ["alice"]),
            make_stage("second", 2, [], approver_roles=["Nobody"]),
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        decision_id = decision_of(manager, instance.id, "alice").id

        with pytest.raises(InvalidStateError):
            manager.submit_decision(decision_id, True)

        assert manager.decisions.get(decision_id).is_pending
        unchanged = manager.get_instance(instance.id)
        assert unchanged.current_stage_id == "first"
        assert unchanged.version == instance.version
        assert actions_of(manager, instance.id) == [HistoryAction.STARTED]

    def test_notification_failure_does_not_fail_start(self, storage, templates, delegations,
                                                      decisions, subjects, history, clock):
        notifier = ChannelNotificationDispatcher(storage, [RecordingChannelProvider(error=RuntimeError("down"))])
        manager = WorkflowManager(storage, templates, delegations, decisions, subjects,
                                  notifier=notifier, history=history, clock=clock)
        template = make_template(templates, [make_stage("s", 1, ["alice"])])

        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        assert manager.get_instance(instance.id).status == WorkflowStatus.PENDING_APPROVAL
        assert notifier.sent_to("alice")[0].failed_reason == "down"

    def test_history_failure_does_not_fail_submit(self, storage, templates, delegations,
                                                  decisions, subjects, clock):
        class BrokenHistory(HistoryRecorder):
            def record(self, instance_id, action, details, actor=None, metadata=None):
                raise IOError("history store offline")

        manager = WorkflowManager(storage, templates, delegations, decisions, subjects,
                                  history=BrokenHistory(), clock=clock)
        template = make_template(templates, [make_stage("s", 1, ["alice"])])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)
        assert manager.get_instance(instance.id).status == WorkflowStatus.APPROVED
        assert manager.get_history(instance.id) == []


class TestConcurrency:

    def test_concurrent_submissions_advance_once(self, manager, templates):
        approvers = [f"user{i}" for i in range(6)]
        template = make_template(templates, [
            make_stage("board", 1, approvers),
            make_stage("final", 2, ["ceo", "cfo"]),
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        decision_ids = [decision_of(manager, instance.id, a).id for a in approvers]

        barrier = threading.Barrier(len(decision_ids))
        errors = []

        def submit(decision_id):
            barrier.wait()
            try:
                manager.submit_decision(decision_id, True)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit, args=(d,)) for d in decision_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert manager.get_instance(instance.id).current_stage_id == "final"
        assert len(manager.decisions.for_stage(instance.id, "final")) == 2
        assert actions_of(manager, instance.id).count(HistoryAction.STAGE_ADVANCED) == 1

    def test_racing_any_one_submissions_finalize_once(self, manager, templates):
        approvers = [f"user{i}" for i in range(5)]
        template = make_template(templates, [make_stage("s", 1, approvers, ApprovalRule.ANY_ONE_APPROVES)])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        decision_ids = [decision_of(manager, instance.id, a).id for a in approvers]

        barrier = threading.Barrier(len(decision_ids))
        outcomes = []

        def submit(decision_id):
            barrier.wait()
            try:
                manager.submit_decision(decision_id, True)
                outcomes.append("ok")
            except InvalidStateError:
                outcomes.append("late")

        threads = [threading.Thread(target=submit, args=(d,)) for d in decision_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("late") == 4
        assert actions_of(manager, instance.id).count(HistoryAction.COMPLETED) == 1


    def test_slow_notification_does_not_hold_instance_lock(self, storage, templates, delegations,
                                                           decisions, subjects, history, clock):
        class StalledProvider(RecordingChannelProvider):
            """Blocks on approval requests to bob until released"""

            def __init__(self):
                super().__init__()
                self.entered = threading.Event()
                self.release = threading.Event()

            def send(self, notification):
                if notification.recipient_id == "bob":
                    self.entered.set()
                    self.release.wait(timeout=10)
                return super().send(notification)

        provider = StalledProvider()
        notifier = ChannelNotificationDispatcher(storage, [provider])
        manager = WorkflowManager(storage, templates, delegations, decisions, subjects,
                                  notifier=notifier, history=history, clock=clock)
        template = make_template(templates, [
            make_stage("first", 1, ["alice"]),
            make_stage("second", 2, ["bob", "carol"]),
        ])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        alice_id = decision_of(manager, instance.id, "alice").id

        advancing = threading.Thread(target=manager.submit_decision, args=(alice_id, True))
        advancing.start()
        try:
            assert provider.entered.wait(timeout=5)
            carol_id = decision_of(manager, instance.id, "carol").id

            answering = threading.Thread(target=manager.submit_decision, args=(carol_id, True))
            answering.start()
            answering.join(timeout=5)

            assert not answering.is_alive()
            assert manager.decisions.get(carol_id).value == DecisionValue.APPROVED
        finally:
            provider.release.set()
            advancing.join(timeout=5)

    def test_instance_locks_released_after_use(self, manager, templates):
        template = make_template(templates, [make_stage("s", 1, ["alice"])])
        instance = manager.start_workflow("POL-001", "ivan", template_id=template.id)

        with manager.locks.hold(instance.id):
            assert manager.locks.active_count() == 1
        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)

        assert manager.get_instance(instance.id).is_finished
        assert manager.locks.active_count() == 0


class TestViews:

    def test_instance_view(self, manager, two_stage_template):
        instance = manager.start_workflow("POL-001", "ivan")
        manager.submit_decision(decision_of(manager, instance.id, "alice").id, True)

        view = manager.get_instance_view(instance.id)
        review, approval = view['stages']
        assert view['instance']['status'] == "Pending Review"
        assert review['is_current'] and not approval['is_current']
        assert review['status'] == "Pending Approval"
        assert review['due_at'] == START + timedelta(days=5)
        assert len(review['decisions']) == 2
        assert approval['status'] == "Draft"
        assert approval['decisions'] == []

    def test_list_instances(self, manager, clock, two_stage_template):
        first = manager.start_workflow("POL-001", "ivan")
        clock.advance(hours=1)
        second = manager.start_workflow("POL-001", "ivan")
        for approver in ("alice", "bob"):
            manager.submit_decision(decision_of(manager, first.id, approver).id, False)

        assert [i.id for i in manager.list_instances("POL-001")] == [second.id, first.id]
        assert [i.id for i in manager.list_instances(status=WorkflowStatus.REJECTED)] == [first.id]
        assert manager.list_instances("POL-002") == []

    def test_pending_decisions_exclude_finished_workflows(self, manager, clock, templates):
        template = make_template(templates, [
            make_stage("s", 1, ["alice", "bob"], ApprovalRule.ANY_ONE_APPROVES)
        ])
        first = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        clock.advance(hours=1)
        second = manager.start_workflow("POL-001", "ivan", template_id=template.id)
        manager.submit_decision(decision_of(manager, first.id, "bob").id, False)

        assert decision_of(manager, first.id, "alice").value == DecisionValue.SUPERSEDED
        assert [d.instance_id for d in manager.decisions.pending_for_approver("alice")] == [second.id]
        pending = manager.get_pending_decisions("alice")
        assert [d.instance_id for d in pending] == [second.id]

    def test_missing_instance(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_instance("nope")
        with pytest.raises(NotFoundError):
            manager.get_history("nope")
