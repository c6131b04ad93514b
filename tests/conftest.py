"""
Shared fixtures for the approval engine tests

Every engine runs on InMemoryStorage with an injectable clock and a recording
notification channel so tests can inspect what was sent.
"""

import pytest
from datetime import datetime, timezone, timedelta
from typing import List, Optional

from policy_approvals.decisions import DecisionStore
from policy_approvals.delegation import DelegationRegistry
from policy_approvals.escalation import EscalationEngine
from policy_approvals.history import WorkflowHistory
from policy_approvals.notifications import (
    ChannelNotificationDispatcher, ChannelProvider, Notification, NotificationChannel
)
from policy_approvals.storage import InMemoryStorage
from policy_approvals.subjects import StaticApproverDirectory, StorageSubjectStore
from policy_approvals.templates import (
    ApprovalRule, Stage, StageType, TemplateCatalog, WorkflowTemplate
)
from policy_approvals.workflows import WorkflowManager


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


class RecordingChannelProvider(ChannelProvider):
    """Channel provider that keeps every notification it is asked to send"""

    channel = NotificationChannel.LOG

    def __init__(self, should_succeed: bool = True, error: Optional[Exception] = None):
        self.should_succeed = should_succeed
        self.error = error
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        if self.error is not None:
            raise self.error
        return self.should_succeed

    def kinds_for(self, recipient_id: str):
        return [n.kind for n in self.sent if n.recipient_id == recipient_id]


def make_stage(stage_id: str, order: int, approvers: List[str],
               rule: ApprovalRule = ApprovalRule.ALL_MUST_APPROVE,
               stage_type: StageType = StageType.APPROVAL, **kwargs) -> Stage:
    name = kwargs.pop("name", stage_id.replace("-", " ").title())
    return Stage(
        stage_id=stage_id,
        name=name,
        stage_type=stage_type,
        order=order,
        approver_ids=list(approvers),
        approval_rule=rule,
        **kwargs
    )


def make_template(catalog: TemplateCatalog, stages: List[Stage], name: str = "Standard Approval",
                  category: Optional[str] = None, is_default: bool = False) -> WorkflowTemplate:
    return catalog.create_template(WorkflowTemplate(
        id="",
        created_at=START,
        updated_at=START,
        name=name,
        stages=stages,
        category=category,
        is_default=is_default,
        created_by="admin"
    ))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def templates(storage):
    return TemplateCatalog(storage)


@pytest.fixture
def delegations(storage):
    return DelegationRegistry(storage)


@pytest.fixture
def decisions(storage):
    return DecisionStore(storage)


@pytest.fixture
def subjects(storage):
    store = StorageSubjectStore(storage)
    store.register_subject("POL-001", "Remote Working Policy", "HR")
    store.register_subject("POL-002", "Data Retention Policy", "Compliance")
    return store


@pytest.fixture
def history(storage):
    return WorkflowHistory(storage)


@pytest.fixture
def directory():
    return StaticApproverDirectory(
        roles={"Legal Team": ["lena", "luis"], "Compliance Officers": ["cora"]},
        managers={"alice": "maria", "bob": "maria"}
    )


@pytest.fixture
def recorder():
    return RecordingChannelProvider()


@pytest.fixture
def notifier(storage, recorder):
    return ChannelNotificationDispatcher(storage, [recorder])


@pytest.fixture
def manager(storage, templates, delegations, decisions, subjects, notifier, history, directory, clock):
    return WorkflowManager(
        storage, templates, delegations, decisions, subjects,
        notifier=notifier, history=history, directory=directory, clock=clock
    )


@pytest.fixture
def escalation_engine(storage, manager):
    return EscalationEngine(storage, manager)

