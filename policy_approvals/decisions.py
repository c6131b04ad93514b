"""
Decision Store

Per-approver decision records for each stage of a workflow instance. The
decision set is the source of truth from which stage and instance status are
derived. Decisions are created on stage entry and only mutated by a
submission, an escalation action, or their stage completing without them
(Superseded). They are never deleted.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum

from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime


class DecisionValue(Enum):
    """Outcome recorded on a decision"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SUPERSEDED = "Superseded"


@dataclass
class ApprovalDecision(StorageRecord):
    """One approver's response within a stage"""
    instance_id: str
    stage_id: str
    stage_order: int
    approver_id: str
    requested_at: datetime
    due_at: datetime
    value: DecisionValue = DecisionValue.PENDING
    original_approver_id: Optional[str] = None
    delegated_by_id: Optional[str] = None
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    notifications_sent: int = 0
    last_notified_at: Optional[datetime] = None
    comments: Optional[str] = None
    require_comments: bool = False

    @property
    def is_pending(self) -> bool:
        return self.value == DecisionValue.PENDING

    def is_overdue(self, now: datetime) -> bool:
        return self.is_pending and self.due_at < now

    def record_response(self, approved: bool, responder: str, at: datetime,
                        comments: Optional[str] = None) -> None:
        self.value = DecisionValue.APPROVED if approved else DecisionValue.REJECTED
        self.responded_at = at
        self.responded_by = responder
        if comments is not None:
            self.comments = comments
        self.updated_at = at

    def supersede(self, at: datetime) -> None:
        """Close a decision its stage no longer needs"""
        self.value = DecisionValue.SUPERSEDED
        self.responded_at = at
        self.responded_by = "system"
        self.updated_at = at

    def escalate(self, at: datetime) -> None:
        """Raise the escalation level; it never decreases"""
        self.escalation_level += 1
        self.last_escalated_at = at
        self.updated_at = at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalDecision':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'requested_at', 'due_at', 'responded_at',
                    'last_escalated_at', 'last_notified_at'):
            data[key] = parse_datetime(data.get(key))
        data['value'] = DecisionValue(data['value'])
        return cls(**data)


class DecisionStore:
    """Persistence for approval decisions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "approval_decisions"

    def save(self, decision: ApprovalDecision) -> None:
        self.storage.save(self.table_name, decision.id, decision.to_dict())

    def get(self, decision_id: str) -> ApprovalDecision:
        data = self.storage.load(self.table_name, decision_id)
        if not data:
            raise NotFoundError("Decision", decision_id)
        return ApprovalDecision.from_dict(data)

    def for_instance(self, instance_id: str) -> List[ApprovalDecision]:
        decisions = [
            ApprovalDecision.from_dict(data)
            for data in self.storage.find(self.table_name, {'instance_id': instance_id})
        ]
        return sorted(decisions, key=lambda d: (d.stage_order, d.requested_at, d.id))

    def for_stage(self, instance_id: str, stage_id: str) -> List[ApprovalDecision]:
        return [d for d in self.for_instance(instance_id) if d.stage_id == stage_id]

    def pending_for_approver(self, approver_id: str) -> List[ApprovalDecision]:
        decisions = [
            ApprovalDecision.from_dict(data)
            for data in self.storage.find(self.table_name, {
                'approver_id': approver_id,
                'value': DecisionValue.PENDING.value
            })
        ]
        return sorted(decisions, key=lambda d: d.due_at)

    def overdue(self, now: datetime, limit: Optional[int] = None,
                include: Optional[Callable[[ApprovalDecision], bool]] = None) -> List[ApprovalDecision]:
        """
        Pending decisions whose due date has passed, oldest due first.

        ``include`` filters candidates before ``limit`` is applied.
        """
        decisions = [
            decision for decision in (
                ApprovalDecision.from_dict(data)
                for data in self.storage.find(self.table_name, {'value': DecisionValue.PENDING.value})
            )
            if decision.is_overdue(now) and (include is None or include(decision))
        ]
        decisions.sort(key=lambda d: (d.due_at, d.id))
        if limit:
            decisions = decisions[:limit]
        return decisions
