"""
Delegation Registry

Time-bounded reassignment of one approver's responsibility to another.
Delegations are resolved once, when a stage's decisions are created; a later
change to the registry never re-routes an existing decision.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .errors import NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime
from .logging_config import get_logger, log_action


class DelegationType(Enum):
    """Types of delegation"""
    TEMPORARY = "Temporary"
    PERMANENT = "Permanent"
    OUT_OF_OFFICE = "Out of Office"


@dataclass
class Delegation(StorageRecord):
    """Delegator -> delegate mapping with a validity window"""
    delegator_id: str
    delegate_id: str
    delegation_type: DelegationType
    start_at: datetime
    end_at: Optional[datetime] = None
    reason: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    is_active: bool = True

    def is_effective(self, at_time: datetime, category: Optional[str] = None) -> bool:
        """True when this delegation applies at the given time and category"""
        if not self.is_active:
            return False
        if at_time < self.start_at:
            return False
        if self.end_at is not None and at_time > self.end_at:
            return False
        if self.categories and category not in self.categories:
            return False
        return True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Delegation':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'start_at', 'end_at'):
            data[key] = parse_datetime(data.get(key))
        data['delegation_type'] = DelegationType(data['delegation_type'])
        return cls(**data)


class DelegationRegistry:
    """Stores delegations and resolves the effective approver"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "delegations"
        self.logger = get_logger("policy_approvals.delegation")

    def create_delegation(
        self,
        delegator_id: str,
        delegate_id: str,
        delegation_type: DelegationType = DelegationType.TEMPORARY,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        categories: Optional[List[str]] = None
    ) -> Delegation:
        """Create an active delegation"""
        if delegator_id == delegate_id:
            raise ValueError("An approver cannot delegate to themselves")

        now = datetime.now(timezone.utc)
        start_at = start_at or now
        if end_at is not None and end_at < start_at:
            raise ValueError("Delegation end date must not precede its start date")

        delegation = Delegation(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            delegator_id=delegator_id,
            delegate_id=delegate_id,
            delegation_type=delegation_type,
            start_at=start_at,
            end_at=end_at,
            reason=reason,
            categories=list(categories or []),
            is_active=True
        )
        self.storage.save(self.table_name, delegation.id, delegation.to_dict())

        log_action(
            self.logger, "info", f"Created delegation {delegator_id} -> {delegate_id}",
            user_id=delegator_id, action="delegation_created",
            resource=f"delegation:{delegation.id}"
        )
        return delegation

    def get_delegation(self, delegation_id: str) -> Delegation:
        data = self.storage.load(self.table_name, delegation_id)
        if not data:
            raise NotFoundError("Delegation", delegation_id)
        return Delegation.from_dict(data)

    def revoke_delegation(self, delegation_id: str) -> Delegation:
        """Deactivate a delegation and close its window now"""
        delegation = self.get_delegation(delegation_id)
        now = datetime.now(timezone.utc)
        delegation.is_active = False
        delegation.end_at = now
        delegation.updated_at = now
        self.storage.save(self.table_name, delegation.id, delegation.to_dict())

        log_action(
            self.logger, "info", f"Revoked delegation {delegation_id}",
            user_id=delegation.delegator_id, action="delegation_revoked",
            resource=f"delegation:{delegation_id}"
        )
        return delegation

    def get_active_delegation(self, approver_id: str, at_time: Optional[datetime] = None,
                              category: Optional[str] = None) -> Optional[Delegation]:
        """
        The delegation in force for an approver.

        When several overlap, the most recently created one wins (ties broken
        by id) so resolution is deterministic.
        """
        at_time = at_time or datetime.now(timezone.utc)
        candidates = [
            delegation for delegation in (
                Delegation.from_dict(data)
                for data in self.storage.find(self.table_name, {'delegator_id': approver_id})
            )
            if delegation.is_effective(at_time, category)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: (d.created_at, d.id))

    def resolve(self, approver_id: str, at_time: Optional[datetime] = None,
                category: Optional[str] = None) -> str:
        """Effective approver id: the active delegate, or the approver itself"""
        delegation = self.get_active_delegation(approver_id, at_time, category)
        return delegation.delegate_id if delegation else approver_id

    def get_user_delegations(self, user_id: str) -> Dict[str, List[Delegation]]:
        """Delegations a user has given (outgoing) and received (incoming)"""
        outgoing = [Delegation.from_dict(d) for d in self.storage.find(self.table_name, {'delegator_id': user_id})]
        incoming = [Delegation.from_dict(d) for d in self.storage.find(self.table_name, {'delegate_id': user_id})]
        outgoing.sort(key=lambda d: d.start_at, reverse=True)
        incoming.sort(key=lambda d: d.start_at, reverse=True)
        return {'outgoing': outgoing, 'incoming': incoming}
