"""
Subject Store and Approver Directory

The subject of a workflow is the policy document under approval. The engine
only needs its category and display name and a way to move its status; the
document storage itself lives elsewhere. Approver roles are resolved to
member ids through an ApproverDirectory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
from enum import Enum

from .errors import NotFoundError
from .storage import StorageInterface


class SubjectStatus(Enum):
    """Policy statuses driven by the approval workflow"""
    DRAFT = "Draft"
    IN_REVIEW = "In Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"


@dataclass
class Subject:
    id: str
    display_name: str
    category: Optional[str] = None
    status: SubjectStatus = SubjectStatus.DRAFT


class SubjectStore(ABC):
    """Interface to the policy document store"""

    @abstractmethod
    def get_subject(self, subject_id: str) -> Subject:
        """Return the subject or raise NotFoundError"""
        pass

    @abstractmethod
    def set_subject_status(self, subject_id: str, status: SubjectStatus) -> None:
        pass


class StorageSubjectStore(SubjectStore):
    """Subject store backed by the engine's storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "policies"):
        self.storage = storage
        self.table_name = table_name

    def register_subject(self, subject_id: str, display_name: str,
                         category: Optional[str] = None) -> Subject:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, subject_id, {
            'id': subject_id,
            'display_name': display_name,
            'category': category,
            'status': SubjectStatus.DRAFT.value,
            'created_at': now,
            'updated_at': now
        })
        return Subject(id=subject_id, display_name=display_name, category=category)

    def get_subject(self, subject_id: str) -> Subject:
        data = self.storage.load(self.table_name, subject_id)
        if not data:
            raise NotFoundError("Policy", subject_id)
        return Subject(
            id=data['id'],
            display_name=data.get('display_name', subject_id),
            category=data.get('category'),
            status=SubjectStatus(data.get('status', SubjectStatus.DRAFT.value))
        )

    def set_subject_status(self, subject_id: str, status: SubjectStatus) -> None:
        data = self.storage.load(self.table_name, subject_id)
        if not data:
            raise NotFoundError("Policy", subject_id)
        data['status'] = status.value
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, subject_id, data)


class ApproverDirectory(ABC):
    """Resolves approver roles (e.g. "Legal Team") to member ids"""

    @abstractmethod
    def members_of(self, role: str) -> List[str]:
        pass

    def manager_of(self, user_id: str) -> Optional[str]:
        """Line manager used for manager escalations, when known"""
        return None


class StaticApproverDirectory(ApproverDirectory):
    """Role membership from a fixed mapping"""

    def __init__(self, roles: Optional[Dict[str, List[str]]] = None,
                 managers: Optional[Dict[str, str]] = None):
        self.roles = {role: list(members) for role, members in (roles or {}).items()}
        self.managers = dict(managers or {})

    def members_of(self, role: str) -> List[str]:
        return list(self.roles.get(role, []))

    def manager_of(self, user_id: str) -> Optional[str]:
        return self.managers.get(user_id)
