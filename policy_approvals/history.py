"""
Workflow History Module

Append-only, hash-chained log of every workflow state transition. Each entry
carries the SHA-256 hash of its predecessor so tampering with stored history
is detectable.
"""

import hashlib
import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storable, parse_datetime


class HistoryAction(Enum):
    """Workflow transitions recorded in history"""
    STARTED = "Started"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    STAGE_ADVANCED = "StageAdvanced"
    COMPLETED = "Completed"
    WORKFLOW_REJECTED = "WorkflowRejected"
    ESCALATED = "Escalated"
    REASSIGNED = "Reassigned"
    AUTO_APPROVED = "AutoApproved"
    AUTO_REJECTED = "AutoRejected"


class HistoryRecorder(ABC):
    """Append-only recorder of workflow transitions"""

    @abstractmethod
    def record(self, instance_id: str, action: HistoryAction,
               details: str, actor: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        pass

    def get_entries(self, instance_id: str) -> List['HistoryEntry']:
        """Recorded history for an instance; recorders that only forward return nothing"""
        return []


@dataclass
class HistoryEntry(StorageRecord):
    """Immutable history entry with hash chaining"""
    instance_id: str
    action: HistoryAction
    details: str
    previous_hash: str
    current_hash: str
    actor: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata = to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'instance_id': self.instance_id,
            'action': self.action.value,
            'details': self.details,
            'previous_hash': self.previous_hash,
            'actor': self.actor,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['action'] = HistoryAction(data['action'])
        return cls(**data)


class WorkflowHistory(HistoryRecorder):
    """Hash-chained history stored alongside workflow data"""

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_history"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        entries = self.storage.load_all(self.table_name)
        if entries:
            self._last_hash = entries[-1].get('current_hash')

    def record(self, instance_id: str, action: HistoryAction,
               details: str, actor: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None) -> HistoryEntry:
        """Append a history entry chained to the previous one"""
        with self._lock:
            now = datetime.now(timezone.utc)
            entry = HistoryEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                instance_id=instance_id,
                action=action,
                details=details,
                previous_hash=self._last_hash or "",
                current_hash="",
                actor=actor,
                metadata=metadata or {}
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.save(self.table_name, entry.id, entry.to_dict())
            self._last_hash = entry.current_hash
            return entry

    def _all_entries(self) -> List[HistoryEntry]:
        # Storage returns insertion order, which is the chain order
        return [HistoryEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def get_entries(self, instance_id: str) -> List[HistoryEntry]:
        """History of one workflow instance, oldest first"""
        return [e for e in self._all_entries() if e.instance_id == instance_id]

    def verify_integrity(self) -> Dict[str, Any]:
        """Verify every entry hash and the continuity of the chain"""
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self._all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'entry_id': entry.id, 'position': position})
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
