"""
Workflow Template Catalog

Reusable, ordered approval stage definitions keyed by policy category. A
template supplies the stage list a workflow instance snapshots at start time;
later template edits never reach a running instance.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .errors import TemplateNotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime
from .logging_config import get_logger, log_action


class StageType(Enum):
    """Kinds of approval stage"""
    REVIEW = "Review"
    LEGAL_REVIEW = "Legal Review"
    APPROVAL = "Approval"
    FINAL_APPROVAL = "Final Approval"
    ACKNOWLEDGEMENT = "Acknowledgement"


class ApprovalRule(Enum):
    """How a stage's decisions combine into a stage outcome"""
    ALL_MUST_APPROVE = "All Must Approve"
    ANY_ONE_APPROVES = "Any One Approves"
    MAJORITY_APPROVES = "Majority Approves"
    QUORUM_APPROVES = "Quorum Approves"


class EscalationAction(Enum):
    """Closed set of actions an escalation may take on an overdue decision"""
    NOTIFY = "Notify"
    NOTIFY_MANAGER = "Notify Manager"
    AUTO_APPROVE = "Auto Approve"
    AUTO_REJECT = "Auto Reject"
    REASSIGN = "Reassign"


@dataclass
class Stage:
    """Definition of a single approval stage"""
    stage_id: str
    name: str
    stage_type: StageType
    order: int
    approver_ids: List[str] = field(default_factory=list)
    approver_roles: List[str] = field(default_factory=list)
    approval_rule: ApprovalRule = ApprovalRule.ALL_MUST_APPROVE
    quorum_percentage: Optional[Decimal] = None
    due_days: int = 5
    require_comments: bool = False
    allow_delegation: bool = True
    escalation_enabled: bool = False
    escalation_days: Optional[int] = None
    escalation_action: Optional[EscalationAction] = None
    escalation_target_ids: List[str] = field(default_factory=list)
    instructions: Optional[str] = None


def stage_to_dict(stage: Stage) -> Dict[str, Any]:
    """Encode a stage for storage"""
    return {
        'stage_id': stage.stage_id,
        'name': stage.name,
        'stage_type': stage.stage_type.value,
        'order': stage.order,
        'approver_ids': list(stage.approver_ids),
        'approver_roles': list(stage.approver_roles),
        'approval_rule': stage.approval_rule.value,
        'quorum_percentage': str(stage.quorum_percentage) if stage.quorum_percentage is not None else None,
        'due_days': stage.due_days,
        'require_comments': stage.require_comments,
        'allow_delegation': stage.allow_delegation,
        'escalation_enabled': stage.escalation_enabled,
        'escalation_days': stage.escalation_days,
        'escalation_action': stage.escalation_action.value if stage.escalation_action else None,
        'escalation_target_ids': list(stage.escalation_target_ids),
        'instructions': stage.instructions
    }


def stage_from_dict(data: Dict[str, Any]) -> Stage:
    """Decode a stored stage"""
    quorum = data.get('quorum_percentage')
    action = data.get('escalation_action')
    return Stage(
        stage_id=data['stage_id'],
        name=data['name'],
        stage_type=StageType(data['stage_type']),
        order=data['order'],
        approver_ids=list(data.get('approver_ids', [])),
        approver_roles=list(data.get('approver_roles', [])),
        approval_rule=ApprovalRule(data.get('approval_rule', ApprovalRule.ALL_MUST_APPROVE.value)),
        quorum_percentage=Decimal(str(quorum)) if quorum is not None else None,
        due_days=data.get('due_days', 5),
        require_comments=data.get('require_comments', False),
        allow_delegation=data.get('allow_delegation', True),
        escalation_enabled=data.get('escalation_enabled', False),
        escalation_days=data.get('escalation_days'),
        escalation_action=EscalationAction(action) if action else None,
        escalation_target_ids=list(data.get('escalation_target_ids', [])),
        instructions=data.get('instructions')
    )


def validate_stages(stages: List[Stage]) -> None:
    """Validate a stage list; raises ValueError describing the first problem"""
    if not stages:
        raise ValueError("Workflow must have at least one stage")

    orders = [stage.order for stage in stages]
    if len(set(orders)) != len(orders):
        raise ValueError("Stage orders must be unique")
    if min(orders) < 1:
        raise ValueError("Stage orders must be positive")

    stage_ids = [stage.stage_id for stage in stages]
    if len(set(stage_ids)) != len(stage_ids):
        raise ValueError("Stage ids must be unique")

    for stage in stages:
        if not stage.approver_ids and not stage.approver_roles:
            raise ValueError(f"Stage '{stage.name}' has no approvers")
        if stage.due_days < 0:
            raise ValueError(f"Stage '{stage.name}' due days cannot be negative")
        if stage.quorum_percentage is not None:
            if not (Decimal("0") < Decimal(str(stage.quorum_percentage)) <= Decimal("100")):
                raise ValueError(f"Stage '{stage.name}' quorum percentage must be in (0, 100]")


def ordered_stages(stages: List[Stage]) -> List[Stage]:
    return sorted(stages, key=lambda s: s.order)


@dataclass
class WorkflowTemplate(StorageRecord):
    """Reusable approval workflow definition"""
    name: str
    stages: List[Stage]
    category: Optional[str] = None
    description: str = ""
    is_active: bool = True
    is_default: bool = False
    created_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['stages'] = [stage_to_dict(stage) for stage in self.stages]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        data = dict(data)
        data['stages'] = [stage_from_dict(s) for s in data.get('stages', [])]
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


class TemplateCatalog:
    """Stores workflow templates and resolves the default per category"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "workflow_templates"
        self.logger = get_logger("policy_approvals.templates")

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Validate and persist a new template"""
        validate_stages(template.stages)

        if not template.id:
            template.id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        template.created_at = now
        template.updated_at = now
        template.stages = ordered_stages(template.stages)

        self.storage.save(self.table_name, template.id, template.to_dict())

        log_action(
            self.logger, "info", f"Created workflow template {template.name}",
            user_id=template.created_by or None, action="template_created",
            resource=f"template:{template.id}"
        )
        return template

    def get_template(self, template_id: str) -> WorkflowTemplate:
        """Get a template by id; raises TemplateNotFoundError when absent"""
        data = self.storage.load(self.table_name, template_id)
        if not data:
            raise TemplateNotFoundError(template_id)
        return WorkflowTemplate.from_dict(data)

    def list_active(self, category: Optional[str] = None) -> List[WorkflowTemplate]:
        """
        List active templates.

        With a category, templates of that category and uncategorised
        (wildcard) templates are returned.
        """
        templates = []
        for data in self.storage.find(self.table_name, {'is_active': True}):
            template = WorkflowTemplate.from_dict(data)
            if category and template.category not in (None, category):
                continue
            templates.append(template)
        return sorted(templates, key=lambda t: t.name)

    def get_default(self, category: Optional[str] = None) -> Optional[WorkflowTemplate]:
        """Default template for a category, preferring an exact category match"""
        candidates = [t for t in self.list_active(category) if t.is_default]
        if not candidates:
            return None
        if category:
            exact = [t for t in candidates if t.category == category]
            if exact:
                candidates = exact
        # Oldest default wins when several are flagged
        return min(candidates, key=lambda t: (t.created_at, t.id))

    def activate_template(self, template_id: str) -> WorkflowTemplate:
        return self._set_active(template_id, True)

    def deactivate_template(self, template_id: str) -> WorkflowTemplate:
        return self._set_active(template_id, False)

    def _set_active(self, template_id: str, active: bool) -> WorkflowTemplate:
        template = self.get_template(template_id)
        template.is_active = active
        template.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, template.id, template.to_dict())

        log_action(
            self.logger, "info",
            f"Template {template.name} {'activated' if active else 'deactivated'}",
            action="template_activated" if active else "template_deactivated",
            resource=f"template:{template.id}"
        )
        return template
