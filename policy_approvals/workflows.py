"""
Workflow Instance Manager

Runs policy documents through an ordered sequence of approval stages:

    Pending Review / Pending Approval (per current stage) -> next stage ... -> Approved | Rejected

Decisions for a stage are created when the stage is entered, with delegation
resolved at that moment. Stage completion is re-evaluated under a per-instance
lock after every decision change, so advancement or finalization happens
exactly once even when a submission races the escalation sweep.

Start and submit are all-or-nothing. Notifications, history entries and
subject status updates run after the transaction commits and are best-effort.
"""

import math
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import uuid

from .decisions import ApprovalDecision, DecisionStore, DecisionValue
from .delegation import DelegationRegistry
from .errors import (
    InvalidStateError, NotFoundError, TemplateNotFoundError, UnauthorizedError, WorkflowError
)
from .evaluator import evaluate_stage, stage_status
from .history import HistoryAction, HistoryRecorder
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationKind
from .storage import StorageInterface, StorageRecord, parse_datetime
from .subjects import ApproverDirectory, StaticApproverDirectory, SubjectStatus, SubjectStore
from .templates import (
    Stage, StageType, TemplateCatalog, ordered_stages, stage_from_dict, stage_to_dict, validate_stages
)


class WorkflowStatus(Enum):
    """Overall status of a workflow instance"""
    PENDING_REVIEW = "Pending Review"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED)


def status_for_stage(stage: Stage) -> WorkflowStatus:
    if stage.stage_type in (StageType.REVIEW, StageType.LEGAL_REVIEW):
        return WorkflowStatus.PENDING_REVIEW
    return WorkflowStatus.PENDING_APPROVAL


def snapshot_stages(stages: List[Stage]) -> List[Stage]:
    """Independent, order-sorted copy of a stage list"""
    return [stage_from_dict(stage_to_dict(stage)) for stage in ordered_stages(stages)]


@dataclass
class WorkflowInstance(StorageRecord):
    """One running execution of a stage list against a policy"""
    subject_id: str
    template_name: str
    stages: List[Stage]
    status: WorkflowStatus
    initiated_by: str
    initiated_at: datetime
    template_id: Optional[str] = None
    subject_category: Optional[str] = None
    subject_name: str = ""
    current_stage_id: Optional[str] = None
    current_stage_order: Optional[int] = None
    current_stage_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    total_duration_days: Optional[int] = None
    comments: Optional[str] = None
    version: int = 0

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    def stage_by_id(self, stage_id: str) -> Stage:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        raise NotFoundError("Stage", stage_id)

    def current_stage(self) -> Optional[Stage]:
        if self.current_stage_id is None:
            return None
        return self.stage_by_id(self.current_stage_id)

    def next_stage(self) -> Optional[Stage]:
        """The stage following the current one in snapshot order"""
        for stage in self.stages:
            if self.current_stage_order is None or stage.order > self.current_stage_order:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['stages'] = [stage_to_dict(stage) for stage in self.stages]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'initiated_at', 'current_stage_started_at', 'completed_at'):
            data[key] = parse_datetime(data.get(key))
        data['stages'] = [stage_from_dict(s) for s in data.get('stages', [])]
        data['status'] = WorkflowStatus(data['status'])
        return cls(**data)


class InstanceLocks:
    """
    Mutual exclusion keyed by workflow instance id.

    An entry lives only while some thread holds or waits on its lock.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def active_count(self) -> int:
        return len(self._locks)

    def lock_for(self, instance_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[instance_id] = lock
            return lock

    @contextmanager
    def hold(self, instance_id: str):
        lock = self.lock_for(instance_id)
        with lock:
            yield


Deferred = List[Callable[[], None]]


class WorkflowManager:
    """Starts workflows, records decisions and drives stage transitions"""

    def __init__(
        self,
        storage: StorageInterface,
        templates: TemplateCatalog,
        delegations: DelegationRegistry,
        decisions: DecisionStore,
        subjects: SubjectStore,
        notifier: Optional[NotificationDispatcher] = None,
        history: Optional[HistoryRecorder] = None,
        directory: Optional[ApproverDirectory] = None,
        authorizer: Optional[Callable[[Optional[str], ApprovalDecision], bool]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[InstanceLocks] = None
    ):
        self.storage = storage
        self.templates = templates
        self.delegations = delegations
        self.decisions = decisions
        self.subjects = subjects
        self.notifier = notifier
        self.history = history
        self.directory = directory or StaticApproverDirectory()
        self.authorizer = authorizer
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.locks = locks or InstanceLocks()
        self.table_name = "workflow_instances"
        self.logger = get_logger("policy_approvals.workflows")

    # Transactions

    @contextmanager
    def instance_transaction(self, instance_id: str):
        """
        Hold the instance lock and an all-or-nothing storage transaction.

        Yields a list of callables that run once the transaction commits and
        the lock is released; they are skipped when the block raises.
        """
        deferred: Deferred = []
        with self.locks.hold(instance_id):
            with self.storage.atomic():
                yield deferred
        self.run_deferred(deferred)

    def run_deferred(self, deferred: Deferred) -> None:
        for effect in deferred:
            try:
                effect()
            except Exception:
                self.logger.warning("Post-commit workflow effect failed", exc_info=True)

    def defer_history(self, deferred: Deferred, instance_id: str, action: HistoryAction,
                      details: str, actor: Optional[str] = None) -> None:
        if self.history is None:
            return
        deferred.append(lambda: self.history.record(instance_id, action, details, actor))

    def defer_notification(self, deferred: Deferred, recipient_id: str,
                           kind: NotificationKind, context: Dict[str, Any]) -> None:
        if self.notifier is None:
            return

        def send():
            if not self.notifier.notify(recipient_id, kind, context):
                self.logger.warning(f"Notification {kind.value} to {recipient_id} was not delivered")

        deferred.append(send)

    def _defer_subject_status(self, deferred: Deferred, subject_id: str, status: SubjectStatus) -> None:
        deferred.append(lambda: self.subjects.set_subject_status(subject_id, status))

    # Instance Management

    def start_workflow(
        self,
        subject_id: str,
        initiated_by: str,
        template_id: Optional[str] = None,
        custom_stages: Optional[List[Stage]] = None
    ) -> WorkflowInstance:
        """
        Start an approval workflow for a policy.

        Stages come from the given template, else the custom stage list, else
        the default template for the policy's category.

        Raises:
            NotFoundError: the policy does not exist
            TemplateNotFoundError: no stage list could be resolved
            InvalidStateError: the template is inactive or a stage has no approvers
        """
        subject = self.subjects.get_subject(subject_id)
        template_id, template_name, stages = self._resolve_stages(subject.category, template_id, custom_stages)

        now = self.clock()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            subject_id=subject_id,
            template_name=template_name,
            stages=stages,
            status=status_for_stage(stages[0]),
            initiated_by=initiated_by,
            initiated_at=now,
            template_id=template_id,
            subject_category=subject.category,
            subject_name=subject.display_name
        )

        with self.instance_transaction(instance.id) as deferred:
            created = self._enter_stage(instance, stages[0], now)
            self._save_instance(instance)

            self._defer_subject_status(deferred, subject_id, SubjectStatus.IN_REVIEW)
            self.defer_history(
                deferred, instance.id, HistoryAction.STARTED,
                f"Workflow started using {template_name}", initiated_by
            )
            self._defer_stage_requests(deferred, instance, stages[0], created)

        log_action(
            self.logger, "info", f"Started approval workflow for policy {subject_id}",
            user_id=initiated_by, action="workflow_started",
            resource=f"workflow:{instance.id}",
            extra={"template": template_name, "stages": len(stages)}
        )
        return instance

    def _resolve_stages(self, category: Optional[str], template_id: Optional[str],
                        custom_stages: Optional[List[Stage]]):
        if template_id:
            template = self.templates.get_template(template_id)
            if not template.is_active:
                raise InvalidStateError(f"Template {template.name} is not active")
            name, stages = template.name, template.stages
        elif custom_stages:
            template_id, name, stages = None, "Custom Workflow", custom_stages
        else:
            template = self.templates.get_default(category)
            if template is None:
                raise TemplateNotFoundError(
                    message=f"No template id, custom stages or default template for category {category or 'none'}"
                )
            template_id, name, stages = template.id, template.name, template.stages

        try:
            validate_stages(stages)
        except ValueError as e:
            raise InvalidStateError(str(e)) from e
        return template_id, name, snapshot_stages(stages)

    def _stage_approvers(self, stage: Stage) -> List[str]:
        approvers = list(stage.approver_ids)
        for role in stage.approver_roles:
            approvers.extend(self.directory.members_of(role))
        # Preserve configured order, drop repeats
        return list(dict.fromkeys(approvers))

    def _enter_stage(self, instance: WorkflowInstance, stage: Stage, now: datetime) -> List[ApprovalDecision]:
        """Create the stage's decisions and make it current"""
        approvers = self._stage_approvers(stage)
        if not approvers:
            raise InvalidStateError(f"Stage '{stage.name}' resolved to no approvers")

        due_at = now + timedelta(days=stage.due_days)
        created = []
        assigned = set()
        for approver_id in approvers:
            effective_id = approver_id
            if stage.allow_delegation:
                effective_id = self.delegations.resolve(approver_id, now, instance.subject_category)
            if effective_id in assigned:
                continue
            assigned.add(effective_id)

            delegated = effective_id != approver_id
            decision = ApprovalDecision(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                instance_id=instance.id,
                stage_id=stage.stage_id,
                stage_order=stage.order,
                approver_id=effective_id,
                requested_at=now,
                due_at=due_at,
                original_approver_id=approver_id if delegated else None,
                delegated_by_id=approver_id if delegated else None,
                require_comments=stage.require_comments
            )
            self.decisions.save(decision)
            created.append(decision)

        instance.current_stage_id = stage.stage_id
        instance.current_stage_order = stage.order
        instance.current_stage_started_at = now
        instance.status = status_for_stage(stage)
        return created

    def _defer_stage_requests(self, deferred: Deferred, instance: WorkflowInstance,
                              stage: Stage, created: List[ApprovalDecision]) -> None:
        for decision in created:
            self.defer_notification(
                deferred, decision.approver_id, NotificationKind.APPROVAL_REQUEST,
                self.decision_context(instance, decision, stage)
            )

    def _save_instance(self, instance: WorkflowInstance) -> None:
        instance.version += 1
        instance.updated_at = self.clock()
        self.storage.save(self.table_name, instance.id, instance.to_dict())

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        data = self.storage.load(self.table_name, instance_id)
        if not data:
            raise NotFoundError("Workflow instance", instance_id)
        return WorkflowInstance.from_dict(data)

    def list_instances(self, subject_id: Optional[str] = None,
                       status: Optional[WorkflowStatus] = None) -> List[WorkflowInstance]:
        """Instances filtered by policy and/or status, newest first"""
        filters = {}
        if subject_id:
            filters['subject_id'] = subject_id
        if status:
            filters['status'] = status.value
        instances = [WorkflowInstance.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        instances.sort(key=lambda i: (i.initiated_at, i.id), reverse=True)
        return instances

    def decision_context(self, instance: WorkflowInstance, decision: ApprovalDecision,
                         stage: Optional[Stage] = None) -> Dict[str, Any]:
        """Placeholders for notification templates about a decision"""
        if stage is None:
            stage = instance.stage_by_id(decision.stage_id)
        return {
            'instance_id': instance.id,
            'decision_id': decision.id,
            'policy_id': instance.subject_id,
            'policy_name': instance.subject_name or instance.subject_id,
            'category': instance.subject_category,
            'stage_name': stage.name,
            'instructions': stage.instructions,
            'approver_id': decision.approver_id,
            'original_approver_id': decision.original_approver_id,
            'due_at': decision.due_at.isoformat(),
            'escalation_level': decision.escalation_level
        }

    # Decisions

    def submit_decision(self, decision_id: str, approved: bool,
                        comments: Optional[str] = None,
                        actor_id: Optional[str] = None) -> ApprovalDecision:
        """
        Record an approver's response and re-evaluate the stage.

        Raises:
            NotFoundError: the decision does not exist
            InvalidStateError: the decision is already answered, its stage is
                not current, or its workflow has finished
            UnauthorizedError: the actor may not answer this decision
        """
        decision = self.decisions.get(decision_id)

        with self.instance_transaction(decision.instance_id) as deferred:
            # Re-read under the lock; a concurrent submission may have won
            decision = self.decisions.get(decision_id)
            instance = self.get_instance(decision.instance_id)
            self._ensure_answerable(instance, decision)

            if self.authorizer is not None and not self.authorizer(actor_id, decision):
                raise UnauthorizedError(
                    f"User {actor_id} may not respond on behalf of {decision.approver_id}"
                )
            if decision.require_comments and not (comments and comments.strip()):
                raise WorkflowError("Comments are required for this stage")

            now = self.clock()
            responder = actor_id or decision.approver_id
            decision.record_response(approved, responder, now, comments)
            self.decisions.save(decision)

            stage = instance.stage_by_id(decision.stage_id)
            verdict = "approved" if approved else "rejected"
            details = f'Stage "{stage.name}" {verdict} by {responder}'
            if comments:
                details += f": {comments}"
            self.defer_history(
                deferred, instance.id,
                HistoryAction.APPROVED if approved else HistoryAction.REJECTED,
                details, responder
            )

            self.complete_stage(instance, decision.stage_id, responder, now, deferred)

        log_action(
            self.logger, "info", f"Decision {decision_id} {verdict}",
            user_id=responder, action="decision_submitted",
            resource=f"decision:{decision_id}",
            extra={"instance_id": decision.instance_id, "stage_id": decision.stage_id}
        )
        return decision

    def _ensure_answerable(self, instance: WorkflowInstance, decision: ApprovalDecision) -> None:
        if decision.value == DecisionValue.SUPERSEDED:
            raise InvalidStateError(f"Decision {decision.id} was closed when its stage completed")
        if not decision.is_pending:
            raise InvalidStateError(f"Decision {decision.id} has already been answered")
        if instance.is_finished:
            raise InvalidStateError(
                f"Workflow {instance.id} is already {instance.status.value}"
            )
        if decision.stage_id != instance.current_stage_id:
            raise InvalidStateError(f"Stage {decision.stage_id} is not the current stage")

    def record_automatic_decision(self, instance: WorkflowInstance, decision: ApprovalDecision,
                                  approved: bool, reason: str, now: datetime,
                                  deferred: Deferred) -> None:
        """
        Answer a decision on the approver's behalf and re-evaluate its stage.

        The caller holds the instance transaction.
        """
        decision.record_response(approved, "system", now, reason)
        self.decisions.save(decision)
        self.defer_history(
            deferred, instance.id,
            HistoryAction.AUTO_APPROVED if approved else HistoryAction.AUTO_REJECTED,
            f"Decision for {decision.approver_id} {'approved' if approved else 'rejected'} automatically: {reason}",
            "system"
        )
        self.complete_stage(instance, decision.stage_id, "system", now, deferred)

    # Stage transitions

    def process_stage_completion(self, instance_id: str, stage_id: str,
                                 actor: Optional[str] = None) -> WorkflowInstance:
        """Re-evaluate a stage and advance or finalize if it completed; idempotent"""
        with self.instance_transaction(instance_id) as deferred:
            instance = self.get_instance(instance_id)
            self.complete_stage(instance, stage_id, actor or "system", self.clock(), deferred)
        return instance

    def complete_stage(self, instance: WorkflowInstance, stage_id: str, actor: str,
                       now: datetime, deferred: Deferred) -> None:
        """Advance or finalize when the stage is complete. Caller holds the instance transaction."""
        if instance.is_finished or instance.current_stage_id != stage_id:
            return

        stage = instance.stage_by_id(stage_id)
        stage_decisions = self.decisions.for_stage(instance.id, stage_id)
        outcome = evaluate_stage(stage, stage_decisions)
        if not outcome.complete:
            return

        self._close_unanswered(stage_decisions, now)
        if not outcome.approved:
            self._finalize(instance, False, actor, now, deferred, reason=f'Stage "{stage.name}" rejected')
            return

        next_stage = instance.next_stage()
        if next_stage is None:
            self._finalize(instance, True, actor, now, deferred)
        else:
            self._advance(instance, next_stage, now, deferred)

    def _close_unanswered(self, decisions: List[ApprovalDecision], now: datetime) -> None:
        """Supersede decisions still pending when their stage completes"""
        for decision in decisions:
            if decision.is_pending:
                decision.supersede(now)
                self.decisions.save(decision)
                self.logger.debug(f"Superseded decision {decision.id} for {decision.approver_id}")

    def _advance(self, instance: WorkflowInstance, stage: Stage, now: datetime, deferred: Deferred) -> None:
        created = self._enter_stage(instance, stage, now)
        self._save_instance(instance)

        self.defer_history(deferred, instance.id, HistoryAction.STAGE_ADVANCED,
                           f"Advanced to stage: {stage.name}")
        self._defer_stage_requests(deferred, instance, stage, created)

        log_action(
            self.logger, "info", f"Workflow {instance.id} advanced to stage {stage.name}",
            action="stage_advanced", resource=f"workflow:{instance.id}"
        )

    def _finalize(self, instance: WorkflowInstance, approved: bool, actor: str, now: datetime,
                  deferred: Deferred, reason: Optional[str] = None) -> None:
        instance.status = WorkflowStatus.APPROVED if approved else WorkflowStatus.REJECTED
        instance.completed_at = now
        instance.completed_by = actor
        elapsed_days = (now - instance.initiated_at).total_seconds() / 86400
        instance.total_duration_days = max(0, math.ceil(elapsed_days))
        if reason:
            instance.comments = reason
        self._save_instance(instance)

        context = {
            'instance_id': instance.id,
            'policy_id': instance.subject_id,
            'policy_name': instance.subject_name or instance.subject_id,
            'category': instance.subject_category,
            'stage_name': instance.current_stage().name if instance.current_stage_id else "",
            'duration_days': instance.total_duration_days,
            'comments': reason
        }
        if approved:
            self._defer_subject_status(deferred, instance.subject_id, SubjectStatus.APPROVED)
            self.defer_history(
                deferred, instance.id, HistoryAction.COMPLETED,
                f"Workflow completed and policy approved after {instance.total_duration_days} days", actor
            )
            self.defer_notification(deferred, instance.initiated_by, NotificationKind.WORKFLOW_APPROVED, context)
        else:
            self._defer_subject_status(deferred, instance.subject_id, SubjectStatus.REJECTED)
            self.defer_history(deferred, instance.id, HistoryAction.WORKFLOW_REJECTED, reason or "Rejected", actor)
            self.defer_notification(deferred, instance.initiated_by, NotificationKind.WORKFLOW_REJECTED, context)

        log_action(
            self.logger, "info", f"Workflow {instance.id} finalized as {instance.status.value}",
            user_id=actor, action="workflow_finalized", resource=f"workflow:{instance.id}",
            extra={"duration_days": instance.total_duration_days}
        )

    # Views

    def get_instance_view(self, instance_id: str) -> Dict[str, Any]:
        """Instance with per-stage status, decisions and escalation level"""
        instance = self.get_instance(instance_id)
        decisions = self.decisions.for_instance(instance_id)

        stages = []
        for stage in instance.stages:
            stage_decisions = [d for d in decisions if d.stage_id == stage.stage_id]
            stages.append({
                'stage_id': stage.stage_id,
                'name': stage.name,
                'stage_type': stage.stage_type.value,
                'order': stage.order,
                'approval_rule': stage.approval_rule.value,
                'is_current': stage.stage_id == instance.current_stage_id,
                'status': stage_status(stage_decisions).value,
                'started_at': min((d.requested_at for d in stage_decisions), default=None),
                'due_at': max((d.due_at for d in stage_decisions), default=None),
                'escalation_level': max((d.escalation_level for d in stage_decisions), default=0),
                'decisions': [d.to_dict() for d in stage_decisions]
            })

        return {'instance': instance.to_dict(), 'stages': stages}

    def get_pending_decisions(self, approver_id: str) -> List[ApprovalDecision]:
        """Pending decisions an approver can still answer"""
        pending = []
        instances: Dict[str, WorkflowInstance] = {}
        for decision in self.decisions.pending_for_approver(approver_id):
            if decision.instance_id not in instances:
                instances[decision.instance_id] = self.get_instance(decision.instance_id)
            instance = instances[decision.instance_id]
            if not instance.is_finished and instance.current_stage_id == decision.stage_id:
                pending.append(decision)
        return pending

    def get_history(self, instance_id: str) -> List[Any]:
        self.get_instance(instance_id)
        if self.history is None:
            return []
        return self.history.get_entries(instance_id)
