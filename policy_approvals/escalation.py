"""
Escalation Engine Module

Periodic sweep over overdue approval decisions. Each overdue decision is
matched against the active escalation rules in priority order and the first
applicable rule's action is applied: a reminder, a manager alert, an automatic
approval or rejection, or reassignment to a backup approver.

Every action raises the decision's escalation level and stamps the escalation
time, which together with the rule's interval makes repeated sweeps within the
cooldown window a no-op. Failures are isolated per decision and reported in
the sweep summary.
"""

import math
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import uuid

from .decisions import ApprovalDecision
from .errors import NotFoundError, WorkflowError
from .history import HistoryAction
from .logging_config import get_logger, log_action
from .notifications import NotificationKind
from .storage import StorageInterface, StorageRecord, parse_datetime
from .templates import EscalationAction, Stage
from .workflows import Deferred, WorkflowInstance, WorkflowManager

SECONDS_PER_DAY = 86400


class TriggerCondition(Enum):
    """What the rule's trigger days are measured from"""
    OVERDUE = "Overdue"            # days past the decision's due date
    NO_RESPONSE = "No Response"    # days since the decision was requested
    STAGE_STUCK = "Stage Stuck"    # days since the current stage was entered


class TargetType(Enum):
    """Who escalation notices and reassignments go to"""
    MANAGER = "Manager"
    SPECIFIC_USER = "Specific User"
    ROLE = "Role"
    BACKUP_APPROVER = "Backup Approver"


@dataclass
class EscalationRule(StorageRecord):
    """Rule applied to overdue decisions"""
    name: str
    trigger_days: float
    action: EscalationAction
    trigger_condition: TriggerCondition = TriggerCondition.OVERDUE
    target_type: TargetType = TargetType.SPECIFIC_USER
    target_ids: List[str] = field(default_factory=list)
    target_role: Optional[str] = None
    max_escalations: int = 1
    interval_days: float = 1
    priority: int = 100
    is_active: bool = True
    categories: List[str] = field(default_factory=list)
    description: str = ""

    def applies_to(self, category: Optional[str]) -> bool:
        return not self.categories or category in self.categories

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRule':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['action'] = EscalationAction(data['action'])
        data['trigger_condition'] = TriggerCondition(data['trigger_condition'])
        data['target_type'] = TargetType(data['target_type'])
        return cls(**data)


@dataclass
class EscalationSummary:
    """Counts reported by one sweep"""
    processed: int = 0
    escalated: int = 0
    auto_approved: int = 0
    auto_rejected: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'escalated': self.escalated,
            'auto_approved': self.auto_approved,
            'auto_rejected': self.auto_rejected,
            'skipped': self.skipped,
            'failed': self.failed,
            'errors': list(self.errors),
            'started_at': self.started_at.isoformat() if self.started_at else None
        }


def days_between(start: datetime, end: datetime) -> float:
    """Elapsed fractional days from start to end"""
    return (end - start).total_seconds() / SECONDS_PER_DAY


def stage_rule(stage: Stage) -> Optional[EscalationRule]:
    """Rule implied by a stage's own escalation settings"""
    if not stage.escalation_enabled or stage.escalation_action is None:
        return None
    epoch = datetime.fromtimestamp(0, timezone.utc)
    return EscalationRule(
        id=f"stage:{stage.stage_id}",
        created_at=epoch,
        updated_at=epoch,
        name=f"{stage.name} escalation",
        trigger_days=stage.escalation_days or 0,
        action=stage.escalation_action,
        target_type=TargetType.SPECIFIC_USER,
        target_ids=list(stage.escalation_target_ids),
        max_escalations=1,
        interval_days=1
    )


class EscalationEngine:
    """Applies escalation rules to overdue decisions"""

    def __init__(self, storage: StorageInterface, manager: WorkflowManager,
                 clock: Optional[Callable[[], datetime]] = None, batch_size: int = 500):
        self.storage = storage
        self.manager = manager
        self.decisions = manager.decisions
        self.directory = manager.directory
        self.clock = clock or manager.clock
        self.batch_size = batch_size
        self.table_name = "escalation_rules"
        self.logger = get_logger("policy_approvals.escalation")

    # Rule Management

    def create_rule(self, rule: EscalationRule) -> EscalationRule:
        if rule.trigger_days < 0:
            raise ValueError("Trigger days cannot be negative")
        if rule.max_escalations < 1:
            raise ValueError("Max escalations must be at least 1")
        if rule.interval_days < 0:
            raise ValueError("Escalation interval cannot be negative")
        if rule.target_type == TargetType.ROLE and not rule.target_role:
            raise ValueError("Role targeted rules need a target role")
        if (rule.action == EscalationAction.REASSIGN
                and rule.target_type in (TargetType.SPECIFIC_USER, TargetType.BACKUP_APPROVER)
                and not rule.target_ids):
            raise ValueError("Reassign rules need at least one target")

        if not rule.id:
            rule.id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        rule.created_at = now
        rule.updated_at = now
        self.storage.save(self.table_name, rule.id, rule.to_dict())

        log_action(
            self.logger, "info", f"Created escalation rule {rule.name}",
            action="escalation_rule_created", resource=f"escalation_rule:{rule.id}"
        )
        return rule

    def get_rule(self, rule_id: str) -> EscalationRule:
        data = self.storage.load(self.table_name, rule_id)
        if not data:
            raise NotFoundError("Escalation rule", rule_id)
        return EscalationRule.from_dict(data)

    def list_rules(self, active_only: bool = True) -> List[EscalationRule]:
        """Rules in evaluation order: priority, then creation"""
        filters = {'is_active': True} if active_only else {}
        rules = [EscalationRule.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        rules.sort(key=lambda r: (r.priority, r.created_at, r.id))
        return rules

    def deactivate_rule(self, rule_id: str) -> EscalationRule:
        rule = self.get_rule(rule_id)
        rule.is_active = False
        rule.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, rule.id, rule.to_dict())

        log_action(
            self.logger, "info", f"Deactivated escalation rule {rule.name}",
            action="escalation_rule_deactivated", resource=f"escalation_rule:{rule.id}"
        )
        return rule

    # Sweep

    def run_sweep(self, now: Optional[datetime] = None) -> EscalationSummary:
        """Escalate every overdue pending decision that a rule applies to"""
        now = now or self.clock()
        summary = EscalationSummary(started_at=now)
        rules = self.list_rules()
        live = self._live_decision_filter()

        for decision in self.decisions.overdue(now, limit=self.batch_size, include=live):
            summary.processed += 1
            try:
                outcome = self._escalate(decision.id, decision.instance_id, rules, now)
            except Exception as e:
                summary.failed += 1
                summary.errors.append({'decision_id': decision.id, 'error': str(e)})
                self.logger.error(f"Escalation failed for decision {decision.id}: {e}", exc_info=True)
                continue

            if outcome is None:
                summary.skipped += 1
            elif outcome == EscalationAction.AUTO_APPROVE:
                summary.auto_approved += 1
            elif outcome == EscalationAction.AUTO_REJECT:
                summary.auto_rejected += 1
            else:
                summary.escalated += 1

        log_action(
            self.logger, "info", "Processed escalations",
            action="escalation_sweep", extra=summary.to_dict()
        )
        return summary

    def _live_decision_filter(self):
        """Predicate keeping decisions whose stage is current in an unfinished instance"""
        instances: Dict[str, Optional[WorkflowInstance]] = {}

        def is_live(decision: ApprovalDecision) -> bool:
            if decision.instance_id not in instances:
                try:
                    instances[decision.instance_id] = self.manager.get_instance(decision.instance_id)
                except NotFoundError:
                    instances[decision.instance_id] = None
            instance = instances[decision.instance_id]
            return (instance is not None and not instance.is_finished
                    and instance.current_stage_id == decision.stage_id)

        return is_live

    def select_rule(self, rules: List[EscalationRule], decision: ApprovalDecision,
                    instance: WorkflowInstance, now: datetime) -> Optional[EscalationRule]:
        """First applicable rule, falling back to the stage's own escalation settings"""
        stage = instance.stage_by_id(decision.stage_id)
        candidates = [r for r in rules if r.applies_to(instance.subject_category)]
        implicit = stage_rule(stage)
        if implicit is not None:
            candidates.append(implicit)

        for rule in candidates:
            if rule.trigger_days > self._elapsed_days(rule, decision, instance, now):
                continue
            if decision.escalation_level >= rule.max_escalations:
                continue
            return rule
        return None

    def _elapsed_days(self, rule: EscalationRule, decision: ApprovalDecision,
                      instance: WorkflowInstance, now: datetime) -> float:
        if rule.trigger_condition == TriggerCondition.NO_RESPONSE:
            return days_between(decision.requested_at, now)
        if rule.trigger_condition == TriggerCondition.STAGE_STUCK:
            return days_between(instance.current_stage_started_at or decision.requested_at, now)
        return days_between(decision.due_at, now)

    def _escalate(self, decision_id: str, instance_id: str, rules: List[EscalationRule],
                  now: datetime) -> Optional[EscalationAction]:
        """Escalate one decision under its instance lock; None when skipped"""
        with self.manager.instance_transaction(instance_id) as deferred:
            decision = self.decisions.get(decision_id)
            instance = self.manager.get_instance(instance_id)

            # Answered, superseded or finished while the sweep was running
            if not decision.is_overdue(now) or instance.is_finished:
                return None
            if decision.stage_id != instance.current_stage_id:
                return None

            rule = self.select_rule(rules, decision, instance, now)
            if rule is None:
                return None
            if decision.last_escalated_at is not None:
                if days_between(decision.last_escalated_at, now) < rule.interval_days:
                    return None

            self._apply(rule, decision, instance, now, deferred)
            return rule.action

    def _apply(self, rule: EscalationRule, decision: ApprovalDecision, instance: WorkflowInstance,
               now: datetime, deferred: Deferred) -> None:
        action = rule.action
        context = self.manager.decision_context(instance, decision)
        context.update({
            'rule_name': rule.name,
            'days_overdue': max(0, math.ceil(days_between(decision.due_at, now)))
        })

        if action == EscalationAction.NOTIFY:
            self.manager.defer_notification(
                deferred, decision.approver_id, NotificationKind.ESCALATION_REMINDER, context
            )
            decision.notifications_sent += 1
            decision.last_notified_at = now
        elif action == EscalationAction.NOTIFY_MANAGER:
            targets = self.resolve_targets(rule, decision)
            if not targets:
                self.logger.warning(f"Escalation rule {rule.name} has no recipients for decision {decision.id}")
            for target_id in targets:
                self.manager.defer_notification(
                    deferred, target_id, NotificationKind.MANAGER_ESCALATION, context
                )
        elif action in (EscalationAction.AUTO_APPROVE, EscalationAction.AUTO_REJECT):
            approved = action == EscalationAction.AUTO_APPROVE
            verdict = "approved" if approved else "rejected"
            # Level and timestamp are stamped before the stage is re-evaluated
            decision.escalate(now)
            self.manager.record_automatic_decision(
                instance, decision, approved,
                f"Auto-{verdict} after {rule.trigger_days} days overdue", now, deferred
            )
            self._record_escalation(rule, decision, instance, deferred)
            return
        elif action == EscalationAction.REASSIGN:
            self._reassign(rule, decision, instance, context, deferred)
        else:
            raise ValueError(f"Unknown escalation action: {action}")

        decision.escalate(now)
        self.decisions.save(decision)
        self._record_escalation(rule, decision, instance, deferred)

    def _record_escalation(self, rule: EscalationRule, decision: ApprovalDecision,
                           instance: WorkflowInstance, deferred: Deferred) -> None:
        self.manager.defer_history(
            deferred, instance.id, HistoryAction.ESCALATED,
            f"Rule {rule.name}: {rule.action.value} for {decision.approver_id} "
            f"(level {decision.escalation_level})",
            "system"
        )
        log_action(
            self.logger, "info", f"Escalated decision {decision.id} via {rule.name}",
            action="decision_escalated", resource=f"decision:{decision.id}",
            extra={"rule_action": rule.action.value, "level": decision.escalation_level}
        )

    def _reassign(self, rule: EscalationRule, decision: ApprovalDecision, instance: WorkflowInstance,
                  context: Dict[str, Any], deferred: Deferred) -> None:
        taken = {
            d.approver_id for d in self.decisions.for_stage(instance.id, decision.stage_id)
            if d.id != decision.id
        }
        targets = [t for t in self.resolve_targets(rule, decision) if t != decision.approver_id and t not in taken]
        if not targets:
            self.logger.warning(f"No reassignment target for decision {decision.id} under rule {rule.name}")
            return

        previous_id = decision.approver_id
        decision.original_approver_id = previous_id
        decision.approver_id = targets[0]
        decision.comments = f"Reassigned from user {previous_id} due to escalation"

        context = dict(context, approver_id=decision.approver_id, original_approver_id=previous_id)
        self.manager.defer_notification(deferred, decision.approver_id, NotificationKind.REASSIGNMENT, context)
        self.manager.defer_history(
            deferred, instance.id, HistoryAction.REASSIGNED,
            f"Decision reassigned from {previous_id} to {decision.approver_id}", "system"
        )

    def resolve_targets(self, rule: EscalationRule, decision: ApprovalDecision) -> List[str]:
        """Recipients for a rule; managers fall back to the configured targets"""
        if rule.target_type == TargetType.ROLE:
            targets = self.directory.members_of(rule.target_role) if rule.target_role else []
        elif rule.target_type == TargetType.MANAGER:
            manager_id = self.directory.manager_of(decision.approver_id)
            targets = [manager_id] if manager_id else list(rule.target_ids)
        else:
            targets = list(rule.target_ids)
        return list(dict.fromkeys(targets))


class EscalationScheduler:
    """Runs the escalation sweep on a background thread"""

    def __init__(self, engine: EscalationEngine, interval_seconds: float = 900):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.last_result: Optional[EscalationSummary] = None
        self._stop_event = threading.Event()
        self._sweep_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("policy_approvals.escalation.scheduler")

    def run_once(self) -> Optional[EscalationSummary]:
        """Run a sweep now; returns None when one is already running or it failed"""
        if not self._sweep_lock.acquire(blocking=False):
            self.logger.info("Escalation sweep still running, skipping tick")
            return None
        try:
            self.last_result = self.engine.run_sweep()
            return self.last_result
        except WorkflowError:
            self.logger.exception("Escalation sweep failed")
            return None
        finally:
            self._sweep_lock.release()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="escalation-scheduler", daemon=True)
        self._thread.start()
        self.logger.info(f"Escalation scheduler started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self.logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                self.logger.exception("Escalation scheduler tick failed")
