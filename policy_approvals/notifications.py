"""
Notification Dispatcher Module

Delivers approval requests, escalation reminders, reassignment notices and
workflow outcomes to approvers and initiators through pluggable channels
(log, in-app, generic webhook and Microsoft Teams adaptive cards).

Delivery is best-effort: a failing channel is logged and reported as False,
never raised to the workflow operation that triggered it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import uuid
import requests

from .storage import StorageInterface, StorageRecord, parse_datetime, to_storable
from .logging_config import get_logger, log_action


class NotificationKind(Enum):
    """Kinds of workflow notification"""
    APPROVAL_REQUEST = "approval_request"
    ESCALATION_REMINDER = "escalation_reminder"
    MANAGER_ESCALATION = "manager_escalation"
    REASSIGNMENT = "reassignment"
    WORKFLOW_APPROVED = "workflow_approved"
    WORKFLOW_REJECTED = "workflow_rejected"


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    IN_APP = "in_app"
    WEBHOOK = "webhook"
    TEAMS = "teams"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class NotificationTemplate:
    """Subject and body with {placeholders} filled from the notification context"""
    kind: NotificationKind
    subject_template: str
    body_template: str


DEFAULT_TEMPLATES: Dict[NotificationKind, NotificationTemplate] = {
    NotificationKind.APPROVAL_REQUEST: NotificationTemplate(
        NotificationKind.APPROVAL_REQUEST,
        "Policy Approval Required: {policy_name} - {stage_name}",
        "You have been assigned to review and approve {policy_name} at stage "
        "{stage_name}. Please respond by {due_at}. {instructions}"
    ),
    NotificationKind.ESCALATION_REMINDER: NotificationTemplate(
        NotificationKind.ESCALATION_REMINDER,
        "Escalation: Policy Approval Overdue - {stage_name}",
        "Your approval of {policy_name} at stage {stage_name} was due {due_at} "
        "and is {days_overdue} day(s) overdue (escalation level {escalation_level})."
    ),
    NotificationKind.MANAGER_ESCALATION: NotificationTemplate(
        NotificationKind.MANAGER_ESCALATION,
        "Manager Alert: Policy Approval Escalation",
        "The approval of {policy_name} at stage {stage_name} assigned to "
        "{approver_id} is {days_overdue} day(s) overdue. Rule: {rule_name}."
    ),
    NotificationKind.REASSIGNMENT: NotificationTemplate(
        NotificationKind.REASSIGNMENT,
        "Policy Approval Reassigned to You",
        "The approval of {policy_name} at stage {stage_name} was reassigned to you "
        "from {original_approver_id} after escalation. Please respond by {due_at}."
    ),
    NotificationKind.WORKFLOW_APPROVED: NotificationTemplate(
        NotificationKind.WORKFLOW_APPROVED,
        "Policy Approved: {policy_name}",
        "The approval workflow for {policy_name} completed as Approved after "
        "{duration_days} day(s)."
    ),
    NotificationKind.WORKFLOW_REJECTED: NotificationTemplate(
        NotificationKind.WORKFLOW_REJECTED,
        "Policy Rejected: {policy_name}",
        "The approval workflow for {policy_name} was rejected at stage {stage_name}. "
        "{comments}"
    ),
}


class _TemplateContext(dict):
    """Leaves unknown placeholders in place instead of failing the render"""

    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template: NotificationTemplate, context: Dict[str, Any]):
    values = _TemplateContext({k: ("" if v is None else v) for k, v in context.items()})
    subject = template.subject_template.format_map(values)
    body = template.body_template.format_map(values).strip()
    return subject, body


@dataclass
class Notification(StorageRecord):
    """A rendered notification and its delivery outcome"""
    kind: NotificationKind
    channel: NotificationChannel
    recipient_id: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    channel: NotificationChannel = NotificationChannel.LOG

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the application log"""

    channel = NotificationChannel.LOG

    def __init__(self, logger=None):
        self.logger = logger or get_logger("policy_approvals.notifications.log")

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"Notification to {notification.recipient_id}: {notification.subject} | "
            f"{notification.body[:100]}"
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """Stores notifications for display in the approvals portal"""

    channel = NotificationChannel.IN_APP

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    def send(self, notification: Notification) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        in_app_data = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "kind": notification.kind.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
            "metadata": notification.metadata
        }
        self.storage.save(self.table, in_app_data["id"], in_app_data)
        return True

    def inbox(self, recipient_id: str) -> List[Dict[str, Any]]:
        """Unread and read in-app notifications for a recipient"""
        return self.storage.find(self.table, {"recipient_id": recipient_id})


class WebhookChannelProvider(ChannelProvider):
    """Posts notifications as JSON to an external endpoint"""

    channel = NotificationChannel.WEBHOOK

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "kind": notification.kind.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300


class TeamsChannelProvider(ChannelProvider):
    """Sends approval cards to a Microsoft Teams incoming webhook"""

    channel = NotificationChannel.TEAMS

    def __init__(self, webhook_url: str, portal_base_url: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.portal_base_url = portal_base_url.rstrip("/")
        self.timeout = timeout

    def build_adaptive_card(self, notification: Notification) -> Dict[str, Any]:
        """Adaptive card with the approval facts and links into the portal"""
        context = notification.metadata
        facts = [
            {"title": "Policy:", "value": str(context.get("policy_name") or "N/A")},
            {"title": "Category:", "value": str(context.get("category") or "General")},
            {"title": "Stage:", "value": str(context.get("stage_name") or "Review")},
        ]
        if context.get("due_at"):
            facts.append({"title": "Due Date:", "value": str(context["due_at"])[:10]})

        body: List[Dict[str, Any]] = [
            {
                "type": "Container",
                "style": "emphasis",
                "items": [
                    {"type": "TextBlock", "text": notification.subject,
                     "weight": "Bolder", "size": "Medium", "wrap": True}
                ]
            },
            {"type": "Container", "items": [{"type": "FactSet", "facts": facts}]},
            {"type": "Container", "items": [
                {"type": "TextBlock", "text": notification.body, "wrap": True, "maxLines": 3}
            ]}
        ]
        if notification.kind in (NotificationKind.ESCALATION_REMINDER, NotificationKind.MANAGER_ESCALATION):
            body.append({
                "type": "Container",
                "style": "attention",
                "items": [{"type": "TextBlock", "text": "This approval is overdue!",
                           "weight": "Bolder", "color": "Attention", "wrap": True}]
            })

        actions = []
        if context.get("decision_id"):
            approval_url = f"{self.portal_base_url}/approvals/{context['decision_id']}"
            actions.append({"type": "Action.OpenUrl", "title": "Review & Approve",
                            "url": approval_url, "style": "positive"})
        if context.get("instance_id"):
            actions.append({"type": "Action.OpenUrl", "title": "View Workflow",
                            "url": f"{self.portal_base_url}/workflows/{context['instance_id']}"})

        return {
            "type": "AdaptiveCard",
            "version": "1.4",
            "msTeams": {"width": "Full"},
            "body": body,
            "actions": actions
        }

    def send(self, notification: Notification) -> bool:
        message = {
            "type": "message",
            "attachments": [{
                "contentType": "application/vnd.microsoft.card.adaptive",
                "contentUrl": None,
                "content": self.build_adaptive_card(notification)
            }]
        }
        response = requests.post(self.webhook_url, json=message, timeout=self.timeout)
        return 200 <= response.status_code < 300


class NotificationDispatcher(ABC):
    """Interface the workflow engine notifies collaborators through"""

    @abstractmethod
    def notify(self, recipient_id: str, kind: NotificationKind, context: Dict[str, Any]) -> bool:
        """Deliver a notification; returns success and never raises"""
        pass


class ChannelNotificationDispatcher(NotificationDispatcher):
    """Renders templates and fans a notification out to every registered channel"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 providers: Optional[List[ChannelProvider]] = None,
                 templates: Optional[Dict[NotificationKind, NotificationTemplate]] = None):
        self.storage = storage
        self.notifications_table = "notifications"
        self.providers: List[ChannelProvider] = list(providers) if providers is not None else [LogChannelProvider()]
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)
        self.logger = get_logger("policy_approvals.notifications")

    def register_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def notify(self, recipient_id: str, kind: NotificationKind, context: Dict[str, Any]) -> bool:
        template = self.templates.get(kind)
        if template is None:
            self.logger.warning(f"No notification template for {kind.value}")
            return False

        subject, body = render_template(template, context)
        delivered = False
        for provider in self.providers:
            if self._send_via(provider, recipient_id, kind, subject, body, context):
                delivered = True
        return delivered

    def _send_via(self, provider: ChannelProvider, recipient_id: str, kind: NotificationKind,
                  subject: str, body: str, context: Dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            channel=provider.channel,
            recipient_id=recipient_id,
            subject=subject,
            body=body,
            metadata=to_storable({k: v for k, v in context.items() if v is not None})
        )

        try:
            success = provider.send(notification)
            if success:
                notification.status = NotificationStatus.SENT
                notification.sent_at = now
            else:
                notification.status = NotificationStatus.FAILED
                notification.failed_reason = "Provider send failed"
        except Exception as e:
            success = False
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = str(e)
            self.logger.warning(
                f"{provider.channel.value} delivery to {recipient_id} failed: {e}",
                exc_info=True
            )

        if self.storage is not None:
            try:
                self.storage.save(self.notifications_table, notification.id, notification.to_dict())
            except Exception:
                self.logger.exception(f"Failed to record notification {notification.id}")

        log_action(
            self.logger, "info" if success else "warning",
            f"Notification {kind.value} to {recipient_id} via {provider.channel.value}: "
            f"{notification.status.value}",
            user_id=recipient_id, action="notification_sent" if success else "notification_failed",
            resource=f"notification:{notification.id}"
        )
        return success

    def sent_to(self, recipient_id: str) -> List[Notification]:
        """Recorded notifications for a recipient"""
        if self.storage is None:
            return []
        records = self.storage.find(self.notifications_table, {"recipient_id": recipient_id})
        return [_notification_from_dict(data) for data in records]


def _notification_from_dict(data: Dict[str, Any]) -> Notification:
    data = dict(data)
    for key in ("created_at", "updated_at", "sent_at"):
        data[key] = parse_datetime(data.get(key))
    data["kind"] = NotificationKind(data["kind"])
    data["channel"] = NotificationChannel(data["channel"])
    data["status"] = NotificationStatus(data["status"])
    return Notification(**data)
