"""
FastAPI REST API Module

REST endpoints over the approval engine: policies, workflow templates,
workflow instances, approver decisions, delegations, escalation rules and the
escalation sweep. Runs on port 8091 by default.
"""

from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uuid
import uvicorn

from .config import ApprovalsConfig, get_config
from .decisions import DecisionStore
from .delegation import DelegationRegistry, DelegationType
from .errors import NotFoundError, InvalidStateError, UnauthorizedError, TransientIOError
from .escalation import (
    EscalationEngine, EscalationRule, EscalationScheduler, TargetType, TriggerCondition
)
from .history import WorkflowHistory
from .logging_config import setup_logging, get_logger
from .notifications import (
    ChannelNotificationDispatcher, InAppChannelProvider, LogChannelProvider,
    TeamsChannelProvider, WebhookChannelProvider
)
from .storage import InMemoryStorage, SQLiteStorage
from .subjects import StaticApproverDirectory, StorageSubjectStore
from .templates import (
    ApprovalRule, EscalationAction, Stage, StageType, TemplateCatalog, WorkflowTemplate
)
from .workflows import WorkflowManager, WorkflowStatus


# Pydantic models for API requests
class StageModel(BaseModel):
    stage_id: Optional[str] = None
    name: str
    stage_type: str = Field("Approval", description="Review, Legal Review, Approval, Final Approval, Acknowledgement")
    order: int
    approver_ids: List[str] = Field(default_factory=list)
    approver_roles: List[str] = Field(default_factory=list)
    approval_rule: str = Field("All Must Approve", description="All Must Approve, Any One Approves, Majority Approves, Quorum Approves")
    quorum_percentage: Optional[str] = None  # Decimal as string
    due_days: Optional[int] = None
    require_comments: bool = False
    allow_delegation: bool = True
    escalation_enabled: bool = False
    escalation_days: Optional[int] = None
    escalation_action: Optional[str] = None
    escalation_target_ids: List[str] = Field(default_factory=list)
    instructions: Optional[str] = None

    def to_stage(self, settings: ApprovalsConfig) -> Stage:
        rule = ApprovalRule(self.approval_rule)
        try:
            quorum = Decimal(self.quorum_percentage) if self.quorum_percentage else None
        except InvalidOperation:
            raise ValueError(f"Invalid quorum percentage: {self.quorum_percentage}")
        if quorum is None and rule == ApprovalRule.QUORUM_APPROVES:
            quorum = Decimal(str(settings.default_quorum_percentage))
        return Stage(
            stage_id=self.stage_id or str(uuid.uuid4()),
            name=self.name,
            stage_type=StageType(self.stage_type),
            order=self.order,
            approver_ids=self.approver_ids,
            approver_roles=self.approver_roles,
            approval_rule=rule,
            quorum_percentage=quorum,
            due_days=self.due_days if self.due_days is not None else settings.default_due_days,
            require_comments=self.require_comments,
            allow_delegation=self.allow_delegation,
            escalation_enabled=self.escalation_enabled,
            escalation_days=self.escalation_days,
            escalation_action=EscalationAction(self.escalation_action) if self.escalation_action else None,
            escalation_target_ids=self.escalation_target_ids,
            instructions=self.instructions
        )


class RegisterPolicyRequest(BaseModel):
    policy_id: str
    display_name: str
    category: Optional[str] = None


class CreateTemplateRequest(BaseModel):
    name: str
    stages: List[StageModel]
    category: Optional[str] = None
    description: str = ""
    is_default: bool = False
    created_by: str = ""


class StartWorkflowRequest(BaseModel):
    policy_id: str
    initiated_by: str
    template_id: Optional[str] = None
    stages: Optional[List[StageModel]] = None


class SubmitDecisionRequest(BaseModel):
    approved: bool
    comments: Optional[str] = None
    actor_id: Optional[str] = None


class CreateDelegationRequest(BaseModel):
    delegator_id: str
    delegate_id: str
    delegation_type: str = Field("Temporary", description="Temporary, Permanent, Out of Office")
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    reason: Optional[str] = None
    categories: List[str] = Field(default_factory=list)


class CreateEscalationRuleRequest(BaseModel):
    name: str
    trigger_days: float
    action: str = Field(..., description="Notify, Notify Manager, Auto Approve, Auto Reject, Reassign")
    trigger_condition: str = "Overdue"
    target_type: str = "Specific User"
    target_ids: List[str] = Field(default_factory=list)
    target_role: Optional[str] = None
    max_escalations: int = 1
    interval_days: float = 1
    priority: int = 100
    categories: List[str] = Field(default_factory=list)
    description: str = ""


# Approval System Context
class ApprovalSystem:
    """Policy approval engine with all components initialized"""

    def __init__(self, use_sqlite: bool = True, settings: Optional[ApprovalsConfig] = None,
                 directory: Optional[StaticApproverDirectory] = None):
        self.settings = settings or get_config()

        if use_sqlite:
            self.storage = SQLiteStorage(self.settings.database_path)
        else:
            self.storage = InMemoryStorage()

        self.templates = TemplateCatalog(self.storage)
        self.delegations = DelegationRegistry(self.storage)
        self.decisions = DecisionStore(self.storage)
        self.subjects = StorageSubjectStore(self.storage)
        self.history = WorkflowHistory(self.storage)
        self.directory = directory or StaticApproverDirectory()

        self.in_app = InAppChannelProvider(self.storage)
        providers = [LogChannelProvider(), self.in_app]
        if self.settings.webhook_url:
            providers.append(WebhookChannelProvider(self.settings.webhook_url, self.settings.webhook_timeout_seconds))
        if self.settings.teams_webhook_url:
            providers.append(TeamsChannelProvider(
                self.settings.teams_webhook_url, self.settings.portal_base_url,
                self.settings.webhook_timeout_seconds
            ))
        self.notifier = ChannelNotificationDispatcher(self.storage, providers)

        self.workflows = WorkflowManager(
            self.storage, self.templates, self.delegations, self.decisions, self.subjects,
            notifier=self.notifier, history=self.history, directory=self.directory
        )
        self.escalations = EscalationEngine(
            self.storage, self.workflows, batch_size=self.settings.escalation_batch_size
        )
        self.scheduler = EscalationScheduler(
            self.escalations, interval_seconds=self.settings.escalation_interval_minutes * 60
        )

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()


# Global approval system instance - initialized in lifespan unless already set
approval_system: Optional[ApprovalSystem] = None
logger = get_logger("policy_approvals.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the approval system and run the escalation scheduler when enabled"""
    global approval_system
    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format)

    if approval_system is None:
        approval_system = ApprovalSystem(use_sqlite=settings.use_sqlite, settings=settings)
        logger.info("Approval system initialized")

    if settings.escalation_scheduler_enabled:
        approval_system.scheduler.start()

    yield

    approval_system.scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Policy Approval Workflow API",
    description="Multi-stage policy approval workflows with delegation and escalation",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency to get approval system
def get_approval_system() -> ApprovalSystem:
    if approval_system is None:
        raise HTTPException(status_code=503, detail="Approval system not initialized")
    return approval_system


def http_error(error: Exception) -> HTTPException:
    """Map a domain error onto an HTTP status"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, UnauthorizedError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, InvalidStateError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, TransientIOError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Policy Endpoints
@app.post("/policies", status_code=status.HTTP_201_CREATED)
def register_policy(
    request: RegisterPolicyRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Register a policy so it can be sent for approval"""
    subject = system.subjects.register_subject(request.policy_id, request.display_name, request.category)
    return {"policy_id": subject.id, "status": subject.status.value}


@app.get("/policies/{policy_id}")
def get_policy(
    policy_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        subject = system.subjects.get_subject(policy_id)
    except ValueError as e:
        raise http_error(e)
    return {
        "id": subject.id,
        "display_name": subject.display_name,
        "category": subject.category,
        "status": subject.status.value
    }


# Template Endpoints
@app.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(
    request: CreateTemplateRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create a workflow template"""
    try:
        now = datetime.now(timezone.utc)
        template = system.templates.create_template(WorkflowTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=request.name,
            stages=[stage.to_stage(system.settings) for stage in request.stages],
            category=request.category,
            description=request.description,
            is_default=request.is_default,
            created_by=request.created_by
        ))
    except ValueError as e:
        raise http_error(e)
    return {"template_id": template.id, "message": "Template created successfully"}


@app.get("/templates")
def list_templates(
    category: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """List active templates"""
    return {"templates": [t.to_dict() for t in system.templates.list_active(category)]}


@app.get("/templates/default")
def get_default_template(
    category: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    template = system.templates.get_default(category)
    if not template:
        raise HTTPException(status_code=404, detail="No default template")
    return template.to_dict()


@app.get("/templates/{template_id}")
def get_template(
    template_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return system.templates.get_template(template_id).to_dict()
    except ValueError as e:
        raise http_error(e)


@app.post("/templates/{template_id}/deactivate")
def deactivate_template(
    template_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        template = system.templates.deactivate_template(template_id)
    except ValueError as e:
        raise http_error(e)
    return {"template_id": template.id, "is_active": template.is_active}


# Workflow Endpoints
@app.post("/workflows", status_code=status.HTTP_201_CREATED)
def start_workflow(
    request: StartWorkflowRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Start an approval workflow for a policy"""
    try:
        custom_stages = None
        if request.stages:
            custom_stages = [stage.to_stage(system.settings) for stage in request.stages]
        instance = system.workflows.start_workflow(
            request.policy_id, request.initiated_by,
            template_id=request.template_id, custom_stages=custom_stages
        )
    except ValueError as e:
        raise http_error(e)
    return {
        "workflow_id": instance.id,
        "status": instance.status.value,
        "current_stage_id": instance.current_stage_id
    }


@app.get("/workflows")
def list_workflows(
    policy_id: Optional[str] = None,
    status: Optional[str] = None,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        workflow_status = WorkflowStatus(status) if status else None
    except ValueError as e:
        raise http_error(e)
    instances = system.workflows.list_instances(subject_id=policy_id, status=workflow_status)
    return {"workflows": [i.to_dict() for i in instances]}


@app.get("/workflows/{workflow_id}")
def get_workflow(
    workflow_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Workflow with per-stage status and decisions"""
    try:
        return system.workflows.get_instance_view(workflow_id)
    except ValueError as e:
        raise http_error(e)


@app.get("/workflows/{workflow_id}/history")
def get_workflow_history(
    workflow_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        entries = system.workflows.get_history(workflow_id)
    except ValueError as e:
        raise http_error(e)
    return {"history": [entry.to_dict() for entry in entries]}


@app.get("/history/integrity")
def verify_history_integrity(system: ApprovalSystem = Depends(get_approval_system)):
    """Verify the workflow history hash chain"""
    return system.history.verify_integrity()


# Decision Endpoints
@app.post("/decisions/{decision_id}")
def submit_decision(
    decision_id: str,
    request: SubmitDecisionRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Approve or reject a pending decision"""
    try:
        decision = system.workflows.submit_decision(
            decision_id, request.approved, request.comments, request.actor_id
        )
        instance = system.workflows.get_instance(decision.instance_id)
    except ValueError as e:
        raise http_error(e)
    return {
        "decision_id": decision.id,
        "value": decision.value.value,
        "workflow_status": instance.status.value,
        "current_stage_id": instance.current_stage_id
    }


@app.get("/approvers/{approver_id}/pending")
def get_pending_decisions(
    approver_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    decisions = system.workflows.get_pending_decisions(approver_id)
    return {"decisions": [d.to_dict() for d in decisions]}


# Delegation Endpoints
@app.post("/delegations", status_code=status.HTTP_201_CREATED)
def create_delegation(
    request: CreateDelegationRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        delegation = system.delegations.create_delegation(
            request.delegator_id, request.delegate_id,
            delegation_type=DelegationType(request.delegation_type),
            start_at=request.start_at, end_at=request.end_at,
            reason=request.reason, categories=request.categories
        )
    except ValueError as e:
        raise http_error(e)
    return {"delegation_id": delegation.id, "message": "Delegation created successfully"}


@app.delete("/delegations/{delegation_id}")
def revoke_delegation(
    delegation_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        delegation = system.delegations.revoke_delegation(delegation_id)
    except ValueError as e:
        raise http_error(e)
    return {"delegation_id": delegation.id, "is_active": delegation.is_active}


@app.get("/users/{user_id}/delegations")
def get_user_delegations(
    user_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    delegations = system.delegations.get_user_delegations(user_id)
    return {
        "outgoing": [d.to_dict() for d in delegations['outgoing']],
        "incoming": [d.to_dict() for d in delegations['incoming']]
    }


# Escalation Endpoints
@app.post("/escalation-rules", status_code=status.HTTP_201_CREATED)
def create_escalation_rule(
    request: CreateEscalationRuleRequest,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        now = datetime.now(timezone.utc)
        rule = system.escalations.create_rule(EscalationRule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=request.name,
            trigger_days=request.trigger_days,
            action=EscalationAction(request.action),
            trigger_condition=TriggerCondition(request.trigger_condition),
            target_type=TargetType(request.target_type),
            target_ids=request.target_ids,
            target_role=request.target_role,
            max_escalations=request.max_escalations,
            interval_days=request.interval_days,
            priority=request.priority,
            categories=request.categories,
            description=request.description
        ))
    except ValueError as e:
        raise http_error(e)
    return {"rule_id": rule.id, "message": "Escalation rule created successfully"}


@app.get("/escalation-rules")
def list_escalation_rules(
    include_inactive: bool = False,
    system: ApprovalSystem = Depends(get_approval_system)
):
    rules = system.escalations.list_rules(active_only=not include_inactive)
    return {"rules": [r.to_dict() for r in rules]}


@app.delete("/escalation-rules/{rule_id}")
def deactivate_escalation_rule(
    rule_id: str,
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        rule = system.escalations.deactivate_rule(rule_id)
    except ValueError as e:
        raise http_error(e)
    return {"rule_id": rule.id, "is_active": rule.is_active}


@app.post("/escalations/run")
def run_escalations(system: ApprovalSystem = Depends(get_approval_system)):
    """Run the escalation sweep now"""
    summary = system.scheduler.run_once()
    if summary is None:
        raise HTTPException(status_code=409, detail="Escalation sweep did not run; one may already be in progress")
    return summary.to_dict()


# System Information
@app.get("/")
async def root():
    """Root endpoint with system information"""
    return {
        "system": "Policy Approval Workflow Engine",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "policies": "/policies",
            "templates": "/templates",
            "workflows": "/workflows",
            "decisions": "/decisions",
            "delegations": "/delegations",
            "escalation_rules": "/escalation-rules"
        }
    }


# Run server function
def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "policy_approvals.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
