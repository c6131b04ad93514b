"""
Workflow Error Taxonomy

Domain failures raised by the approval engine. All derive from ValueError so
callers that already treat domain problems as ValueError keep working.
"""


class WorkflowError(ValueError):
    """Base class for approval workflow failures"""


class NotFoundError(WorkflowError):
    """A template, instance, decision, delegation or rule does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidStateError(WorkflowError):
    """The requested transition is not allowed in the current state"""


class TemplateNotFoundError(NotFoundError, InvalidStateError):
    """No template could be resolved for a workflow start"""

    def __init__(self, template_id: str = "", message: str = ""):
        NotFoundError.__init__(self, "Template", template_id or "<default>")
        if message:
            self.args = (message,)


class UnauthorizedError(WorkflowError):
    """The caller may not act on behalf of the resolved approver"""


class TransientIOError(WorkflowError):
    """Storage or delivery failure that may succeed on retry"""
