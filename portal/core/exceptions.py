"""
Workflow exception hierarchy.

Every service in ``portal.services`` raises these types and nothing else
for expected failures. Blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Usage:
    from portal.core.exceptions import NotFoundError, TerminalPhaseError

    raise NotFoundError(resource="Phase", resource_id="DSGN")
    raise TerminalPhaseError(project_id="p-1", phase_key="LAUNCH")

Retry policy:
    Only ConcurrentModificationError is ``retryable``. Every other error is
    deterministic: repeating the same call yields the same failure.
"""


class WorkflowError(Exception):
    """Base class for all workflow-engine errors."""

    retryable = False


class NotFoundError(WorkflowError):
    """Raised when a referenced project, phase, service type, rule or
    requirement does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Phase", "ServiceType").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" {resource_id!r}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(WorkflowError):
    """Raised when an operation would violate a uniqueness guarantee.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class AlreadyTrackedError(ConflictError):
    """Raised by create_tracking when the project already has tracking state.

    Callers wanting idempotent initialisation may treat this as success.
    """

    def __init__(self, project_id: str) -> None:
        super().__init__("ProjectPhaseTracking", "project_id", project_id)
        self.project_id = project_id


class TerminalPhaseError(ValidationError):
    """Raised when advancing a project that is already at its last phase."""

    def __init__(self, project_id: str, phase_key: str) -> None:
        super().__init__(
            "Project already at final phase",
            details={"project_id": project_id, "phase_key": phase_key},
        )
        self.project_id = project_id
        self.phase_key = phase_key


class UnknownRequirementError(ValidationError):
    """Raised when a requirement key is not part of the project's phases.

    Usually an integration bug in the caller (wrong key, wrong project).
    """

    def __init__(self, project_id: str, requirement_key: str) -> None:
        super().__init__(
            f"Requirement {requirement_key!r} does not belong to any phase of project {project_id!r}",
            details={"project_id": project_id, "requirement_key": requirement_key},
        )
        self.project_id = project_id
        self.requirement_key = requirement_key


class ConcurrentModificationError(WorkflowError):
    """Raised when the per-project lock cannot be acquired in time, or the
    database rejects the row lock.

    Transient: safe to retry from the outside.
    """

    retryable = True

    def __init__(self, project_id: str, detail: str | None = None) -> None:
        self.project_id = project_id
        msg = f"Project {project_id!r} is being modified concurrently"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class AutomationEvaluationError(WorkflowError):
    """A rule's transition attempt failed during automatic evaluation.

    Never propagated to the event that triggered evaluation; the engine
    records it in the execution log instead.
    """

    def __init__(self, rule_id: int, project_id: str, cause: Exception) -> None:
        self.rule_id = rule_id
        self.project_id = project_id
        self.cause = cause
        super().__init__(f"Automation rule {rule_id} failed for project {project_id!r}: {cause}")
