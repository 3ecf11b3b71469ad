"""
Client Portal Workflow
Workflow domain models.

Reference data (edited by configuration / admins, never by the tracker):
    - Phase: phase library entry (ONB, IDEA, DSGN, ...)
    - ServiceType: service code → default ordered phase keys
    - PhaseRequirement: action a client/admin must complete in a phase
    - AutomationRule: condition that triggers an automatic transition

Per-project state:
    - ProjectPhaseTracking: current phase, frozen phase list, completions
    - ProjectRequirementCompletion: one row per (project, requirement)
    - PaymentSignal: payment confirmations delivered by billing

Append-only audit:
    - PhaseTransitionHistory: one row per transition
    - AutomationExecutionLog: one row per attempted automatic transition

project_id is an opaque String(64) supplied by the projects module (UUID
in the portal); the workflow engine does not own the projects table.
"""

from datetime import datetime, timezone

from portal.models import db
from portal.utils.helpers import isoformat

# ── Constants ────────────────────────────────────────────────────────────────

PHASE_CATEGORIES = frozenset({"onboarding", "standard", "delivery"})

REQUIREMENT_TYPES = frozenset({
    "form",
    "agreement",
    "payment",
    "review",
    "approval",
    "feedback",
    "proof",
    "monitor",
    "check",
    "download",
    "confirm",
    "launch",
})

CONDITION_TYPES = frozenset({
    "all_actions_complete",
    "payment_received",
    "time_elapsed",
    "manual_only",
})

TRANSITION_TYPES = frozenset({"initial", "advance", "override", "completion"})

EXECUTION_OUTCOMES = frozenset({"completed", "failed", "test"})

SYSTEM_ACTOR = "system"


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
#  Reference data
# ═════════════════════════════════════════════════════════════════════════════


class Phase(db.Model):
    """
    Phase library entry.

    Ordering is NOT global: a project's order comes from its frozen
    composition. ``sort_order`` only orders the catalog listing.
    """

    __tablename__ = "workflow_phases"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(20), unique=True, nullable=False,
                    comment="Stable short code: ONB, IDEA, DSGN, ...")
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon = db.Column(db.String(50), nullable=True, comment="Lucide icon name")
    category = db.Column(db.String(20), nullable=False, default="standard",
                         comment="onboarding | standard | delivery")
    requires_client_action = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    requirements = db.relationship(
        "PhaseRequirement",
        back_populates="phase",
        order_by="[PhaseRequirement.sort_order, PhaseRequirement.requirement_key]",
        lazy="select",
    )

    def to_dict(self, include_requirements: bool = False) -> dict:
        d = {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "category": self.category,
            "requires_client_action": self.requires_client_action,
            "sort_order": self.sort_order,
        }
        if include_requirements:
            d["requirements"] = [r.to_dict() for r in self.requirements]
        return d

    def __repr__(self) -> str:
        return f"<Phase {self.key}>"


class ServiceType(db.Model):
    """Service category that seeds a project's phase composition."""

    __tablename__ = "workflow_service_types"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), unique=True, nullable=False,
                     comment="SP, WEB, LOGO, ...")
    display_name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    default_phase_keys = db.Column(db.JSON, nullable=False, default=list,
                                   comment="Ordered list of Phase.key")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "display_name": self.display_name,
            "description": self.description,
            "default_phase_keys": list(self.default_phase_keys or []),
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }

    def __repr__(self) -> str:
        return f"<ServiceType {self.code}>"


class PhaseRequirement(db.Model):
    """
    Action required (or suggested) to satisfy a phase.

    Mandatory requirements gate phase completion; optional ones never do.
    Identity is (phase_key, requirement_key).
    """

    __tablename__ = "phase_requirements"
    __table_args__ = (
        db.UniqueConstraint("phase_key", "requirement_key", name="uq_phase_requirement_key"),
        db.Index("ix_phase_requirements_requirement_key", "requirement_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_key = db.Column(
        db.String(20),
        db.ForeignKey("workflow_phases.key"),
        nullable=False,
        index=True,
    )
    requirement_key = db.Column(db.String(100), nullable=False,
                                comment="Programmatic reference, e.g. intake_form")
    requirement_type = db.Column(db.String(50), nullable=False,
                                 comment="form | agreement | payment | review | approval | ...")
    requirement_text = db.Column(db.Text, nullable=False)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    phase = db.relationship("Phase", back_populates="requirements")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phase_key": self.phase_key,
            "requirement_key": self.requirement_key,
            "requirement_type": self.requirement_type,
            "requirement_text": self.requirement_text,
            "is_mandatory": self.is_mandatory,
            "sort_order": self.sort_order,
        }

    def __repr__(self) -> str:
        return f"<PhaseRequirement {self.phase_key}/{self.requirement_key}>"


class AutomationRule(db.Model):
    """
    Automatic transition rule.

    ``to_phase_key`` NULL means "whatever follows from_phase_key in the
    project's composition". A non-NULL target only applies to projects whose
    next phase is that key. ``condition_params`` is validated into a typed
    condition by the automation engine before use.
    """

    __tablename__ = "phase_automation_rules"
    __table_args__ = (
        db.UniqueConstraint("from_phase_key", "to_phase_key", "condition_type",
                            name="uq_automation_rule_from_to_type"),
        db.Index("ix_automation_rules_from_active", "from_phase_key", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    from_phase_key = db.Column(db.String(20), db.ForeignKey("workflow_phases.key"), nullable=False)
    to_phase_key = db.Column(db.String(20), db.ForeignKey("workflow_phases.key"), nullable=True)
    condition_type = db.Column(db.String(50), nullable=False,
                               comment="all_actions_complete | payment_received | time_elapsed | manual_only")
    condition_params = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "from_phase_key": self.from_phase_key,
            "to_phase_key": self.to_phase_key,
            "condition_type": self.condition_type,
            "condition_params": dict(self.condition_params or {}),
            "is_active": self.is_active,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<AutomationRule #{self.id} {self.from_phase_key}->{self.to_phase_key or '*'} {self.condition_type}>"


# ═════════════════════════════════════════════════════════════════════════════
#  Per-project state
# ═════════════════════════════════════════════════════════════════════════════


class ProjectPhaseTracking(db.Model):
    """
    Workflow state of one project.

    Business rules:
    - Exactly one row per project (unique project_id).
    - ``phase_keys`` is frozen at creation from the service composition.
    - ``current_phase_index == phase_keys.index(current_phase_key)`` always.
    - ``phase_completions`` maps phase key → ISO timestamp; JSON values are
      replaced wholesale on change (no in-place mutation).
    """

    __tablename__ = "project_phase_tracking"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    services = db.Column(db.JSON, nullable=False, default=list,
                         comment="Service codes as supplied at creation")
    phase_keys = db.Column(db.JSON, nullable=False,
                           comment="Frozen ordered phase composition")
    current_phase_key = db.Column(db.String(20), nullable=False)
    current_phase_index = db.Column(db.Integer, nullable=False, default=0,
                                    comment="Denormalized position of current_phase_key")
    phase_started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    phase_completions = db.Column(db.JSON, nullable=False, default=dict)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    @property
    def is_last_phase(self) -> bool:
        return self.current_phase_index >= len(self.phase_keys or []) - 1

    @property
    def next_phase_key(self) -> str | None:
        keys = self.phase_keys or []
        nxt = self.current_phase_index + 1
        return keys[nxt] if nxt < len(keys) else None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "services": list(self.services or []),
            "phase_keys": list(self.phase_keys or []),
            "current_phase_key": self.current_phase_key,
            "current_phase_index": self.current_phase_index,
            "phase_started_at": isoformat(self.phase_started_at),
            "phase_completions": dict(self.phase_completions or {}),
            "is_completed": self.is_completed,
            "completed_at": isoformat(self.completed_at),
            "created_by": self.created_by,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ProjectPhaseTracking {self.project_id} @{self.current_phase_key}[{self.current_phase_index}]>"


class ProjectRequirementCompletion(db.Model):
    """
    Completion status of one requirement for one project.

    Created lazily on first touch; never deleted. Re-submission overwrites
    completion data but keeps the row.
    """

    __tablename__ = "project_requirement_completions"
    __table_args__ = (
        db.UniqueConstraint("project_id", "requirement_id", name="uq_project_requirement"),
        db.Index("ix_requirement_completions_project_completed", "project_id", "completed"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    requirement_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_requirements.id", ondelete="CASCADE"),
        nullable=False,
    )
    completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative classes
    completion_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict,
                                    comment="Linked form_id / document_id / payment_id / file_id")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    requirement = db.relationship("PhaseRequirement")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "requirement_id": self.requirement_id,
            "phase_key": self.requirement.phase_key if self.requirement else None,
            "requirement_key": self.requirement.requirement_key if self.requirement else None,
            "completed": self.completed,
            "completed_at": isoformat(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
            "metadata": dict(self.completion_metadata or {}),
        }

    def __repr__(self) -> str:
        return f"<ProjectRequirementCompletion {self.project_id}/{self.requirement_id} completed={self.completed}>"


class PaymentSignal(db.Model):
    """Payment confirmation delivered by the billing module."""

    __tablename__ = "project_payment_signals"
    __table_args__ = (
        db.UniqueConstraint("project_id", "payment_id", name="uq_payment_signal_project_payment"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    payment_id = db.Column(db.String(100), nullable=False,
                           comment="Provider payment / invoice reference")
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    recorded_by = db.Column(db.String(64), nullable=False, default=SYSTEM_ACTOR)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "payment_id": self.payment_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "received_at": isoformat(self.received_at),
            "recorded_by": self.recorded_by,
        }


# ═════════════════════════════════════════════════════════════════════════════
#  Append-only audit
# ═════════════════════════════════════════════════════════════════════════════


class PhaseTransitionHistory(db.Model):
    """
    Immutable transition record.

    Records are NEVER updated or deleted. Overrides carry ``is_override``
    so audits can tell them apart from normal progression.
    """

    __tablename__ = "phase_transition_history"
    __table_args__ = (
        db.Index("ix_phase_history_project_created", "project_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    from_phase_key = db.Column(db.String(20), nullable=True,
                               comment="NULL for the initial phase")
    to_phase_key = db.Column(db.String(20), nullable=False)
    transition_type = db.Column(db.String(20), nullable=False, default="advance",
                                comment="initial | advance | override | completion")
    is_override = db.Column(db.Boolean, nullable=False, default=False)
    transitioned_by = db.Column(db.String(64), nullable=False,
                                comment="Actor id, or 'system' for automation")
    reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "from_phase_key": self.from_phase_key,
            "to_phase_key": self.to_phase_key,
            "transition_type": self.transition_type,
            "is_override": self.is_override,
            "transitioned_by": self.transitioned_by,
            "reason": self.reason,
            "notes": self.notes,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self) -> str:
        flag = " OVERRIDE" if self.is_override else ""
        return f"<PhaseTransitionHistory {self.project_id} {self.from_phase_key}->{self.to_phase_key}{flag}>"


class AutomationExecutionLog(db.Model):
    """One row per rule evaluation that attempted (or dry-ran) a transition."""

    __tablename__ = "phase_automation_log"
    __table_args__ = (
        db.Index("ix_automation_log_project_created", "project_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_automation_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    project_id = db.Column(db.String(64), nullable=False)
    from_phase_key = db.Column(db.String(20), nullable=True)
    to_phase_key = db.Column(db.String(20), nullable=True)
    outcome = db.Column(db.String(20), nullable=False, comment="completed | failed | test")
    input_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    error_detail = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=False, default=dict,
                        comment="Warnings, e.g. ambiguous rule configuration")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "project_id": self.project_id,
            "from_phase_key": self.from_phase_key,
            "to_phase_key": self.to_phase_key,
            "outcome": self.outcome,
            "input_snapshot": dict(self.input_snapshot or {}),
            "error_detail": self.error_detail,
            "details": dict(self.details or {}),
            "created_at": isoformat(self.created_at),
        }

