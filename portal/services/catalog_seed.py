"""
Default workflow reference data.

Phase library, service types, phase requirements and automation rules as
shipped with the portal. ``seed_default_catalog`` is idempotent: it only
inserts rows whose natural key is missing, so admin edits survive re-runs.

Usage:
    from portal.services.catalog_seed import seed_default_catalog
    counts = seed_default_catalog()
"""

from __future__ import annotations

import logging

from portal.models import db
from portal.models.workflow import AutomationRule, Phase, PhaseRequirement, ServiceType

logger = logging.getLogger(__name__)


# (key, name, description, icon, category, requires_client_action)
DEFAULT_PHASES: list[tuple[str, str, str, str, str, bool]] = [
    ("ONB", "Onboarding", "Kick-off and intake forms", "user-plus", "onboarding", True),
    ("COLLAB", "Collaboration", "Light collaboration and brainstorming", "users", "standard", False),
    ("IDEA", "Ideation", "Ideation and mood board creation", "lightbulb", "standard", True),
    ("RESEARCH", "Research", "Brand and market research", "search", "standard", False),
    ("DISC", "Discovery", "Discovery workshop and requirements", "compass", "standard", False),
    ("DSGN", "Design", "Design production phase", "palette", "standard", True),
    ("CAD", "3D/CAD", "3D modeling and CAD work", "box", "standard", False),
    ("PREP", "Pre-Press", "Pre-press preparation and proofing", "file-check", "standard", False),
    ("PRINT", "Production", "Production and printing", "printer", "standard", False),
    ("MVP", "MVP", "Minimum viable product development", "package", "standard", False),
    ("DEV", "Development", "Development and coding", "code", "standard", False),
    ("QA", "QA Testing", "Quality assurance and testing", "bug", "standard", False),
    ("FAB", "Fabrication", "Physical fabrication and building", "hammer", "standard", False),
    ("FINISH", "Finishing", "Finishing and final touches", "sparkles", "standard", False),
    ("DEPLOY", "Deployment", "Production deployment", "rocket", "standard", False),
    ("REV", "Review & Feedback", "Client review and feedback collection", "message-circle", "standard", True),
    ("PROD", "Production/Build", "Final production and build", "factory", "standard", False),
    ("PAY", "Payment", "Final payment collection", "credit-card", "standard", True),
    ("SIGN", "Sign-off & Docs", "Final approvals and documentation", "pen-tool", "standard", True),
    ("LAUNCH", "Launch", "Project launch and asset delivery", "party-popper", "delivery", False),
    ("WRAP", "Wrap-up", "Post-mortem and final payment", "check-circle", "delivery", False),
]

# (code, display_name, description, default_phase_keys)
DEFAULT_SERVICE_TYPES: list[tuple[str, str, str, list[str]]] = [
    ("COL", "Collaboration Only", "Light collaboration and brainstorming", ["ONB", "COLLAB", "WRAP"]),
    ("IDE", "Ideation Workshop", "Creative ideation and concept development", ["ONB", "IDEA", "WRAP"]),
    ("SP", "Screen Printing", "Custom screen printing services", ["ONB", "IDEA", "PREP", "PRINT", "LAUNCH"]),
    ("LFP", "Large-Format Print", "Large format printing and signage", ["ONB", "PREP", "PRINT", "LAUNCH"]),
    ("GD", "Graphic Design", "Professional graphic design services", ["ONB", "IDEA", "DSGN", "REV", "LAUNCH"]),
    ("WW", "Woodworking", "Custom woodworking and fabrication", ["ONB", "IDEA", "CAD", "FAB", "FINISH", "LAUNCH"]),
    ("SAAS", "SaaS Development", "Software as a Service development", ["ONB", "DISC", "MVP", "QA", "DEPLOY", "LAUNCH"]),
    ("WEB", "Website Design", "Website design and development",
     ["ONB", "DISC", "DSGN", "DEV", "REV", "DEPLOY", "LAUNCH"]),
    ("BOOK", "Book Cover Design", "Book cover and layout design", ["ONB", "IDEA", "DSGN", "REV", "LAUNCH"]),
    ("LOGO", "Logo & Brand System", "Logo design and brand identity", ["ONB", "RESEARCH", "DSGN", "REV", "LAUNCH"]),
    ("PY", "Python Automation", "Python automation and scripting", ["ONB", "DISC", "DEV", "QA", "LAUNCH"]),
    ("STD", "Standard Project", "Eight-phase studio workflow",
     ["ONB", "IDEA", "DSGN", "REV", "PROD", "PAY", "SIGN", "LAUNCH"]),
]

# (phase_key, requirement_type, requirement_text, requirement_key, is_mandatory, sort_order)
DEFAULT_REQUIREMENTS: list[tuple[str, str, str, str, bool, int]] = [
    ("ONB", "form", "Complete intake form", "intake_form", True, 1),
    ("ONB", "agreement", "Sign service agreement", "service_agreement", True, 2),
    ("ONB", "payment", "Pay deposit invoice", "deposit_payment", True, 3),
    ("IDEA", "review", "Review creative brief", "review_brief", True, 1),
    ("IDEA", "approval", "Approve project direction", "approve_direction", True, 2),
    ("IDEA", "feedback", "Provide initial feedback", "initial_feedback", False, 3),
    ("DSGN", "review", "Review initial designs", "review_designs", False, 1),
    ("DSGN", "feedback", "Provide design feedback", "design_feedback", False, 2),
    ("DSGN", "approval", "Approve final designs", "approve_designs", True, 3),
    ("REV", "approval", "Approve all deliverables", "approve_deliverables", True, 1),
    ("REV", "proof", "Complete proof approval (if print)", "proof_approval", False, 2),
    ("REV", "feedback", "Request changes (if needed)", "request_changes", False, 3),
    ("PROD", "monitor", "Monitor production progress", "monitor_production", False, 1),
    ("PROD", "check", "Approve press check (if applicable)", "press_check", False, 2),
    ("PAY", "payment", "Pay final invoice", "final_payment", True, 1),
    ("PAY", "review", "Review final costs", "review_costs", False, 2),
    ("SIGN", "agreement", "Sign completion agreement", "completion_agreement", True, 1),
    ("SIGN", "download", "Download final assets", "download_assets", False, 2),
    ("SIGN", "review", "Review documentation", "review_docs", False, 3),
    ("LAUNCH", "confirm", "Confirm receipt of deliverables", "confirm_receipt", False, 1),
    ("LAUNCH", "feedback", "Provide testimonial", "provide_testimonial", False, 2),
    ("LAUNCH", "launch", "Launch/deploy project", "launch_project", False, 3),
]

# (name, from_phase_key, to_phase_key, condition_type, condition_params)
DEFAULT_RULES: list[tuple[str, str, str | None, str, dict]] = [
    ("Onboarding complete", "ONB", None, "all_actions_complete", {}),
    ("Direction approved", "IDEA", None, "all_actions_complete", {}),
    ("Designs need designer sign-off", "DSGN", None, "manual_only", {}),
    ("Deliverables approved", "REV", None, "all_actions_complete", {}),
    ("Final payment received", "PAY", None, "payment_received", {}),
    ("Completion agreement signed", "SIGN", None, "all_actions_complete", {}),
]


def _rule_description(condition_type: str) -> str:
    return {
        "all_actions_complete": "Automatically advance when all required client actions are completed",
        "payment_received": "Automatically advance when payment is received",
        "time_elapsed": "Automatically advance after the configured number of days",
        "manual_only": "Requires an explicit admin advance",
    }[condition_type]


def seed_default_catalog() -> dict[str, int]:
    """Insert missing default phases, service types, requirements and rules.

    Commits once at the end. Returns per-table insert counts.
    """
    counts = {"phases": 0, "service_types": 0, "requirements": 0, "rules": 0}

    existing_phases = {p.key for p in Phase.query.all()}
    for order, (key, name, desc, icon, category, client_action) in enumerate(DEFAULT_PHASES, start=1):
        if key in existing_phases:
            continue
        db.session.add(Phase(
            key=key,
            name=name,
            description=desc,
            icon=icon,
            category=category,
            requires_client_action=client_action,
            sort_order=order,
        ))
        counts["phases"] += 1
    db.session.flush()

    existing_services = {s.code for s in ServiceType.query.all()}
    for order, (code, display, desc, keys) in enumerate(DEFAULT_SERVICE_TYPES, start=1):
        if code in existing_services:
            continue
        db.session.add(ServiceType(
            code=code,
            display_name=display,
            description=desc,
            default_phase_keys=list(keys),
            sort_order=order,
        ))
        counts["service_types"] += 1

    existing_reqs = {(r.phase_key, r.requirement_key) for r in PhaseRequirement.query.all()}
    for phase_key, req_type, text, req_key, mandatory, order in DEFAULT_REQUIREMENTS:
        if (phase_key, req_key) in existing_reqs:
            continue
        db.session.add(PhaseRequirement(
            phase_key=phase_key,
            requirement_type=req_type,
            requirement_text=text,
            requirement_key=req_key,
            is_mandatory=mandatory,
            sort_order=order,
        ))
        counts["requirements"] += 1

    existing_rules = {
        (r.from_phase_key, r.to_phase_key, r.condition_type) for r in AutomationRule.query.all()
    }
    for name, from_key, to_key, condition_type, params in DEFAULT_RULES:
        if (from_key, to_key, condition_type) in existing_rules:
            continue
        db.session.add(AutomationRule(
            name=name,
            description=_rule_description(condition_type),
            from_phase_key=from_key,
            to_phase_key=to_key,
            condition_type=condition_type,
            condition_params=dict(params),
        ))
        # Flush per rule so created_at/id order follows declaration order
        db.session.flush()
        counts["rules"] += 1

    db.session.commit()
    if any(counts.values()):
        logger.info("Seeded workflow catalog: %s", counts)
    return counts
