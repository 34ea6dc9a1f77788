"""Milestone lifecycle: creation, progress transitions, and the verify/approve/release gates.

Every successful transition appends one entry to the milestone's update log and
writes one audit record in the same commit. Checks run in a fixed order: role
capability, then ownership, then state. Role and ownership failures raise
AuthorizationError; unmet state preconditions raise ConflictError naming the
precondition and leave the milestone untouched.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app

from extensions import db
from models import (
    MILESTONE_CATEGORIES,
    PRIORITIES,
    UPDATE_TYPES,
    VERIFICATION_METHODS,
    Milestone,
    Project,
)
from utils.audit_logger import actor_from_user, record_event
from utils.blockchain import is_valid_tx_hash
from utils.errors import AuthorizationError, ConflictError, DuplicateKeyError, NotFoundError, ValidationFailed
from utils.permissions import Action, Role, can, require_capability

UPDATABLE_FIELDS = (
    "title",
    "description",
    "planned_start_date",
    "planned_end_date",
    "deliverables",
    "risks",
    "priority",
    "tags",
    "technical_specs",
    "verification_method",
)


def _project_for(milestone: Milestone) -> Project:
    project = milestone.project or db.session.get(Project, milestone.project_id)
    if project is None:
        raise NotFoundError("Project not found for milestone")
    return project


def _require_producer_owner(actor, project: Project, action: Action, verb: str) -> None:
    require_capability(actor, action, f"Only the project producer can {verb} milestones")
    if project.producer_id != actor.id:
        raise AuthorizationError(f"Only the project producer can {verb} milestones")


def _require_participant(actor, project: Project, action: Action, message: str) -> None:
    require_capability(actor, action, message)
    if Role.parse(actor.role) is Role.GOVERNMENT:
        return
    if not project.is_participant(actor):
        raise AuthorizationError(message)


def _swap(milestone: Milestone, criteria: list, values: Dict[str, Any], message: str) -> None:
    """Apply ``values`` only while ``criteria`` still hold in the database."""
    updated = (
        Milestone.query.filter(Milestone.id == milestone.id, *criteria)
        .update(values, synchronize_session="fetch")
    )
    if updated != 1:
        db.session.rollback()
        raise ConflictError(message)


def _audit(milestone: Milestone, actor, event_type: str, action: str, description: str, **kwargs) -> None:
    record_event(
        event_type,
        action=action,
        resource_type="milestone",
        resource_id=milestone.id,
        resource_name=milestone.title,
        description=description,
        category=kwargs.pop("category", "data_modification"),
        severity=kwargs.pop("severity", "medium"),
        actor=actor_from_user(actor),
        commit=False,
        **kwargs,
    )


def _log(message: str, milestone: Milestone, actor) -> None:
    current_app.logger.info(
        message,
        extra={"milestone_id": milestone.id, "user_id": actor.id, "status": milestone.status},
    )


def _normalize_requirements(items) -> list:
    requirements = []
    for item in items or []:
        description = item.get("description") if isinstance(item, dict) else item
        description = (description or "").strip()
        if not description:
            raise ValidationFailed("Requirement description is required")
        requirements.append({"description": description, "isCompleted": False, "completedAt": None, "completedBy": None})
    return requirements


def _validate_choice(value, allowed, label: str) -> None:
    if value is not None and value not in allowed:
        raise ValidationFailed(f"Invalid {label}: {value}")


def create_milestone(project: Project, actor, data: Dict[str, Any]) -> Milestone:
    if not can(actor, Action.MILESTONE_CREATE) or (
        Role.parse(actor.role) is Role.PRODUCER and project.producer_id != actor.id
    ):
        raise AuthorizationError("Not authorized to create milestones for this project")
    if project.status == "cancelled" or not project.is_active:
        raise ConflictError("Milestones cannot be added to a cancelled project")

    _validate_choice(data.get("category"), MILESTONE_CATEGORIES, "category")
    _validate_choice(data.get("priority"), PRIORITIES, "priority")
    _validate_choice(data.get("verification_method"), VERIFICATION_METHODS, "verification method")
    amount = float(data["subsidy_amount"])
    if amount < 0:
        raise ValidationFailed("Subsidy amount cannot be negative")
    if amount > float(project.total_subsidy or 0):
        raise ValidationFailed("Milestone subsidy cannot exceed the project's total subsidy")
    start, end = data.get("planned_start_date"), data["planned_end_date"]
    if start and end and end < start:
        raise ValidationFailed("Planned end date must be after planned start date")

    sequence = int(data["sequence_number"])
    if Milestone.query.filter_by(project_id=project.id, sequence_number=sequence).first():
        raise DuplicateKeyError(f"Milestone sequence number {sequence} already exists for this project")

    milestone = Milestone(
        project_id=project.id,
        chain_project_id=project.project_id,
        title=data["title"].strip(),
        description=data["description"].strip(),
        category=data["category"],
        sequence_number=sequence,
        planned_start_date=start,
        planned_end_date=end,
        subsidy_amount=amount,
        requirements=_normalize_requirements(data.get("requirements")),
        deliverables=list(data.get("deliverables") or []),
        technical_specs=data.get("technical_specs") or {},
        verification_method=data.get("verification_method") or "document_review",
        priority=data.get("priority") or "medium",
        tags=list(data.get("tags") or []),
        risks=list(data.get("risks") or []),
        created_by_id=actor.id,
    )
    if data.get("milestone_id"):
        milestone.milestone_id = data["milestone_id"]
    milestone.append_update(f"Milestone created by {actor.name}", actor.id, "general")
    db.session.add(milestone)
    db.session.flush()
    project.add_milestone()
    _audit(
        milestone,
        actor,
        "milestone_created",
        "create",
        f"Created milestone: {milestone.title} for project: {project.name}",
        context={"projectId": project.id, "sequenceNumber": sequence},
    )
    db.session.commit()
    _log("Milestone created", milestone, actor)
    return milestone


def update_milestone(milestone: Milestone, actor, data: Dict[str, Any]) -> Milestone:
    project = _project_for(milestone)
    _require_participant(actor, project, Action.MILESTONE_UPDATE, "Not authorized to update this milestone")
    if milestone.status in ("completed", "cancelled"):
        raise ConflictError(f"Milestone is {milestone.status} and cannot be edited")
    _validate_choice(data.get("priority"), PRIORITIES, "priority")
    _validate_choice(data.get("verification_method"), VERIFICATION_METHODS, "verification method")

    old_values = {"status": milestone.status, "completionPercentage": milestone.completion_percentage}
    changed = []
    for field in UPDATABLE_FIELDS:
        if field in data and data[field] is not None:
            setattr(milestone, field, data[field])
            changed.append(field)
    if data.get("requirements") is not None:
        if milestone.status != "pending":
            raise ConflictError("Requirements can only be replaced before the milestone starts")
        milestone.requirements = _normalize_requirements(data["requirements"])
        milestone.completion_percentage = 0
        changed.append("requirements")
    if data.get("subsidy_amount") is not None:
        if Role.parse(actor.role) is not Role.GOVERNMENT:
            raise AuthorizationError("Only government entities can change the subsidy amount")
        if milestone.is_approved:
            raise ConflictError("Subsidy amount is fixed once the milestone is approved")
        amount = float(data["subsidy_amount"])
        if amount < 0 or amount > float(project.total_subsidy or 0):
            raise ValidationFailed("Subsidy amount must be between 0 and the project's total subsidy")
        milestone.subsidy_amount = amount
        changed.append("subsidy_amount")
    if milestone.planned_start_date and milestone.planned_end_date and milestone.planned_end_date < milestone.planned_start_date:
        raise ValidationFailed("Planned end date must be after planned start date")
    if not changed:
        raise ValidationFailed("No updatable fields provided")

    milestone.append_update(f"Milestone details updated: {', '.join(changed)}", actor.id, "general")
    _audit(
        milestone,
        actor,
        "milestone_updated",
        "update",
        f"Updated milestone: {milestone.title}",
        context={"oldValues": old_values, "changedFields": changed},
    )
    db.session.commit()
    return milestone


def start_milestone(milestone: Milestone, actor) -> Milestone:
    project = _project_for(milestone)
    _require_producer_owner(actor, project, Action.MILESTONE_START, "start")
    if milestone.status != "pending":
        raise ConflictError(f"Milestone is {milestone.status} and cannot be started")

    now = datetime.utcnow()
    _swap(
        milestone,
        [Milestone.status == "pending"],
        {"status": "in_progress", "actual_start_date": now},
        "Milestone is no longer pending and cannot be started",
    )
    if project.actual_start_date is None:
        project.actual_start_date = now
    milestone.append_update(f"Milestone started by {actor.name}", actor.id, "progress")
    _audit(milestone, actor, "milestone_updated", "update", f"Started milestone: {milestone.title}")
    db.session.commit()
    _log("Milestone started", milestone, actor)
    return milestone


def _complete(milestone: Milestone, project: Project, actor, note: str) -> Milestone:
    now = datetime.utcnow()
    _swap(
        milestone,
        [Milestone.status.notin_(("completed", "cancelled"))],
        {"status": "completed", "completion_percentage": 100, "actual_end_date": now},
        "Milestone is already completed",
    )
    milestone.requirements = [
        {**item, "isCompleted": True, "completedAt": item.get("completedAt") or now.isoformat(), "completedBy": item.get("completedBy") or actor.id}
        for item in (milestone.requirements or [])
    ]
    project.record_milestone_completion()
    milestone.append_update(note, actor.id, "progress")
    _audit(
        milestone,
        actor,
        "milestone_completed",
        "update",
        f"Completed milestone: {milestone.title}",
        context={"projectProgress": project.progress_percentage},
    )
    db.session.commit()
    _log("Milestone completed", milestone, actor)
    return milestone


def complete_milestone(milestone: Milestone, actor) -> Milestone:
    project = _project_for(milestone)
    _require_producer_owner(actor, project, Action.MILESTONE_COMPLETE, "complete")
    if milestone.status == "completed":
        raise ConflictError("Milestone is already completed")
    if milestone.status == "cancelled":
        raise ConflictError("Milestone is cancelled and cannot be completed")
    return _complete(milestone, project, actor, f"Milestone completed by {actor.name}")


def complete_requirement(milestone: Milestone, actor, index: int, evidence: Optional[str] = None) -> Milestone:
    project = _project_for(milestone)
    _require_producer_owner(actor, project, Action.MILESTONE_COMPLETE, "update requirements of")
    if milestone.status not in ("in_progress", "overdue"):
        raise ConflictError("Milestone must be in progress to complete requirements")
    requirements = list(milestone.requirements or [])
    if index < 0 or index >= len(requirements):
        raise NotFoundError("Requirement not found")
    if requirements[index].get("isCompleted"):
        raise ConflictError("Requirement is already completed")

    requirements[index] = {
        **requirements[index],
        "isCompleted": True,
        "completedAt": datetime.utcnow().isoformat(),
        "completedBy": actor.id,
        "evidence": evidence,
    }
    milestone.requirements = requirements
    percentage = milestone.refresh_completion()
    if percentage == 100:
        return _complete(milestone, project, actor, "All requirements met; milestone completed")

    milestone.append_update(
        f"Requirement completed: {requirements[index]['description']} ({percentage}%)",
        actor.id,
        "progress",
    )
    _audit(
        milestone,
        actor,
        "milestone_updated",
        "update",
        f"Completed requirement {index + 1} of milestone: {milestone.title}",
        context={"completionPercentage": percentage},
    )
    db.session.commit()
    return milestone


def verify_milestone(milestone: Milestone, actor, comments: Optional[str] = None) -> Milestone:
    project = _project_for(milestone)
    require_capability(actor, Action.MILESTONE_VERIFY, "Only the assigned auditor can verify milestones")
    if project.auditor_id != actor.id:
        raise AuthorizationError("Only the assigned auditor can verify milestones")
    if milestone.status != "completed":
        raise ConflictError("Only completed milestones can be verified")
    if milestone.is_verified:
        raise ConflictError("Milestone is already verified")

    _swap(
        milestone,
        [Milestone.status == "completed", Milestone.is_verified.is_(False)],
        {
            "is_verified": True,
            "verified_by_id": actor.id,
            "verification_date": datetime.utcnow(),
            "verification_comments": comments,
        },
        "Milestone is already verified",
    )
    milestone.append_update(f"Milestone verified by {actor.name}", actor.id, "progress")
    _audit(
        milestone,
        actor,
        "verification_completed",
        "verify",
        f"Verified milestone: {milestone.title}",
        category="compliance",
        context={"comments": comments},
    )
    db.session.commit()
    _log("Milestone verified", milestone, actor)
    return milestone


def approve_milestone(milestone: Milestone, actor, comments: Optional[str] = None) -> Milestone:
    require_capability(actor, Action.MILESTONE_APPROVE, "Only government entities can approve milestones")
    if not milestone.is_verified:
        raise ConflictError("Milestone must be verified before approval")
    if milestone.is_approved:
        raise ConflictError("Milestone is already approved")

    _swap(
        milestone,
        [Milestone.is_verified.is_(True), Milestone.is_approved.is_(False)],
        {
            "is_approved": True,
            "approved_by_id": actor.id,
            "approval_date": datetime.utcnow(),
            "approval_comments": comments,
        },
        "Milestone is already approved",
    )
    milestone.append_update(f"Milestone approved by {actor.name}", actor.id, "progress")
    _audit(
        milestone,
        actor,
        "approval_granted",
        "approve",
        f"Approved milestone: {milestone.title}",
        category="compliance",
        severity="high",
        context={"comments": comments},
    )
    db.session.commit()
    _log("Milestone approved", milestone, actor)
    return milestone


def release_subsidy(milestone: Milestone, actor, tx_hash: str, chain_result: Optional[Dict[str, Any]] = None) -> Milestone:
    """Record an already-submitted chain transaction and move the amount into the project's released total."""
    project = _project_for(milestone)
    require_capability(actor, Action.MILESTONE_RELEASE, "Only government entities can release subsidies")
    if not milestone.is_approved:
        raise ConflictError("Milestone must be approved before subsidy release")
    if milestone.released:
        raise ConflictError("Subsidy already released for this milestone")
    if not is_valid_tx_hash(tx_hash):
        raise ValidationFailed("A valid transaction hash (0x followed by 64 hex characters) is required")

    amount = float(milestone.subsidy_amount or 0)
    now = datetime.utcnow()
    _swap(
        milestone,
        [Milestone.is_approved.is_(True), Milestone.released.is_(False)],
        {"released": True, "release_date": now, "release_tx_hash": tx_hash},
        "Subsidy already released for this milestone",
    )
    budget = (
        Project.query.filter(
            Project.id == project.id,
            Project.released_amount + amount <= Project.total_subsidy,
        )
        .update({Project.released_amount: Project.released_amount + amount}, synchronize_session="fetch")
    )
    if budget != 1:
        db.session.rollback()
        raise ConflictError("Release would exceed the project's total subsidy")
    project.push_notification("payment_released", f"Subsidy of {amount:,.2f} {project.currency} released for milestone: {milestone.title}")
    milestone.append_update(f"Subsidy released (tx {tx_hash})", actor.id, "progress")
    chain = chain_result or {}
    _audit(
        milestone,
        actor,
        "subsidy_released",
        "release",
        f"Released subsidy for milestone: {milestone.title}",
        category="financial",
        severity="high",
        blockchain={
            "network": current_app.config.get("BLOCKCHAIN_NETWORK", "localhost"),
            "transactionHash": tx_hash,
            "blockNumber": chain.get("blockNumber"),
            "gasUsed": str(chain["gasUsed"]) if chain.get("gasUsed") is not None else None,
            "functionName": "releaseSubsidy",
        },
        financial={
            "amount": amount,
            "currency": project.currency,
            "toAddress": project.producer_wallet_address,
        },
    )
    db.session.commit()
    _log("Subsidy released", milestone, actor)
    return milestone


def add_milestone_update(milestone: Milestone, actor, message: str, kind: str = "general") -> Milestone:
    project = _project_for(milestone)
    _require_participant(actor, project, Action.MILESTONE_COMMENT, "Not authorized to add updates to this milestone")
    if kind not in UPDATE_TYPES:
        raise ValidationFailed(f"Invalid update type: {kind}")
    if not (message or "").strip():
        raise ValidationFailed("Update message is required")
    milestone.append_update(message.strip(), actor.id, kind)
    _audit(milestone, actor, "milestone_updated", "update", f"Added update to milestone: {milestone.title}")
    db.session.commit()
    return milestone
