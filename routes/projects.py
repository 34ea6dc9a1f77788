"""Project registry: creation, approval, auditor assignment, and role-filtered reads."""
from datetime import datetime

from flask import Blueprint, current_app, request
from flask_login import current_user
from wtforms import FloatField, StringField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from extensions import db
from models import (
    CAPACITY_UNITS,
    CURRENCIES,
    PRIORITIES,
    PROJECT_STATUSES,
    TECHNOLOGIES,
    Audit,
    Milestone,
    Project,
    User,
)
from utils.api import JSONForm, json_body, paginate, parse_datetime, service, success
from utils.audit_logger import log_blockchain_transaction, log_user_action
from utils.blockchain import is_valid_address
from utils.errors import AuthorizationError, ConflictError, DuplicateKeyError, NotFoundError, ValidationFailed
from utils.milestone_workflow import create_milestone
from utils.notification_scheduler import notify_project_approval
from utils.permissions import Action, Role, capability_required, require_capability
from .milestones import milestone_data_from_request

projects_bp = Blueprint("projects", __name__)

SORTABLE_FIELDS = ("created_at", "name", "total_subsidy", "progress_percentage", "expected_end_date")

# camelCase body key -> column, by who may change it.
PRODUCER_EDITABLE = {
    "description": "description",
    "location": "location",
    "documents": "documents",
    "environmentalBenefits": "environmental_benefits",
    "tags": "tags",
}
GOVERNMENT_EDITABLE = {
    **PRODUCER_EDITABLE,
    "name": "name",
    "priority": "priority",
    "contractAddress": "contract_address",
    "producerWalletAddress": "producer_wallet_address",
    "capacityValue": "capacity_value",
    "capacityUnit": "capacity_unit",
    "technology": "technology",
}


class ProjectForm(JSONForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=100)])
    description = StringField("Description", validators=[DataRequired(), Length(max=2000)])
    producer = StringField("Producer", validators=[DataRequired(), Length(max=36)])
    capacityValue = FloatField("Capacity", validators=[NumberRange(min=0)])
    capacityUnit = StringField("Capacity Unit", validators=[Optional()])
    technology = StringField("Technology", validators=[Optional()])
    totalSubsidy = FloatField("Total Subsidy", validators=[NumberRange(min=0)])
    currency = StringField("Currency", validators=[Optional()])
    priority = StringField("Priority", validators=[Optional()])
    expectedStartDate = StringField("Expected Start Date", validators=[DataRequired()])
    expectedEndDate = StringField("Expected End Date", validators=[DataRequired()])
    projectId = StringField("Project ID", validators=[Optional(), Length(max=64)])
    contractAddress = StringField("Contract Address", validators=[Optional(), Length(max=42)])


def _choice(value, allowed, label: str, default=None):
    if value in (None, ""):
        return default
    if value not in allowed:
        raise ValidationFailed(f"Invalid {label}: {value}")
    return value


def _location(value) -> dict:
    if not isinstance(value, dict) or not value.get("city") or not value.get("state"):
        raise ValidationFailed("Location with city and state is required")
    return value


def _amount(value, label: str) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"{label} must be a number") from exc
    if amount < 0:
        raise ValidationFailed(f"{label} cannot be negative")
    return amount


def load_project(project_id: str, user) -> Project:
    project = db.session.get(Project, project_id)
    if project is None or not project.is_active:
        raise NotFoundError("Project not found")
    if not project.is_participant(user):
        raise AuthorizationError("Not authorized to view this project")
    return project


def _read_audit(description: str, resource_id=None, resource_name=None) -> None:
    log_user_action(
        current_user,
        "document_accessed",
        "read",
        description,
        category="data_access",
        severity="low",
        resource_type="project",
        resource_id=resource_id,
        resource_name=resource_name,
    )


@projects_bp.route("", methods=["GET"])
@capability_required(Action.PROJECT_READ)
def list_projects():
    query = Project.visible_to(current_user)
    if current_user.role == Role.GOVERNMENT.value and request.args.get("producer"):
        query = query.filter(Project.producer_id == request.args["producer"])
    if request.args.get("status"):
        query = query.filter(Project.status == request.args["status"])
    if request.args.get("approvalStatus"):
        query = query.filter(Project.approval_status == request.args["approvalStatus"])
    search = (request.args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            db.or_(Project.name.ilike(pattern), Project.description.ilike(pattern), Project.project_id.ilike(pattern))
        )
    sort_field = request.args.get("sortBy", "created_at")
    column = getattr(Project, sort_field if sort_field in SORTABLE_FIELDS else "created_at")
    query = query.order_by(column.asc() if request.args.get("sortOrder") == "asc" else column.desc())

    projects, pagination = paginate(query, lambda project: project.to_dict())
    _read_audit(f"Viewed projects list ({len(projects)} projects)", resource_name="Project List")
    return success({"projects": projects}, pagination=pagination)


@projects_bp.route("", methods=["POST"])
@capability_required(Action.PROJECT_CREATE)
def create_project():
    body = json_body()
    form = ProjectForm().validate_or_raise()

    producer = db.session.get(User, form.producer.data)
    if not producer or producer.role != Role.PRODUCER.value or not producer.is_active:
        raise ValidationFailed("Invalid producer ID")
    start = parse_datetime(form.expectedStartDate.data, "expectedStartDate", required=True)
    end = parse_datetime(form.expectedEndDate.data, "expectedEndDate", required=True)
    if end <= start:
        raise ValidationFailed("Expected end date must be after expected start date")
    if form.projectId.data and Project.query.filter_by(project_id=form.projectId.data).first():
        raise DuplicateKeyError("Project ID already exists")
    if form.contractAddress.data and not is_valid_address(form.contractAddress.data):
        raise ValidationFailed("Invalid contract address")

    project = Project(
        name=form.name.data.strip(),
        description=form.description.data.strip(),
        producer_id=producer.id,
        producer_wallet_address=producer.wallet_address,
        government_id=current_user.id,
        location=_location(body.get("location")),
        capacity_value=form.capacityValue.data,
        capacity_unit=_choice(form.capacityUnit.data, CAPACITY_UNITS, "capacity unit", "MW"),
        technology=_choice(form.technology.data, TECHNOLOGIES, "technology", "Electrolysis"),
        total_subsidy=form.totalSubsidy.data,
        currency=_choice(form.currency.data, CURRENCIES, "currency", "INR"),
        priority=_choice(form.priority.data, PRIORITIES, "priority", "medium"),
        expected_start_date=start,
        expected_end_date=end,
        contract_address=form.contractAddress.data or None,
        environmental_benefits=body.get("environmentalBenefits") if isinstance(body.get("environmentalBenefits"), dict) else None,
        tags=[str(tag) for tag in body.get("tags") or []],
    )
    if form.projectId.data:
        project.project_id = form.projectId.data.strip()
    db.session.add(project)
    db.session.flush()

    chain_result = None
    if body.get("registerOnChain"):
        if not producer.wallet_address:
            raise ValidationFailed("Producer has no wallet address for on-chain registration")
        chain_result = service("blockchain_client").create_project(
            project.project_id, producer.wallet_address, project.total_subsidy, project.name
        )
        project.chain_tx_hash = chain_result["transactionHash"]
        log_blockchain_transaction(
            current_user,
            chain_result,
            function_name="createProject",
            description=f"Registered project on chain: {project.name}",
            contract_address=service("blockchain_client").contract_address,
            financial={"amount": project.total_subsidy, "currency": project.currency},
            commit=False,
        )

    log_user_action(
        current_user,
        "project_created",
        "create",
        f"Created new project: {project.name}",
        category="data_modification",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
        financial={"amount": project.total_subsidy, "currency": project.currency},
    )
    current_app.logger.info("Project created", extra={"project_id": project.id, "user_id": current_user.id})
    return success({"project": project.to_dict(), "blockchain": chain_result}, message="Project created successfully", status=201)


@projects_bp.route("/statistics", methods=["GET"])
@capability_required(Action.PROJECT_READ)
def project_statistics():
    base_query = Project.visible_to(current_user)
    stats = Project.statistics(base_query)
    if current_user.role in (Role.PRODUCER.value, Role.AUDITOR.value):
        stats["milestones"] = Milestone.statistics([p.id for p in base_query.with_entities(Project.id)])
    else:
        stats["milestones"] = Milestone.statistics()
    _read_audit("Viewed project statistics", resource_name="Project Statistics")
    return success({"statistics": stats})


@projects_bp.route("/<project_id>", methods=["GET"])
@capability_required(Action.PROJECT_READ)
def get_project(project_id):
    project = load_project(project_id, current_user)
    payload = project.to_dict()
    payload["milestones"] = [m.to_dict() for m in project.milestones.filter(Milestone.is_active.is_(True))]
    _read_audit(f"Viewed project details: {project.name}", resource_id=project.id, resource_name=project.name)
    return success({"project": payload})


@projects_bp.route("/<project_id>", methods=["PUT"])
@capability_required(Action.PROJECT_UPDATE)
def update_project(project_id):
    body = json_body()
    project = load_project(project_id, current_user)
    is_government = current_user.role == Role.GOVERNMENT.value
    if not is_government and project.producer_id != current_user.id:
        raise AuthorizationError("Not authorized to update this project")

    editable = GOVERNMENT_EDITABLE if is_government else PRODUCER_EDITABLE
    old_values = {"status": project.status, "totalSubsidy": project.total_subsidy}
    changed = []
    for key, column in editable.items():
        if key in body and body[key] is not None:
            setattr(project, column, body[key])
            changed.append(key)
    if "location" in changed:
        _location(project.location)
    if "capacityValue" in changed:
        project.capacity_value = _amount(body["capacityValue"], "capacityValue")
    _choice(project.priority, PRIORITIES, "priority")
    _choice(project.capacity_unit, CAPACITY_UNITS, "capacity unit")
    _choice(project.technology, TECHNOLOGIES, "technology")

    if is_government:
        if body.get("totalSubsidy") is not None:
            total = _amount(body["totalSubsidy"], "totalSubsidy")
            if total < float(project.released_amount or 0):
                raise ConflictError("Total subsidy cannot be lower than the amount already released")
            project.total_subsidy = total
            changed.append("totalSubsidy")
        for key, column in (("expectedStartDate", "expected_start_date"), ("expectedEndDate", "expected_end_date")):
            if body.get(key):
                setattr(project, column, parse_datetime(body[key], key))
                changed.append(key)
        if body.get("status"):
            project.status = _choice(body["status"], PROJECT_STATUSES, "status")
            changed.append("status")
    if not changed:
        raise ValidationFailed("No updatable fields provided")

    event_type = "project_status_changed" if "status" in changed and project.status != old_values["status"] else "project_updated"
    log_user_action(
        current_user,
        event_type,
        "update",
        f"Updated project: {project.name}",
        category="data_modification",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
        context={"oldValues": old_values, "changedFields": changed},
    )
    return success({"project": project.to_dict()}, message="Project updated successfully")


@projects_bp.route("/<project_id>", methods=["DELETE"])
@capability_required(Action.PROJECT_DELETE)
def delete_project(project_id):
    project = load_project(project_id, current_user)
    project.is_active = False
    log_user_action(
        current_user,
        "project_updated",
        "delete",
        f"Deleted project: {project.name}",
        category="data_modification",
        severity="high",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
    )
    return success(message="Project deleted successfully")


@projects_bp.route("/<project_id>/approve", methods=["POST"])
@capability_required(Action.PROJECT_APPROVE)
def approve_project(project_id):
    project = load_project(project_id, current_user)
    if project.approval_status == "approved":
        raise ConflictError("Project is already approved")
    if project.status == "cancelled":
        raise ConflictError("Cancelled projects cannot be approved")

    project.approval_status = "approved"
    project.status = "active"
    project.approval_date = datetime.utcnow()
    project.approved_by_id = current_user.id
    project.rejection_reason = None
    project.push_notification("status_change", "Project approved and activated")
    log_user_action(
        current_user,
        "approval_granted",
        "approve",
        f"Approved project: {project.name}",
        category="data_modification",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
    )
    current_app.logger.info("Project approved", extra={"project_id": project.id, "user_id": current_user.id})
    notify_project_approval(project)
    return success({"project": project.to_dict()}, message="Project approved successfully")


@projects_bp.route("/<project_id>/reject", methods=["POST"])
@capability_required(Action.PROJECT_APPROVE)
def reject_project(project_id):
    body = json_body()
    project = load_project(project_id, current_user)
    if project.approval_status == "rejected":
        raise ConflictError("Project is already rejected")
    reason = (body.get("reason") or "").strip() or "No reason provided"

    project.approval_status = "rejected"
    project.status = "cancelled"
    project.approval_date = datetime.utcnow()
    project.approved_by_id = current_user.id
    project.rejection_reason = reason[:500]
    project.push_notification("status_change", f"Project rejected. Reason: {reason}")
    log_user_action(
        current_user,
        "approval_rejected",
        "reject",
        f"Rejected project: {project.name}. Reason: {reason}",
        category="data_modification",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
    )
    return success({"project": project.to_dict()}, message="Project rejected successfully")


@projects_bp.route("/<project_id>/assign-auditor", methods=["POST"])
@capability_required(Action.PROJECT_ASSIGN_AUDITOR)
def assign_auditor(project_id):
    body = json_body()
    project = load_project(project_id, current_user)
    auditor = db.session.get(User, str(body.get("auditorId") or ""))
    if not auditor or auditor.role != Role.AUDITOR.value or not auditor.is_active:
        raise ValidationFailed("Invalid auditor ID")

    project.auditor_id = auditor.id
    log_user_action(
        current_user,
        "project_updated",
        "update",
        f"Assigned auditor {auditor.name} to project: {project.name}",
        category="data_modification",
        resource_type="project",
        resource_id=project.id,
        resource_name=project.name,
        context={"auditorId": auditor.id},
    )
    return success({"project": project.to_dict()}, message="Auditor assigned successfully")


@projects_bp.route("/<project_id>/audit", methods=["GET"])
@capability_required(Action.PROJECT_AUDIT_TRAIL)
def project_audit_trail(project_id):
    project = load_project(project_id, current_user)
    require_capability(current_user, Action.PROJECT_AUDIT_TRAIL, "Not authorized to view audit trail")
    milestone_ids = [row.id for row in project.milestones.with_entities(Milestone.id)]
    trail = (
        Audit.query.filter(
            db.or_(
                db.and_(Audit.resource_type == "project", Audit.resource_id == project.id),
                db.and_(Audit.resource_type == "milestone", Audit.resource_id.in_(milestone_ids)),
            )
        )
        .order_by(Audit.timestamp.desc())
        .limit(100)
        .all()
    )
    return success({"auditTrail": [entry.to_dict() for entry in trail]})


@projects_bp.route("/<project_id>/milestones", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def project_milestones(project_id):
    project = load_project(project_id, current_user)
    query = project.milestones.filter(Milestone.is_active.is_(True))
    if request.args.get("status"):
        query = query.filter(Milestone.status == request.args["status"])
    milestones, pagination = paginate(query, lambda milestone: milestone.to_dict(), default_limit=50)
    return success({"milestones": milestones}, pagination=pagination)


@projects_bp.route("/<project_id>/milestones", methods=["POST"])
@capability_required(Action.MILESTONE_CREATE)
def add_project_milestone(project_id):
    project = load_project(project_id, current_user)
    milestone = create_milestone(project, current_user, milestone_data_from_request())
    return success({"milestone": milestone.to_dict()}, message="Milestone created successfully", status=201)
