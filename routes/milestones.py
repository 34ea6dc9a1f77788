"""Milestone endpoints: lifecycle transitions, subsidy release, and oracle data."""
from flask import Blueprint, current_app, request
from flask_login import current_user
from wtforms import FloatField, IntegerField, StringField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from extensions import db
from models import Milestone, Project
from utils.api import JSONForm, json_body, paginate, parse_datetime, service, success
from utils.audit_logger import log_blockchain_transaction
from utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationFailed
from utils.milestone_workflow import (
    add_milestone_update,
    approve_milestone,
    complete_milestone,
    complete_requirement,
    release_subsidy,
    start_milestone,
    update_milestone,
    verify_milestone,
)
from utils.notification_scheduler import notify_subsidy_release
from utils.permissions import Action, capability_required, require_capability

milestones_bp = Blueprint("milestones", __name__)

# camelCase body key -> workflow field for partial updates.
UPDATE_KEYS = {
    "title": "title",
    "description": "description",
    "deliverables": "deliverables",
    "risks": "risks",
    "priority": "priority",
    "tags": "tags",
    "technicalSpecs": "technical_specs",
    "verificationMethod": "verification_method",
    "requirements": "requirements",
}


class MilestoneForm(JSONForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=200)])
    description = StringField("Description", validators=[DataRequired(), Length(max=1000)])
    category = StringField("Category", validators=[DataRequired()])
    sequenceNumber = IntegerField("Sequence Number", validators=[NumberRange(min=1)])
    plannedStartDate = StringField("Planned Start Date", validators=[Optional()])
    plannedEndDate = StringField("Planned End Date", validators=[DataRequired()])
    subsidyAmount = FloatField("Subsidy Amount", validators=[NumberRange(min=0)])
    verificationMethod = StringField("Verification Method", validators=[Optional()])
    priority = StringField("Priority", validators=[Optional()])
    milestoneId = StringField("Milestone ID", validators=[Optional(), Length(max=80)])


def milestone_data_from_request() -> dict:
    """Validate a milestone creation body into the workflow's field names."""
    body = json_body()
    form = MilestoneForm().validate_or_raise()
    return {
        "title": form.title.data,
        "description": form.description.data,
        "category": form.category.data,
        "sequence_number": form.sequenceNumber.data,
        "planned_start_date": parse_datetime(form.plannedStartDate.data, "plannedStartDate"),
        "planned_end_date": parse_datetime(form.plannedEndDate.data, "plannedEndDate", required=True),
        "subsidy_amount": form.subsidyAmount.data,
        "verification_method": form.verificationMethod.data or None,
        "priority": form.priority.data or None,
        "milestone_id": form.milestoneId.data or None,
        "requirements": body.get("requirements") or [],
        "deliverables": body.get("deliverables") or [],
        "technical_specs": body.get("technicalSpecs") or {},
        "tags": body.get("tags") or [],
        "risks": body.get("risks") or [],
    }


def _update_data(body: dict) -> dict:
    data = {field: body[key] for key, field in UPDATE_KEYS.items() if body.get(key) is not None}
    for key, field in (("plannedStartDate", "planned_start_date"), ("plannedEndDate", "planned_end_date")):
        if body.get(key):
            data[field] = parse_datetime(body[key], key)
    if body.get("subsidyAmount") is not None:
        try:
            data["subsidy_amount"] = float(body["subsidyAmount"])
        except (TypeError, ValueError) as exc:
            raise ValidationFailed("subsidyAmount must be a number") from exc
    return data


def _visible_project_ids():
    return Project.visible_to(current_user).with_entities(Project.id)


def load_milestone(milestone_id: str) -> Milestone:
    milestone = db.session.get(Milestone, milestone_id)
    if milestone is None or not milestone.is_active:
        raise NotFoundError("Milestone not found")
    if not milestone.project.is_participant(current_user):
        raise AuthorizationError("Not authorized to view this milestone")
    return milestone


def _milestone_response(milestone: Milestone, message: str = None, **extra):
    return success({"milestone": milestone.to_dict(include_project=True), **extra}, message=message)


@milestones_bp.route("/overdue", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def overdue_milestones():
    query = (
        Milestone.query.filter(
            Milestone.is_active.is_(True),
            Milestone.project_id.in_(_visible_project_ids()),
            db.or_(
                Milestone.status == "overdue",
                Milestone.id.in_(Milestone.overdue_query().with_entities(Milestone.id)),
            ),
        )
        .order_by(Milestone.planned_end_date.asc())
    )
    milestones, pagination = paginate(query, lambda m: m.to_dict(include_project=True), default_limit=50)
    return success({"milestones": milestones}, pagination=pagination)


@milestones_bp.route("/upcoming", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def upcoming_milestones():
    try:
        days = min(max(int(request.args.get("days", 7)), 1), 365)
    except ValueError as exc:
        raise ValidationFailed("days must be an integer") from exc
    query = (
        Milestone.upcoming_query(days)
        .filter(Milestone.project_id.in_(_visible_project_ids()))
        .order_by(Milestone.planned_end_date.asc())
    )
    milestones, pagination = paginate(query, lambda m: m.to_dict(include_project=True), default_limit=50)
    return success({"milestones": milestones, "days": days}, pagination=pagination)


@milestones_bp.route("/statistics", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def milestone_statistics():
    project_ids = None
    if current_user.role in ("producer", "auditor"):
        project_ids = [row.id for row in _visible_project_ids()]
    return success({"statistics": Milestone.statistics(project_ids)})


@milestones_bp.route("/<milestone_id>", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def get_milestone(milestone_id):
    return _milestone_response(load_milestone(milestone_id))


@milestones_bp.route("/<milestone_id>", methods=["PUT"])
@capability_required(Action.MILESTONE_UPDATE)
def edit_milestone(milestone_id):
    milestone = update_milestone(load_milestone(milestone_id), current_user, _update_data(json_body()))
    return _milestone_response(milestone, "Milestone updated successfully")


@milestones_bp.route("/<milestone_id>/start", methods=["POST"])
@capability_required(Action.MILESTONE_START)
def start(milestone_id):
    milestone = start_milestone(load_milestone(milestone_id), current_user)
    return _milestone_response(milestone, "Milestone started successfully")


@milestones_bp.route("/<milestone_id>/complete", methods=["POST"])
@capability_required(Action.MILESTONE_COMPLETE)
def complete(milestone_id):
    milestone = complete_milestone(load_milestone(milestone_id), current_user)
    return _milestone_response(milestone, "Milestone completed successfully")


@milestones_bp.route("/<milestone_id>/requirements/<int:index>/complete", methods=["POST"])
@capability_required(Action.MILESTONE_COMPLETE)
def complete_requirement_item(milestone_id, index):
    evidence = json_body().get("evidence")
    milestone = complete_requirement(load_milestone(milestone_id), current_user, index, evidence)
    return _milestone_response(milestone, "Requirement marked as completed")


@milestones_bp.route("/<milestone_id>/verify", methods=["POST"])
@capability_required(Action.MILESTONE_VERIFY)
def verify(milestone_id):
    comments = json_body().get("comments")
    milestone = verify_milestone(load_milestone(milestone_id), current_user, comments)
    return _milestone_response(milestone, "Milestone verified successfully")


@milestones_bp.route("/<milestone_id>/approve", methods=["POST"])
@capability_required(Action.MILESTONE_APPROVE)
def approve(milestone_id):
    comments = json_body().get("comments")
    milestone = approve_milestone(load_milestone(milestone_id), current_user, comments)
    return _milestone_response(milestone, "Milestone approved successfully")


@milestones_bp.route("/<milestone_id>/release-subsidy", methods=["POST"])
@capability_required(Action.MILESTONE_RELEASE)
def release(milestone_id):
    body = json_body()
    milestone = load_milestone(milestone_id)
    project = milestone.project
    chain_result = None
    tx_hash = body.get("txHash")

    def log_chain_release(description):
        log_blockchain_transaction(
            current_user,
            chain_result,
            function_name="releaseSubsidy",
            description=description,
            contract_address=service("blockchain_client").contract_address,
            financial={
                "amount": float(milestone.subsidy_amount or 0),
                "currency": project.currency,
                "toAddress": project.producer_wallet_address,
            },
        )

    if body.get("submitOnChain"):
        # Gate before touching the chain; the workflow re-checks under compare-and-swap.
        require_capability(current_user, Action.MILESTONE_RELEASE, "Only government entities can release subsidies")
        if not milestone.is_approved:
            raise ConflictError("Milestone must be approved before subsidy release")
        if milestone.released:
            raise ConflictError("Subsidy already released for this milestone")
        if float(milestone.subsidy_amount or 0) > project.remaining_subsidy:
            raise ConflictError("Release would exceed the project's total subsidy")
        if not project.producer_wallet_address:
            raise ValidationFailed("Producer wallet address is required for on-chain release")
        client = service("blockchain_client")
        chain_result = client.release_subsidy(milestone.milestone_id, project.producer_wallet_address)
        tx_hash = chain_result["transactionHash"]
    elif not tx_hash:
        raise ValidationFailed("txHash is required unless submitOnChain is set")

    try:
        milestone = release_subsidy(milestone, current_user, tx_hash, chain_result)
    except Exception:
        if chain_result is None:
            raise
        # Already confirmed on chain: record the transaction before surfacing the failure.
        db.session.rollback()
        log_chain_release(f"On-chain subsidy release not recorded for milestone: {milestone.title}")
        current_app.logger.error(
            "Confirmed on-chain release could not be recorded",
            extra={"milestone_id": milestone.id, "tx_hash": tx_hash},
        )
        raise
    if chain_result is not None:
        log_chain_release(f"Released subsidy on chain for milestone: {milestone.title}")
    notify_subsidy_release(milestone, project, tx_hash)
    return _milestone_response(
        milestone,
        "Subsidy released successfully",
        transactionHash=tx_hash,
        blockchain=chain_result,
    )


@milestones_bp.route("/<milestone_id>/updates", methods=["POST"])
@capability_required(Action.MILESTONE_COMMENT)
def add_update(milestone_id):
    body = json_body()
    milestone = add_milestone_update(
        load_milestone(milestone_id),
        current_user,
        body.get("message") or "",
        body.get("type") or "general",
    )
    return _milestone_response(milestone, "Update added successfully")


@milestones_bp.route("/<milestone_id>/oracle-data", methods=["GET"])
@capability_required(Action.MILESTONE_READ)
def get_oracle_data(milestone_id):
    milestone = load_milestone(milestone_id)
    return success({"milestoneId": milestone.id, "oracleData": milestone.oracle_data})


@milestones_bp.route("/<milestone_id>/oracle-data", methods=["POST"])
@capability_required(Action.ORACLE_SUBMIT)
def refresh_oracle_data(milestone_id):
    milestone = load_milestone(milestone_id)
    verdict = service("oracle_service").verify_milestone_completion(milestone, milestone.project, actor=current_user)
    current_app.logger.info(
        "Oracle verification run",
        extra={"milestone_id": milestone.id, "verified": verdict["verified"]},
    )
    return success({"verification": verdict, "oracleData": milestone.oracle_data}, message="Oracle data updated")
