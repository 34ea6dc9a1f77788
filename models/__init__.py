"""Core data models for identities, subsidy projects, milestones, and the audit trail."""
import uuid
from datetime import datetime, timedelta

from flask_login import UserMixin
from sqlalchemy import event, func, inspect
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from utils.permissions import ROLE_VALUES
from utils.security import generate_token, hash_value


def generate_uuid() -> str:
	return str(uuid.uuid4())


def generate_chain_id(prefix: str) -> str:
	return f"{prefix}-{datetime.utcnow():%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


def _iso(value):
	return value.isoformat() if value else None


def _in_clause(column: str, values) -> str:
	quoted = ",".join(f"'{value}'" for value in values)
	return f"{column} IN ({quoted})"


USER_ROLES: tuple[str, ...] = ROLE_VALUES

TOKEN_KINDS: tuple[str, ...] = (
	"email_verification",
	"password_reset",
)

KYC_STATUSES: tuple[str, ...] = (
	"pending",
	"verified",
	"rejected",
)

PROJECT_STATUSES: tuple[str, ...] = (
	"draft",
	"pending",
	"active",
	"completed",
	"suspended",
	"cancelled",
)

APPROVAL_STATUSES: tuple[str, ...] = (
	"pending",
	"approved",
	"rejected",
)

TECHNOLOGIES: tuple[str, ...] = (
	"Electrolysis",
	"Steam Methane Reforming",
	"Biomass Gasification",
	"Solar Thermochemical",
	"Other",
)

CAPACITY_UNITS: tuple[str, ...] = (
	"MW",
	"GW",
	"kW",
	"tons/day",
	"kg/day",
)

CURRENCIES: tuple[str, ...] = (
	"INR",
	"USD",
	"EUR",
)

PRIORITIES: tuple[str, ...] = (
	"low",
	"medium",
	"high",
	"critical",
)

PROJECT_NOTIFICATION_TYPES: tuple[str, ...] = (
	"milestone_due",
	"payment_released",
	"status_change",
	"document_required",
)

MILESTONE_CATEGORIES: tuple[str, ...] = (
	"Planning & Design",
	"Permits & Approvals",
	"Construction",
	"Equipment Installation",
	"Testing & Commissioning",
	"Production Start",
	"Performance Milestone",
	"Final Completion",
)

MILESTONE_STATUSES: tuple[str, ...] = (
	"pending",
	"in_progress",
	"completed",
	"overdue",
	"cancelled",
)

VERIFICATION_METHODS: tuple[str, ...] = (
	"document_review",
	"site_visit",
	"remote_monitoring",
	"third_party_audit",
)

UPDATE_TYPES: tuple[str, ...] = (
	"progress",
	"issue",
	"resolution",
	"general",
)

AUDIT_EVENT_TYPES: tuple[str, ...] = (
	"user_login",
	"user_logout",
	"user_registration",
	"user_profile_update",
	"project_created",
	"project_updated",
	"project_status_changed",
	"milestone_created",
	"milestone_updated",
	"milestone_completed",
	"subsidy_released",
	"payment_processed",
	"document_uploaded",
	"document_accessed",
	"verification_completed",
	"approval_granted",
	"approval_rejected",
	"blockchain_transaction",
	"oracle_data_update",
	"system_error",
	"security_alert",
	"access_denied",
	"authentication_failed",
	"authorization_failed",
	"data_export",
	"admin_action",
)

AUDIT_ACTOR_ROLES: tuple[str, ...] = ROLE_VALUES + ("admin", "system")

AUDIT_RESOURCE_TYPES: tuple[str, ...] = (
	"user",
	"project",
	"milestone",
	"payment",
	"document",
	"system",
	"blockchain",
)

AUDIT_ACTIONS: tuple[str, ...] = (
	"create",
	"read",
	"update",
	"delete",
	"approve",
	"reject",
	"release",
	"verify",
	"upload",
	"download",
	"login",
	"logout",
	"register",
	"transfer",
	"mint",
	"burn",
	"lock",
	"unlock",
)

AUDIT_SEVERITIES: tuple[str, ...] = (
	"low",
	"medium",
	"high",
	"critical",
)

AUDIT_CATEGORIES: tuple[str, ...] = (
	"authentication",
	"authorization",
	"data_access",
	"data_modification",
	"financial",
	"system",
	"security",
	"compliance",
	"performance",
	"error",
)

AUDIT_NETWORKS: tuple[str, ...] = (
	"ethereum",
	"polygon",
	"bsc",
	"localhost",
)

AUDIT_CURRENCIES: tuple[str, ...] = CURRENCIES + ("ETH", "MATIC")

DATA_CLASSIFICATIONS: tuple[str, ...] = (
	"public",
	"internal",
	"confidential",
	"restricted",
)

# Columns an Audit row may still change after insert.
AUDIT_MUTABLE_FIELDS: frozenset = frozenset(
	{
		"reviewed",
		"reviewed_by",
		"reviewed_at",
		"review_notes",
		"flagged",
		"flag_reason",
		"flagged_by",
		"flagged_at",
		"archived",
		"archived_at",
	}
)


def compute_progress_percentage(completed: int, count: int):
	"""Project progress, or None when there are no milestones to measure against."""
	if not count or count <= 0:
		return None
	return round((completed or 0) / count * 100)


def compute_completion_percentage(requirements):
	if not requirements:
		return None
	done = sum(1 for item in requirements if item.get("isCompleted"))
	return round(done / len(requirements) * 100)


def is_past_due(status: str, planned_end, now=None) -> bool:
	if planned_end is None or status in ("completed", "cancelled"):
		return False
	return (now or datetime.utcnow()) > planned_end


def compute_expiry(timestamp, retention_days: int):
	return (timestamp or datetime.utcnow()) + timedelta(days=int(retention_days))


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(100), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role = db.Column(db.String(20), nullable=False, index=True)
	wallet_address = db.Column(db.String(42), unique=True, nullable=True, index=True)
	permissions = db.Column(db.JSON, nullable=False, default=list)
	phone = db.Column(db.String(32), nullable=True)
	organization = db.Column(db.JSON, nullable=True)
	bio = db.Column(db.String(500), nullable=True)
	kyc_status = db.Column(db.String(20), nullable=False, default="pending")
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	is_verified = db.Column(db.Boolean, default=False, nullable=False)
	email_verified = db.Column(db.Boolean, default=False, nullable=False)
	email_verification_token_hash = db.Column(db.String(64), nullable=True, index=True)
	email_verification_expires = db.Column(db.DateTime, nullable=True)
	password_reset_token_hash = db.Column(db.String(64), nullable=True, index=True)
	password_reset_expires = db.Column(db.DateTime, nullable=True)
	password_changed_at = db.Column(db.DateTime, nullable=True)
	last_login_at = db.Column(db.DateTime, nullable=True)
	login_count = db.Column(db.Integer, nullable=False, default=0)
	login_attempts = db.Column(db.Integer, nullable=False, default=0)
	lock_until = db.Column(db.DateTime, nullable=True)
	preferences = db.Column(db.JSON, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(_in_clause("role", USER_ROLES), name="ck_user_role"),
		db.CheckConstraint(_in_clause("kyc_status", KYC_STATUSES), name="ck_user_kyc_status"),
	)

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)
		self.password_changed_at = datetime.utcnow()

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	@property
	def is_locked(self) -> bool:
		return bool(self.lock_until and self.lock_until > datetime.utcnow())

	def register_failed_login(self, max_attempts: int, lock_minutes: int) -> None:
		now = datetime.utcnow()
		if self.lock_until and self.lock_until <= now:
			# Previous lock expired; start counting again.
			self.login_attempts = 1
			self.lock_until = None
			return
		self.login_attempts = (self.login_attempts or 0) + 1
		if self.login_attempts >= max_attempts and not self.is_locked:
			self.lock_until = now + timedelta(minutes=lock_minutes)

	def reset_login_attempts(self) -> None:
		self.login_attempts = 0
		self.lock_until = None

	def record_login(self) -> None:
		self.reset_login_attempts()
		self.last_login_at = datetime.utcnow()
		self.login_count = (self.login_count or 0) + 1

	def issue_token(self, kind: str, lifetime: timedelta) -> str:
		"""Store the hash of a fresh single-use token and return the raw value for delivery."""
		if kind not in TOKEN_KINDS:
			raise ValueError(f"Unknown token kind: {kind}")
		raw = generate_token(32)
		setattr(self, f"{kind}_token_hash", hash_value(raw))
		setattr(self, f"{kind}_expires", datetime.utcnow() + lifetime)
		return raw

	def consume_token(self, kind: str) -> None:
		setattr(self, f"{kind}_token_hash", None)
		setattr(self, f"{kind}_expires", None)

	@staticmethod
	def find_by_token(kind: str, raw: str):
		if kind not in TOKEN_KINDS or not raw:
			return None
		return User.query.filter(
			getattr(User, f"{kind}_token_hash") == hash_value(raw),
			getattr(User, f"{kind}_expires") > datetime.utcnow(),
		).first()

	def wants_email(self, key: str = "email") -> bool:
		notifications = (self.preferences or {}).get("notifications") or {}
		return notifications.get(key, True) is not False

	def jwt_claims(self) -> dict:
		return {
			"id": self.id,
			"email": self.email,
			"role": self.role,
			"walletAddress": self.wallet_address,
			"permissions": list(self.permissions or []),
			"isVerified": self.is_verified,
		}

	def public_profile(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"email": self.email,
			"role": self.role,
			"walletAddress": self.wallet_address,
			"permissions": list(self.permissions or []),
			"phone": self.phone,
			"organization": self.organization or {},
			"bio": self.bio,
			"kycStatus": self.kyc_status,
			"isActive": self.is_active,
			"isVerified": self.is_verified,
			"emailVerified": self.email_verified,
			"lastLogin": _iso(self.last_login_at),
			"loginCount": self.login_count,
			"preferences": self.preferences or {},
			"createdAt": _iso(self.created_at),
		}

	def reference(self) -> dict:
		return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}


class Project(db.Model):
	__tablename__ = "projects"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	project_id = db.Column(db.String(64), unique=True, nullable=False, index=True, default=lambda: generate_chain_id("GHP"))
	name = db.Column(db.String(100), nullable=False)
	description = db.Column(db.Text, nullable=False)
	contract_address = db.Column(db.String(42), nullable=True)
	producer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	producer_wallet_address = db.Column(db.String(42), nullable=True)
	government_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	auditor_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	location = db.Column(db.JSON, nullable=False, default=dict)
	capacity_value = db.Column(db.Float, nullable=False)
	capacity_unit = db.Column(db.String(20), nullable=False, default="MW")
	technology = db.Column(db.String(50), nullable=False, default="Electrolysis")
	total_subsidy = db.Column(db.Numeric(18, 2, asdecimal=False), nullable=False)
	released_amount = db.Column(db.Numeric(18, 2, asdecimal=False), nullable=False, default=0)
	currency = db.Column(db.String(3), nullable=False, default="INR")
	expected_start_date = db.Column(db.DateTime, nullable=False)
	expected_end_date = db.Column(db.DateTime, nullable=False)
	actual_start_date = db.Column(db.DateTime, nullable=True)
	actual_end_date = db.Column(db.DateTime, nullable=True)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	approval_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	approval_date = db.Column(db.DateTime, nullable=True)
	approved_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	rejection_reason = db.Column(db.String(500), nullable=True)
	milestone_count = db.Column(db.Integer, nullable=False, default=0)
	completed_milestones = db.Column(db.Integer, nullable=False, default=0)
	progress_percentage = db.Column(db.Integer, nullable=False, default=0)
	environmental_benefits = db.Column(db.JSON, nullable=True)
	documents = db.Column(db.JSON, nullable=False, default=list)
	notifications = db.Column(db.JSON, nullable=False, default=list)
	tags = db.Column(db.JSON, nullable=False, default=list)
	priority = db.Column(db.String(20), nullable=False, default="medium")
	chain_tx_hash = db.Column(db.String(66), nullable=True)
	is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(_in_clause("status", PROJECT_STATUSES), name="ck_project_status"),
		db.CheckConstraint(_in_clause("approval_status", APPROVAL_STATUSES), name="ck_project_approval_status"),
		db.CheckConstraint(_in_clause("technology", TECHNOLOGIES), name="ck_project_technology"),
		db.CheckConstraint(_in_clause("capacity_unit", CAPACITY_UNITS), name="ck_project_capacity_unit"),
		db.CheckConstraint(_in_clause("currency", CURRENCIES), name="ck_project_currency"),
		db.CheckConstraint(_in_clause("priority", PRIORITIES), name="ck_project_priority"),
		db.CheckConstraint("total_subsidy >= 0", name="ck_project_total_subsidy"),
		db.CheckConstraint("released_amount >= 0 AND released_amount <= total_subsidy", name="ck_project_released_bounds"),
	)

	producer = db.relationship("User", foreign_keys=[producer_id])
	government = db.relationship("User", foreign_keys=[government_id])
	auditor = db.relationship("User", foreign_keys=[auditor_id])
	approved_by = db.relationship("User", foreign_keys=[approved_by_id])
	milestones = db.relationship(
		"Milestone",
		back_populates="project",
		order_by="Milestone.sequence_number",
		lazy="dynamic",
	)

	@staticmethod
	def visible_to(user):
		"""Base query of active projects restricted to what the user's role may see."""
		query = Project.query.filter(Project.is_active.is_(True))
		if user.role == "producer":
			query = query.filter(Project.producer_id == user.id)
		elif user.role == "auditor":
			query = query.filter(Project.auditor_id == user.id)
		return query

	def is_participant(self, user) -> bool:
		if user.role in ("government", "oracle"):
			return True
		if user.role == "producer":
			return self.producer_id == user.id
		if user.role == "auditor":
			return self.auditor_id == user.id
		return False

	@property
	def remaining_subsidy(self) -> float:
		return float(self.total_subsidy or 0) - float(self.released_amount or 0)

	def refresh_progress(self) -> None:
		progress = compute_progress_percentage(self.completed_milestones, self.milestone_count)
		if progress is None:
			return
		self.progress_percentage = progress
		if progress >= 100 and self.status == "active":
			self.status = "completed"
			self.actual_end_date = self.actual_end_date or datetime.utcnow()

	def add_milestone(self) -> None:
		self.milestone_count = (self.milestone_count or 0) + 1
		self.refresh_progress()

	def record_milestone_completion(self) -> None:
		self.completed_milestones = (self.completed_milestones or 0) + 1
		self.refresh_progress()

	def push_notification(self, kind: str, message: str) -> None:
		if kind not in PROJECT_NOTIFICATION_TYPES:
			raise ValueError(f"Unknown project notification type: {kind}")
		entry = {"type": kind, "message": message, "isRead": False, "createdAt": _iso(datetime.utcnow())}
		self.notifications = [*(self.notifications or []), entry]

	def summary(self) -> dict:
		return {
			"id": self.id,
			"projectId": self.project_id,
			"name": self.name,
			"status": self.status,
			"approvalStatus": self.approval_status,
			"progressPercentage": self.progress_percentage,
			"totalSubsidy": self.total_subsidy,
			"releasedAmount": self.released_amount,
			"remainingSubsidy": self.remaining_subsidy,
			"milestoneCount": self.milestone_count,
			"completedMilestones": self.completed_milestones,
		}

	def to_dict(self) -> dict:
		payload = self.summary()
		payload.update(
			{
				"description": self.description,
				"contractAddress": self.contract_address,
				"producer": self.producer.reference() if self.producer else None,
				"producerWalletAddress": self.producer_wallet_address,
				"government": self.government.reference() if self.government else None,
				"auditor": self.auditor.reference() if self.auditor else None,
				"location": self.location or {},
				"capacity": {"value": self.capacity_value, "unit": self.capacity_unit},
				"technology": self.technology,
				"currency": self.currency,
				"expectedStartDate": _iso(self.expected_start_date),
				"expectedEndDate": _iso(self.expected_end_date),
				"actualStartDate": _iso(self.actual_start_date),
				"actualEndDate": _iso(self.actual_end_date),
				"approvalDate": _iso(self.approval_date),
				"approvedBy": self.approved_by_id,
				"rejectionReason": self.rejection_reason,
				"environmentalBenefits": self.environmental_benefits or {},
				"documents": self.documents or [],
				"notifications": self.notifications or [],
				"tags": self.tags or [],
				"priority": self.priority,
				"chainTxHash": self.chain_tx_hash,
				"isActive": self.is_active,
				"createdAt": _iso(self.created_at),
				"updatedAt": _iso(self.updated_at),
			}
		)
		return payload

	@staticmethod
	def statistics(base_query=None) -> dict:
		query = base_query if base_query is not None else Project.query.filter(Project.is_active.is_(True))
		projects = query.all()
		by_status: dict[str, int] = {}
		by_technology: dict[str, int] = {}
		for project in projects:
			by_status[project.status] = by_status.get(project.status, 0) + 1
			by_technology[project.technology] = by_technology.get(project.technology, 0) + 1
		total_subsidy = sum(float(p.total_subsidy or 0) for p in projects)
		released = sum(float(p.released_amount or 0) for p in projects)
		return {
			"totalProjects": len(projects),
			"totalSubsidy": total_subsidy,
			"releasedSubsidy": released,
			"pendingSubsidy": total_subsidy - released,
			"averageProgress": round(sum(p.progress_percentage or 0 for p in projects) / len(projects)) if projects else 0,
			"byStatus": by_status,
			"byTechnology": by_technology,
		}


class Milestone(db.Model):
	__tablename__ = "milestones"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	milestone_id = db.Column(db.String(80), unique=True, nullable=False, index=True, default=lambda: generate_chain_id("MS"))
	project_id = db.Column(db.String(36), db.ForeignKey("projects.id"), nullable=False, index=True)
	chain_project_id = db.Column(db.String(64), nullable=False)
	title = db.Column(db.String(200), nullable=False)
	description = db.Column(db.Text, nullable=False)
	category = db.Column(db.String(40), nullable=False)
	sequence_number = db.Column(db.Integer, nullable=False)
	planned_start_date = db.Column(db.DateTime, nullable=True)
	planned_end_date = db.Column(db.DateTime, nullable=False, index=True)
	actual_start_date = db.Column(db.DateTime, nullable=True)
	actual_end_date = db.Column(db.DateTime, nullable=True)
	subsidy_amount = db.Column(db.Numeric(18, 2, asdecimal=False), nullable=False)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	completion_percentage = db.Column(db.Integer, nullable=False, default=0)
	requirements = db.Column(db.JSON, nullable=False, default=list)
	deliverables = db.Column(db.JSON, nullable=False, default=list)
	verification_required = db.Column(db.Boolean, nullable=False, default=True)
	verification_method = db.Column(db.String(30), nullable=False, default="document_review")
	is_verified = db.Column(db.Boolean, nullable=False, default=False)
	verified_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	verification_date = db.Column(db.DateTime, nullable=True)
	verification_comments = db.Column(db.String(1000), nullable=True)
	is_approved = db.Column(db.Boolean, nullable=False, default=False)
	approved_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	approval_date = db.Column(db.DateTime, nullable=True)
	approval_comments = db.Column(db.String(1000), nullable=True)
	released = db.Column(db.Boolean, nullable=False, default=False, index=True)
	release_date = db.Column(db.DateTime, nullable=True)
	release_tx_hash = db.Column(db.String(66), nullable=True)
	technical_specs = db.Column(db.JSON, nullable=True)
	oracle_data = db.Column(db.JSON, nullable=True)
	updates = db.Column(db.JSON, nullable=False, default=list)
	risks = db.Column(db.JSON, nullable=False, default=list)
	priority = db.Column(db.String(20), nullable=False, default="medium")
	tags = db.Column(db.JSON, nullable=False, default=list)
	is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
	created_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.UniqueConstraint("project_id", "sequence_number", name="uq_milestone_project_sequence"),
		db.CheckConstraint(_in_clause("status", MILESTONE_STATUSES), name="ck_milestone_status"),
		db.CheckConstraint(_in_clause("category", MILESTONE_CATEGORIES), name="ck_milestone_category"),
		db.CheckConstraint(_in_clause("verification_method", VERIFICATION_METHODS), name="ck_milestone_verification_method"),
		db.CheckConstraint(_in_clause("priority", PRIORITIES), name="ck_milestone_priority"),
		db.CheckConstraint("completion_percentage BETWEEN 0 AND 100", name="ck_milestone_completion_range"),
		db.CheckConstraint("sequence_number >= 1", name="ck_milestone_sequence"),
		db.CheckConstraint("NOT is_approved OR is_verified", name="ck_milestone_approval_requires_verification"),
		db.CheckConstraint("NOT released OR is_approved", name="ck_milestone_release_requires_approval"),
	)

	project = db.relationship("Project", back_populates="milestones")
	verified_by = db.relationship("User", foreign_keys=[verified_by_id])
	approved_by = db.relationship("User", foreign_keys=[approved_by_id])
	created_by = db.relationship("User", foreign_keys=[created_by_id])

	@property
	def is_overdue(self) -> bool:
		return is_past_due(self.status, self.planned_end_date)

	@property
	def days_until_due(self):
		if not self.planned_end_date:
			return None
		return (self.planned_end_date - datetime.utcnow()).days

	def append_update(self, message: str, user_id, kind: str = "general") -> dict:
		if kind not in UPDATE_TYPES:
			raise ValueError(f"Unknown update type: {kind}")
		entry = {
			"message": message,
			"updatedBy": user_id,
			"type": kind,
			"timestamp": _iso(datetime.utcnow()),
		}
		self.updates = [*(self.updates or []), entry]
		return entry

	def refresh_completion(self):
		percentage = compute_completion_percentage(self.requirements)
		if percentage is not None:
			self.completion_percentage = percentage
		return percentage

	def verification_record(self) -> dict:
		return {
			"isRequired": self.verification_required,
			"method": self.verification_method,
			"isVerified": self.is_verified,
			"verifiedBy": self.verified_by_id,
			"verificationDate": _iso(self.verification_date),
			"comments": self.verification_comments,
		}

	def approval_record(self) -> dict:
		return {
			"isApproved": self.is_approved,
			"approvedBy": self.approved_by_id,
			"approvalDate": _iso(self.approval_date),
			"comments": self.approval_comments,
		}

	def to_dict(self, include_project: bool = False) -> dict:
		payload = {
			"id": self.id,
			"milestoneId": self.milestone_id,
			"project": self.project_id,
			"projectId": self.chain_project_id,
			"title": self.title,
			"description": self.description,
			"category": self.category,
			"sequenceNumber": self.sequence_number,
			"plannedStartDate": _iso(self.planned_start_date),
			"plannedEndDate": _iso(self.planned_end_date),
			"actualStartDate": _iso(self.actual_start_date),
			"actualEndDate": _iso(self.actual_end_date),
			"subsidyAmount": self.subsidy_amount,
			"status": self.status,
			"completionPercentage": self.completion_percentage,
			"requirements": self.requirements or [],
			"deliverables": self.deliverables or [],
			"verification": self.verification_record(),
			"approval": self.approval_record(),
			"released": self.released,
			"releaseDate": _iso(self.release_date),
			"releaseTxHash": self.release_tx_hash,
			"technicalSpecs": self.technical_specs or {},
			"oracleData": self.oracle_data,
			"updates": self.updates or [],
			"risks": self.risks or [],
			"priority": self.priority,
			"tags": self.tags or [],
			"isActive": self.is_active,
			"isOverdue": self.is_overdue,
			"daysUntilDue": self.days_until_due,
			"createdAt": _iso(self.created_at),
			"updatedAt": _iso(self.updated_at),
		}
		if include_project and self.project:
			payload["projectSummary"] = self.project.summary()
		return payload

	@staticmethod
	def overdue_query(now=None):
		return Milestone.query.filter(
			Milestone.is_active.is_(True),
			Milestone.status.in_(("pending", "in_progress")),
			Milestone.planned_end_date < (now or datetime.utcnow()),
		)

	@staticmethod
	def upcoming_query(days: int = 7, now=None):
		now = now or datetime.utcnow()
		return Milestone.query.filter(
			Milestone.is_active.is_(True),
			Milestone.status.in_(("pending", "in_progress")),
			Milestone.planned_end_date >= now,
			Milestone.planned_end_date <= now + timedelta(days=days),
		)

	@staticmethod
	def statistics(project_ids=None) -> dict:
		query = Milestone.query.filter(Milestone.is_active.is_(True))
		if project_ids is not None:
			query = query.filter(Milestone.project_id.in_(list(project_ids)))
		milestones = query.all()
		by_status: dict[str, int] = {}
		for milestone in milestones:
			by_status[milestone.status] = by_status.get(milestone.status, 0) + 1
		return {
			"totalMilestones": len(milestones),
			"byStatus": by_status,
			"verified": sum(1 for m in milestones if m.is_verified),
			"approved": sum(1 for m in milestones if m.is_approved),
			"released": sum(1 for m in milestones if m.released),
			"overdue": sum(1 for m in milestones if m.is_overdue or m.status == "overdue"),
			"totalSubsidy": sum(float(m.subsidy_amount or 0) for m in milestones),
			"releasedSubsidy": sum(float(m.subsidy_amount or 0) for m in milestones if m.released),
			"averageCompletion": round(sum(m.completion_percentage or 0 for m in milestones) / len(milestones)) if milestones else 0,
		}


class Audit(db.Model):
	__tablename__ = "audits"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	event_type = db.Column(db.String(40), nullable=False, index=True)
	actor_user_id = db.Column(db.String(36), nullable=True, index=True)
	actor_email = db.Column(db.String(255), nullable=True)
	actor_wallet = db.Column(db.String(42), nullable=True)
	actor_role = db.Column(db.String(20), nullable=True)
	actor_ip = db.Column(db.String(64), nullable=True)
	actor_user_agent = db.Column(db.String(255), nullable=True)
	resource_type = db.Column(db.String(20), nullable=False, index=True)
	resource_id = db.Column(db.String(80), nullable=True, index=True)
	resource_name = db.Column(db.String(255), nullable=True)
	resource_details = db.Column(db.JSON, nullable=True)
	action = db.Column(db.String(20), nullable=False)
	description = db.Column(db.String(1000), nullable=False)
	request_info = db.Column(db.JSON, nullable=True)
	response_info = db.Column(db.JSON, nullable=True)
	blockchain = db.Column(db.JSON, nullable=True)
	tx_hash = db.Column(db.String(66), nullable=True, index=True)
	financial = db.Column(db.JSON, nullable=True)
	severity = db.Column(db.String(10), nullable=False, default="medium", index=True)
	category = db.Column(db.String(30), nullable=False, index=True)
	correlation_id = db.Column(db.String(64), nullable=True, index=True)
	tags = db.Column(db.JSON, nullable=False, default=list)
	context = db.Column(db.JSON, nullable=True)
	data_classification = db.Column(db.String(20), nullable=False, default="internal")
	personal_data_involved = db.Column(db.Boolean, nullable=False, default=False)
	retention_days = db.Column(db.Integer, nullable=False, default=2555)
	expire_at = db.Column(db.DateTime, nullable=False, index=True)
	reviewed = db.Column(db.Boolean, nullable=False, default=False)
	reviewed_by = db.Column(db.String(36), nullable=True)
	reviewed_at = db.Column(db.DateTime, nullable=True)
	review_notes = db.Column(db.String(1000), nullable=True)
	flagged = db.Column(db.Boolean, nullable=False, default=False, index=True)
	flag_reason = db.Column(db.String(500), nullable=True)
	flagged_by = db.Column(db.String(36), nullable=True)
	flagged_at = db.Column(db.DateTime, nullable=True)
	archived = db.Column(db.Boolean, nullable=False, default=False)
	archived_at = db.Column(db.DateTime, nullable=True)
	duration_ms = db.Column(db.Integer, nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(_in_clause("event_type", AUDIT_EVENT_TYPES), name="ck_audit_event_type"),
		db.CheckConstraint(_in_clause("resource_type", AUDIT_RESOURCE_TYPES), name="ck_audit_resource_type"),
		db.CheckConstraint(_in_clause("action", AUDIT_ACTIONS), name="ck_audit_action"),
		db.CheckConstraint(_in_clause("severity", AUDIT_SEVERITIES), name="ck_audit_severity"),
		db.CheckConstraint(_in_clause("category", AUDIT_CATEGORIES), name="ck_audit_category"),
		db.CheckConstraint(_in_clause("data_classification", DATA_CLASSIFICATIONS), name="ck_audit_classification"),
		db.Index("ix_audit_resource", "resource_type", "resource_id", "timestamp"),
		db.Index("ix_audit_actor", "actor_user_id", "timestamp"),
	)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"eventType": self.event_type,
			"actor": {
				"userId": self.actor_user_id,
				"userEmail": self.actor_email,
				"walletAddress": self.actor_wallet,
				"role": self.actor_role,
				"ipAddress": self.actor_ip,
				"userAgent": self.actor_user_agent,
			},
			"resource": {
				"type": self.resource_type,
				"id": self.resource_id,
				"name": self.resource_name,
				"details": self.resource_details,
			},
			"action": self.action,
			"description": self.description,
			"request": self.request_info,
			"response": self.response_info,
			"blockchain": self.blockchain,
			"financial": self.financial,
			"severity": self.severity,
			"category": self.category,
			"correlationId": self.correlation_id,
			"tags": self.tags or [],
			"context": self.context,
			"dataClassification": self.data_classification,
			"personalDataInvolved": self.personal_data_involved,
			"retentionPeriod": self.retention_days,
			"expireAt": _iso(self.expire_at),
			"reviewed": self.reviewed,
			"reviewedBy": self.reviewed_by,
			"reviewedAt": _iso(self.reviewed_at),
			"flagged": self.flagged,
			"flagReason": self.flag_reason,
			"archived": self.archived,
			"duration": self.duration_ms,
			"timestamp": _iso(self.timestamp),
		}


class ImmutableRecordError(Exception):
	"""Raised when an audit row is modified outside its review, flag, or archive fields."""


@event.listens_for(Audit, "before_update")
def _guard_audit_immutability(mapper, connection, target):
	state = inspect(target)
	for attr in mapper.column_attrs:
		if attr.key in AUDIT_MUTABLE_FIELDS:
			continue
		if state.attrs[attr.key].history.has_changes():
			raise ImmutableRecordError(f"Audit field '{attr.key}' cannot be modified")


def count_by(column, base_query) -> dict:
	"""Group a filtered Audit query by one column."""
	rows = (
		base_query.with_entities(column, func.count(Audit.id))
		.group_by(column)
		.order_by(func.count(Audit.id).desc())
		.all()
	)
	return {key: count for key, count in rows}
