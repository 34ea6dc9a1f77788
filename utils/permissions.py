"""Closed role set and the role -> action capability table checked at the API boundary."""
import enum
from functools import wraps

from flask import current_app, request
from flask_login import current_user, login_required

from utils.errors import AuthorizationError


class Role(str, enum.Enum):
    GOVERNMENT = "government"
    PRODUCER = "producer"
    AUDITOR = "auditor"
    ORACLE = "oracle"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown role: {value}") from exc


ROLE_VALUES: tuple[str, ...] = tuple(role.value for role in Role)


class Action(str, enum.Enum):
    PROJECT_CREATE = "project:create"
    PROJECT_READ = "project:read"
    PROJECT_UPDATE = "project:update"
    PROJECT_DELETE = "project:delete"
    PROJECT_APPROVE = "project:approve"
    PROJECT_ASSIGN_AUDITOR = "project:assign_auditor"
    PROJECT_AUDIT_TRAIL = "project:audit_trail"
    MILESTONE_CREATE = "milestone:create"
    MILESTONE_READ = "milestone:read"
    MILESTONE_UPDATE = "milestone:update"
    MILESTONE_START = "milestone:start"
    MILESTONE_COMPLETE = "milestone:complete"
    MILESTONE_VERIFY = "milestone:verify"
    MILESTONE_APPROVE = "milestone:approve"
    MILESTONE_RELEASE = "milestone:release"
    MILESTONE_COMMENT = "milestone:comment"
    ORACLE_SUBMIT = "oracle:submit"
    AUDIT_READ = "audit:read"
    AUDIT_SECURITY = "audit:security"
    AUDIT_REVIEW = "audit:review"


CAPABILITIES: dict[Role, frozenset] = {
    Role.GOVERNMENT: frozenset(
        {
            Action.PROJECT_CREATE,
            Action.PROJECT_READ,
            Action.PROJECT_UPDATE,
            Action.PROJECT_DELETE,
            Action.PROJECT_APPROVE,
            Action.PROJECT_ASSIGN_AUDITOR,
            Action.PROJECT_AUDIT_TRAIL,
            Action.MILESTONE_CREATE,
            Action.MILESTONE_READ,
            Action.MILESTONE_UPDATE,
            Action.MILESTONE_APPROVE,
            Action.MILESTONE_RELEASE,
            Action.MILESTONE_COMMENT,
            Action.ORACLE_SUBMIT,
            Action.AUDIT_READ,
            Action.AUDIT_SECURITY,
            Action.AUDIT_REVIEW,
        }
    ),
    Role.PRODUCER: frozenset(
        {
            Action.PROJECT_READ,
            Action.PROJECT_UPDATE,
            Action.PROJECT_AUDIT_TRAIL,
            Action.MILESTONE_CREATE,
            Action.MILESTONE_READ,
            Action.MILESTONE_UPDATE,
            Action.MILESTONE_START,
            Action.MILESTONE_COMPLETE,
            Action.MILESTONE_COMMENT,
        }
    ),
    Role.AUDITOR: frozenset(
        {
            Action.PROJECT_READ,
            Action.PROJECT_AUDIT_TRAIL,
            Action.MILESTONE_READ,
            Action.MILESTONE_VERIFY,
            Action.MILESTONE_COMMENT,
            Action.ORACLE_SUBMIT,
            Action.AUDIT_READ,
            Action.AUDIT_REVIEW,
        }
    ),
    Role.ORACLE: frozenset(
        {
            Action.PROJECT_READ,
            Action.MILESTONE_READ,
            Action.ORACLE_SUBMIT,
        }
    ),
}

# Default permission strings stored on new accounts.
DEFAULT_PERMISSIONS: dict[Role, list[str]] = {
    Role.GOVERNMENT: ["create_project", "approve_milestone", "release_funds", "view_all_projects", "manage_users"],
    Role.PRODUCER: ["view_own_projects", "update_milestones", "upload_documents"],
    Role.AUDITOR: ["verify_milestones", "view_all_projects", "generate_reports"],
    Role.ORACLE: ["update_oracle_data", "verify_data"],
}


def can(user, action: Action) -> bool:
    if user is None or not getattr(user, "is_authenticated", False):
        return False
    try:
        role = Role.parse(user.role)
    except ValueError:
        return False
    return action in CAPABILITIES.get(role, frozenset())


def require_capability(user, action: Action, message: str | None = None) -> None:
    if not can(user, action):
        raise AuthorizationError(message or f"Role is not permitted to perform {action.value}")


def capability_required(*actions: Action):
    """Require the authenticated user to hold at least one of the given capabilities."""

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if any(can(current_user, action) for action in actions):
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role, "path": request.path},
            )
            raise AuthorizationError(
                f"User role {current_user.role} is not authorized to access this resource"
            )

        return wrapped

    return decorator
