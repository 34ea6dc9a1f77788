"""Registration, bearer-token login, and account self-service."""
import math
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g
from flask_login import current_user, login_required
from wtforms import PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional, ValidationError

from extensions import db
from models import User
from utils.api import JSONForm, json_body, success
from utils.audit_logger import log_security_event, log_user_action
from utils.blockchain import is_valid_address, verify_signature
from utils.email_service import EmailDeliveryError, send_password_reset_email, send_verification_email
from utils.errors import (
    AccountLockedError,
    ApiError,
    AuthenticationError,
    AuthorizationError,
    DuplicateKeyError,
    NotFoundError,
    ValidationFailed,
)
from utils.permissions import DEFAULT_PERMISSIONS, ROLE_VALUES, Role
from utils.security import issue_access_token, password_meets_policy

auth_bp = Blueprint("auth", __name__)

ROLE_CHOICES: list[tuple[str, str]] = [(value, value.title()) for value in ROLE_VALUES]

PROFILE_FIELDS = ("name", "phone", "bio")


def _validate_wallet(field):
    if field.data and not is_valid_address(field.data):
        raise ValidationError("Invalid Ethereum wallet address")


class RegistrationForm(JSONForm):
    name = StringField("Name", validators=[DataRequired(), Length(min=2, max=100)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8, max=128)])
    role = SelectField("Role", choices=ROLE_CHOICES, validators=[DataRequired()])
    walletAddress = StringField("Wallet Address", validators=[Optional(), Length(max=42)])
    phone = StringField("Phone", validators=[Optional(), Length(max=32)])

    def validate_walletAddress(self, field):
        _validate_wallet(field)


class LoginForm(JSONForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


class ProfileForm(JSONForm):
    name = StringField("Name", validators=[Optional(), Length(min=2, max=100)])
    phone = StringField("Phone", validators=[Optional(), Length(max=32)])
    bio = StringField("Bio", validators=[Optional(), Length(max=500)])
    walletAddress = StringField("Wallet Address", validators=[Optional(), Length(max=42)])

    def validate_walletAddress(self, field):
        _validate_wallet(field)


class ChangePasswordForm(JSONForm):
    currentPassword = PasswordField("Current Password", validators=[DataRequired()])
    newPassword = PasswordField("New Password", validators=[DataRequired(), Length(min=8, max=128)])


class ForgotPasswordForm(JSONForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])


class ResetPasswordForm(JSONForm):
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8, max=128)])


def _require_policy(password: str) -> None:
    password_ok, reason = password_meets_policy(password)
    if not password_ok:
        raise ValidationFailed(reason)


def _claim_wallet(address: str, body: dict, user_id=None) -> str:
    """Normalize a wallet, check a signed ownership proof when supplied, and reject one already in use."""
    wallet = address.strip().lower()
    signature, message = body.get("signature"), body.get("message")
    if signature and message and not verify_signature(message, signature, wallet):
        raise ValidationFailed("Wallet signature verification failed")
    holder = User.query.filter(User.wallet_address == wallet).first()
    if holder and holder.id != user_id:
        raise DuplicateKeyError("Wallet address already in use")
    return wallet


def _session_payload(user: User) -> dict:
    return {"token": issue_access_token(user), "user": user.public_profile()}


@auth_bp.route("/register", methods=["POST"])
def register():
    body = json_body()
    form = RegistrationForm().validate_or_raise()
    _require_policy(form.password.data)

    email = form.email.data.lower().strip()
    if User.query.filter_by(email=email).first():
        raise DuplicateKeyError("User already exists with this email")
    wallet = _claim_wallet(form.walletAddress.data, body) if form.walletAddress.data else None

    role = Role.parse(form.role.data)
    organization = body.get("organization")
    user = User(
        name=form.name.data.strip(),
        email=email,
        role=role.value,
        wallet_address=wallet,
        permissions=list(DEFAULT_PERMISSIONS[role]),
        phone=(form.phone.data or "").strip() or None,
        organization=organization if isinstance(organization, dict) else ({"name": organization} if organization else None),
    )
    user.set_password(form.password.data)
    lifetime = timedelta(hours=int(current_app.config.get("EMAIL_VERIFICATION_HOURS", 24)))
    verification_token = user.issue_token("email_verification", lifetime)
    db.session.add(user)
    db.session.flush()
    log_user_action(
        user,
        "user_registration",
        "register",
        f"New user registered: {user.name} ({user.email})",
        category="authentication",
        severity="low",
        resource_name=user.name,
        personal_data_involved=True,
    )

    try:
        send_verification_email(
            user.email,
            user.name,
            f"{current_app.config.get('CLIENT_URL', '').rstrip('/')}/verify-email/{verification_token}",
            user.email_verification_expires.strftime("%Y-%m-%d %H:%M"),
        )
    except EmailDeliveryError as exc:
        current_app.logger.error("Verification email failed", extra={"user_id": user.id, "error": str(exc)})

    current_app.logger.info("User registered", extra={"user_id": user.id, "role": user.role})
    return success(
        _session_payload(user),
        message="User registered successfully. Please check your email for verification.",
        status=201,
    )


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm().validate_or_raise()
    email = form.email.data.lower().strip()
    user = User.query.filter_by(email=email).first()

    if not user:
        log_security_event(
            "authentication_failed",
            f"Failed login attempt for non-existent email: {email}",
            severity="medium",
            action="login",
            resource_type="user",
        )
        g.failure_audited = True
        raise AuthenticationError("Invalid credentials")

    if user.is_locked:
        remaining = math.ceil((user.lock_until - datetime.utcnow()).total_seconds() / 60)
        raise AccountLockedError(f"Account locked. Try again in {remaining} minutes")

    if not user.check_password(form.password.data):
        user.register_failed_login(
            int(current_app.config.get("MAX_LOGIN_ATTEMPTS", 5)),
            int(current_app.config.get("ACCOUNT_LOCK_MINUTES", 120)),
        )
        log_security_event(
            "authentication_failed",
            f"Failed login attempt: invalid password for {user.email}",
            user=user,
            severity="high" if user.is_locked else "medium",
            action="login",
            resource_type="user",
            resource_id=user.id,
        )
        g.failure_audited = True
        current_app.logger.warning("Failed login", extra={"user_id": user.id, "attempts": user.login_attempts})
        raise AuthenticationError("Invalid credentials")

    if not user.is_active:
        raise AuthorizationError("Account is deactivated. Please contact support.")

    user.record_login()
    log_user_action(
        user,
        "user_login",
        "login",
        f"User logged in: {user.email}",
        category="authentication",
        severity="low",
        resource_name=user.name,
    )
    current_app.logger.info("User logged in", extra={"user_id": user.id})
    return success(_session_payload(user), message="Login successful")


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return success({"user": current_user.public_profile()})


@auth_bp.route("/profile", methods=["PUT"])
@login_required
def update_profile():
    body = json_body()
    form = ProfileForm().validate_or_raise()
    user = current_user

    changed = []
    for field in PROFILE_FIELDS:
        value = getattr(form, field).data
        if value:
            setattr(user, field, value.strip())
            changed.append(field)
    if form.walletAddress.data:
        user.wallet_address = _claim_wallet(form.walletAddress.data, body, user_id=user.id)
        changed.append("walletAddress")
    if isinstance(body.get("organization"), dict):
        user.organization = {**(user.organization or {}), **body["organization"]}
        changed.append("organization")
    if isinstance(body.get("preferences"), dict):
        user.preferences = {**(user.preferences or {}), **body["preferences"]}
        changed.append("preferences")
    if not changed:
        raise ValidationFailed("No profile fields provided")

    log_user_action(
        user,
        "user_profile_update",
        "update",
        "User profile updated",
        category="data_modification",
        severity="low",
        resource_name=user.name,
        context={"changedFields": changed},
        personal_data_involved=True,
    )
    return success({"user": user.public_profile()}, message="Profile updated successfully")


@auth_bp.route("/change-password", methods=["PUT"])
@login_required
def change_password():
    form = ChangePasswordForm().validate_or_raise()
    user = current_user
    if not user.check_password(form.currentPassword.data):
        raise ValidationFailed("Current password is incorrect")
    _require_policy(form.newPassword.data)

    user.set_password(form.newPassword.data)
    log_security_event(
        "user_profile_update",
        f"Password changed for user: {user.email}",
        user=user,
        severity="medium",
        action="update",
        resource_type="user",
        resource_id=user.id,
    )
    return success({"token": issue_access_token(user)}, message="Password changed successfully")


@auth_bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    form = ForgotPasswordForm().validate_or_raise()
    user = User.query.filter_by(email=form.email.data.lower().strip()).first()
    if not user:
        raise NotFoundError("User not found with this email")

    minutes = int(current_app.config.get("PASSWORD_RESET_MINUTES", 10))
    reset_token = user.issue_token("password_reset", timedelta(minutes=minutes))
    db.session.commit()
    try:
        send_password_reset_email(
            user.email,
            user.name,
            f"{current_app.config.get('CLIENT_URL', '').rstrip('/')}/reset-password/{reset_token}",
            minutes,
        )
    except EmailDeliveryError as exc:
        user.consume_token("password_reset")
        db.session.commit()
        current_app.logger.error("Password reset email failed", extra={"user_id": user.id, "error": str(exc)})
        raise ApiError("Email could not be sent", 500) from exc

    log_security_event(
        "security_alert",
        f"Password reset requested for user: {user.email}",
        user=user,
        severity="low",
        action="update",
        resource_type="user",
        resource_id=user.id,
    )
    return success(message="Password reset email sent")


@auth_bp.route("/reset-password/<token>", methods=["PUT"])
def reset_password(token):
    form = ResetPasswordForm().validate_or_raise()
    user = User.find_by_token("password_reset", token)
    if not user:
        raise ValidationFailed("Invalid or expired token")
    _require_policy(form.password.data)

    user.set_password(form.password.data)
    user.consume_token("password_reset")
    user.reset_login_attempts()
    log_security_event(
        "security_alert",
        f"Password reset completed for user: {user.email}",
        user=user,
        severity="medium",
        action="update",
        resource_type="user",
        resource_id=user.id,
    )
    return success({"token": issue_access_token(user)}, message="Password reset successful")


@auth_bp.route("/verify-email/<token>", methods=["GET"])
def verify_email(token):
    user = User.find_by_token("email_verification", token)
    if not user:
        raise ValidationFailed("Invalid or expired verification token")

    user.email_verified = True
    user.consume_token("email_verification")
    log_user_action(
        user,
        "user_profile_update",
        "verify",
        f"Email verified for user: {user.email}",
        category="authentication",
        severity="low",
        resource_name=user.name,
    )
    return success(message="Email verified successfully")


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user = current_user
    log_user_action(
        user,
        "user_logout",
        "logout",
        f"User logged out: {user.email}",
        category="authentication",
        severity="low",
        resource_name=user.name,
    )
    return success(message="Logged out successfully")
