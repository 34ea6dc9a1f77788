"""SMTP-backed email dispatcher for account and subsidy lifecycle notifications."""
import html
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Dict, List, Tuple

from flask import current_app


class EmailDeliveryError(Exception):
    """Raised when email dispatch fails."""


def _resolve_sender() -> str:
    return current_app.config.get("MAIL_DEFAULT_SENDER") or current_app.config.get("MAIL_USERNAME") or ""


def _render(title: str, paragraphs: List[str], facts: Dict[str, str] | None = None, link: Tuple[str, str] | None = None) -> Tuple[str, str]:
    """Return plaintext and HTML bodies built from the same content."""
    text_lines = [title, ""] + paragraphs
    html_parts = [f"<h2>{html.escape(title)}</h2>"] + [f"<p>{html.escape(p)}</p>" for p in paragraphs]
    if facts:
        text_lines.append("")
        text_lines.extend(f"{key}: {value}" for key, value in facts.items())
        rows = "".join(
            f"<tr><th align='left'>{html.escape(key)}</th><td>{html.escape(str(value))}</td></tr>"
            for key, value in facts.items()
        )
        html_parts.append(f"<table>{rows}</table>")
    if link:
        label, url = link
        text_lines.extend(["", f"{label}: {url}"])
        html_parts.append(f"<p><a href='{html.escape(url, quote=True)}'>{html.escape(label)}</a></p>")
    text_lines.extend(["", "Green Hydrogen Subsidy Platform"])
    html_parts.append("<p>Green Hydrogen Subsidy Platform</p>")
    return "\n".join(text_lines), "\n".join(html_parts)


def _dispatch_email(subject: str, text_body: str, html_body: str, sender: str, recipients: List[str]) -> None:
    if not recipients:
        raise EmailDeliveryError("No recipients resolved for email dispatch")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Reply-To"] = sender
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.set_content(text_body)
    msg.add_alternative(html_body, subtype="html")

    host = current_app.config.get("MAIL_SERVER")
    port = int(current_app.config.get("MAIL_PORT", 25))
    username = current_app.config.get("MAIL_USERNAME")
    password = current_app.config.get("MAIL_PASSWORD")
    use_tls = bool(current_app.config.get("MAIL_USE_TLS"))
    use_ssl = bool(current_app.config.get("MAIL_USE_SSL"))

    if not host:
        raise EmailDeliveryError("MAIL_SERVER is not configured")

    try:
        if use_ssl:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(host, port, context=context) as server:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port) as server:
                server.ehlo()
                if use_tls:
                    server.starttls(context=ssl.create_default_context())
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
    except Exception as exc:  # pragma: no cover - external I/O
        raise EmailDeliveryError(str(exc)) from exc

    current_app.logger.info("Email dispatched", extra={"subject": subject, "recipients": len(recipients)})


def _send(recipient: str, subject: str, title: str, paragraphs: List[str], facts=None, link=None) -> None:
    text_body, html_body = _render(title, paragraphs, facts, link)
    _dispatch_email(subject, text_body, html_body, _resolve_sender(), [recipient])


def _client_link(path: str) -> str:
    return f"{current_app.config.get('CLIENT_URL', '').rstrip('/')}/{path.lstrip('/')}"


def _money(amount, currency: str = "INR") -> str:
    return f"{currency} {float(amount or 0):,.2f}"


def send_verification_email(recipient: str, user_name: str, verification_link: str, expires_at: str) -> None:
    _send(
        recipient,
        "Welcome to Green Hydrogen Platform",
        f"Welcome, {user_name}",
        ["Please confirm your email address to activate your account.", f"This link expires at {expires_at} UTC."],
        link=("Verify email", verification_link),
    )


def send_password_reset_email(recipient: str, user_name: str, reset_link: str, expires_minutes: int) -> None:
    _send(
        recipient,
        "Password Reset Request - Green Hydrogen Platform",
        f"Hello {user_name}",
        [
            "We received a request to reset your password.",
            f"The link below is valid for {expires_minutes} minutes. Ignore this email if you did not ask for a reset.",
        ],
        link=("Reset password", reset_link),
    )


def send_project_approved_email(user, project) -> None:
    _send(
        user.email,
        f"Project Approved: {project.name}",
        "Your project has been approved",
        [f"Dear {user.name}, the project below is now active and milestones can begin."],
        facts={
            "Project": project.name,
            "Project ID": project.project_id,
            "Total subsidy": _money(project.total_subsidy, project.currency),
        },
        link=("View project", _client_link(f"projects/{project.id}")),
    )


def send_milestone_due_email(user, milestone, project, days_left: int) -> None:
    _send(
        user.email,
        f"Milestone Due: {milestone.title}",
        "Milestone deadline approaching",
        [f"Dear {user.name}, this milestone is due in {days_left} day(s)."],
        facts={
            "Project": project.name,
            "Milestone": milestone.title,
            "Due date": milestone.planned_end_date.strftime("%Y-%m-%d"),
            "Subsidy": _money(milestone.subsidy_amount, project.currency),
        },
        link=("Open milestone", _client_link(f"milestones/{milestone.id}")),
    )


def send_milestone_overdue_email(user, milestone, project) -> None:
    _send(
        user.email,
        f"Milestone Overdue: {milestone.title}",
        "Milestone overdue",
        [f"Dear {user.name}, this milestone has passed its planned end date and is now marked overdue."],
        facts={
            "Project": project.name,
            "Milestone": milestone.title,
            "Due date": milestone.planned_end_date.strftime("%Y-%m-%d"),
        },
        link=("Open milestone", _client_link(f"milestones/{milestone.id}")),
    )


def send_subsidy_released_email(user, milestone, project, tx_hash: str) -> None:
    _send(
        user.email,
        f"Subsidy Released: {_money(milestone.subsidy_amount, project.currency)}",
        "Subsidy released",
        [f"Dear {user.name}, the subsidy for the milestone below has been released."],
        facts={
            "Project": project.name,
            "Milestone": milestone.title,
            "Amount": _money(milestone.subsidy_amount, project.currency),
            "Transaction": tx_hash,
        },
    )


def send_weekly_summary_email(user, summary: Dict) -> None:
    _send(
        user.email,
        f"Weekly Platform Summary - Week of {summary.get('weekStarting')}",
        "Weekly platform summary",
        [f"Dear {user.name}, here is the activity on the Green Hydrogen Platform for the past week."],
        facts={
            "New projects": summary.get("newProjects", 0),
            "Completed milestones": summary.get("completedMilestones", 0),
            "Subsidies released": f"{_money(summary.get('releasedAmount', 0))} across {summary.get('releasedCount', 0)} milestone(s)",
            "Overdue milestones": summary.get("overdueCount", 0),
        },
        link=("Open dashboard", _client_link("dashboard")),
    )
