"""Recurring notification jobs: overdue sweep, due reminders, weekly summary, audit purge.

Each named job runs on its own daemon thread and sleeps on a stop event until its
next wall-clock slot. The same job functions back the ``notifications-run`` CLI
command so cron can drive them instead.
"""
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from flask import current_app

from extensions import db
from models import Milestone, Project, User
from utils.audit_logger import SYSTEM_ACTOR, purge_expired, record_event
from utils.email_service import (
    EmailDeliveryError,
    send_milestone_due_email,
    send_milestone_overdue_email,
    send_project_approved_email,
    send_subsidy_released_email,
    send_weekly_summary_email,
)

SUNDAY = 6


def next_run_after(now: datetime, hour: int, minute: int = 0, weekday: Optional[int] = None, offset_minutes: int = 0) -> datetime:
    """Next UTC instant matching hour:minute (and weekday) in the configured local offset."""
    local_now = now + timedelta(minutes=offset_minutes)
    candidate = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if weekday is not None:
        candidate += timedelta(days=(weekday - candidate.weekday()) % 7)
    if candidate <= local_now:
        candidate += timedelta(days=7 if weekday is not None else 1)
    return candidate - timedelta(minutes=offset_minutes)


def _notify(send: Callable, *args, **log_extra) -> bool:
    try:
        send(*args)
    except EmailDeliveryError as exc:
        current_app.logger.warning("Notification email failed", extra={"error": str(exc), **log_extra})
        return False
    return True


def check_overdue_milestones(now: Optional[datetime] = None) -> int:
    """Flip past-due pending/in-progress milestones to overdue and notify each producer.

    Selection is by query alone, so a milestone reset to in_progress externally is
    flagged and emailed again on the next sweep.
    """
    now = now or datetime.utcnow()
    flagged = 0
    for milestone in Milestone.overdue_query(now).all():
        milestone.status = "overdue"
        milestone.append_update("Milestone marked overdue by scheduled sweep", None, "issue")
        record_event(
            "milestone_updated",
            action="update",
            resource_type="milestone",
            resource_id=milestone.id,
            resource_name=milestone.title,
            description=f"Milestone marked overdue: {milestone.title}",
            category="compliance",
            severity="low",
            actor=dict(SYSTEM_ACTOR),
            commit=False,
        )
        db.session.commit()
        flagged += 1
        project = milestone.project
        producer = project.producer if project else None
        if producer and producer.email and producer.wants_email():
            _notify(send_milestone_overdue_email, producer, milestone, project, milestone_id=milestone.id)
    if flagged:
        current_app.logger.info("Updated overdue milestones", extra={"count": flagged})
    return flagged


def send_due_reminders(now: Optional[datetime] = None, days: Optional[int] = None) -> int:
    now = now or datetime.utcnow()
    days = days if days is not None else int(current_app.config.get("DUE_REMINDER_DAYS", 3))
    sent = 0
    for milestone in Milestone.upcoming_query(days, now).all():
        project = milestone.project
        producer = project.producer if project else None
        if not producer or not producer.email or not producer.wants_email():
            continue
        days_left = math.ceil((milestone.planned_end_date - now).total_seconds() / 86400)
        if _notify(send_milestone_due_email, producer, milestone, project, days_left, milestone_id=milestone.id):
            sent += 1
    if sent:
        current_app.logger.info("Sent due date reminders", extra={"count": sent})
    return sent


def weekly_summary(since: datetime) -> Dict:
    released = (
        db.session.query(db.func.coalesce(db.func.sum(Milestone.subsidy_amount), 0), db.func.count(Milestone.id))
        .filter(Milestone.released.is_(True), Milestone.release_date >= since, Milestone.is_active.is_(True))
        .one()
    )
    return {
        "newProjects": Project.query.filter(Project.created_at >= since, Project.is_active.is_(True)).count(),
        "completedMilestones": Milestone.query.filter(
            Milestone.status == "completed",
            Milestone.actual_end_date >= since,
            Milestone.is_active.is_(True),
        ).count(),
        "releasedAmount": float(released[0] or 0),
        "releasedCount": int(released[1] or 0),
        "overdueCount": Milestone.query.filter(Milestone.status == "overdue", Milestone.is_active.is_(True)).count(),
        "weekStarting": since.date().isoformat(),
    }


def send_weekly_summary(now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    summary = weekly_summary(now - timedelta(days=7))
    recipients = [
        user
        for user in User.query.filter_by(role="government", is_active=True).all()
        if user.wants_email("weeklyReports")
    ]
    sent = sum(1 for user in recipients if _notify(send_weekly_summary_email, user, summary, user_id=user.id))
    current_app.logger.info("Sent weekly summaries", extra={"count": sent, "recipients": len(recipients)})
    return sent


def purge_expired_audits(now: Optional[datetime] = None) -> int:
    removed = purge_expired(now)
    current_app.logger.info("Purged expired audit records", extra={"count": removed})
    return removed


def notify_project_approval(project) -> bool:
    producer = project.producer
    if not producer or not producer.email:
        return False
    return _notify(send_project_approved_email, producer, project, project_id=project.id)


def notify_subsidy_release(milestone, project, tx_hash: str) -> bool:
    producer = project.producer
    if not producer or not producer.email:
        return False
    return _notify(send_subsidy_released_email, producer, milestone, project, tx_hash, milestone_id=milestone.id)


@dataclass
class ScheduledJob:
    name: str
    func: Callable
    hour: int
    minute: int = 0
    weekday: Optional[int] = None
    thread: Optional[threading.Thread] = field(default=None, repr=False)
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None

    @property
    def running(self) -> bool:
        return bool(self.thread and self.thread.is_alive())

    @property
    def schedule(self) -> str:
        day = "*" if self.weekday is None else str((self.weekday + 1) % 7)
        return f"{self.minute} {self.hour} * * {day}"


class NotificationScheduler:
    def __init__(self, app, offset_minutes: Optional[int] = None):
        self.app = app
        self.offset_minutes = (
            offset_minutes if offset_minutes is not None else int(app.config.get("SCHEDULER_TIMEZONE_OFFSET_MINUTES", 330))
        )
        self.jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self.register("overdue-check", check_overdue_milestones, hour=9)
        self.register("due-reminders", send_due_reminders, hour=8)
        self.register("weekly-summary", send_weekly_summary, hour=10, weekday=SUNDAY)
        self.register("audit-purge", purge_expired_audits, hour=3)

    def register(self, name: str, func: Callable, hour: int, minute: int = 0, weekday: Optional[int] = None) -> None:
        self.jobs[name] = ScheduledJob(name=name, func=func, hour=hour, minute=minute, weekday=weekday)
        self.app.logger.info("Scheduled job registered", extra={"job": name, "schedule": self.jobs[name].schedule})

    def _job(self, name: str) -> ScheduledJob:
        if name not in self.jobs:
            raise KeyError(f"Unknown job: {name}")
        return self.jobs[name]

    def run_job(self, name: str, now: Optional[datetime] = None):
        """Execute one job synchronously; failures are logged and never propagate to other jobs."""
        job = self._job(name)
        with self.app.app_context():
            self.app.logger.info("Running scheduled job", extra={"job": name})
            job.last_run = datetime.utcnow()
            try:
                result = job.func(now) if now is not None else job.func()
            except Exception:
                db.session.rollback()
                job.last_status = "failed"
                self.app.logger.exception("Error in scheduled job", extra={"job": name})
                return None
            job.last_status = "ok"
            self.app.logger.info("Completed scheduled job", extra={"job": name, "result": result})
            return result

    def _loop(self, job: ScheduledJob) -> None:
        while not job.stop_event.is_set():
            job.next_run = next_run_after(datetime.utcnow(), job.hour, job.minute, job.weekday, self.offset_minutes)
            delay = max((job.next_run - datetime.utcnow()).total_seconds(), 0)
            if job.stop_event.wait(timeout=delay):
                break
            self.run_job(job.name)

    def start_job(self, name: str) -> None:
        with self._lock:
            job = self._job(name)
            if job.running:
                return
            job.stop_event = threading.Event()
            job.thread = threading.Thread(target=self._loop, args=(job,), name=f"scheduler-{name}", daemon=True)
            job.thread.start()
        self.app.logger.info("Started scheduled job", extra={"job": name})

    def start(self) -> None:
        for name in self.jobs:
            self.start_job(name)

    def stop_job(self, name: str, timeout: float = 5.0) -> None:
        job = self._job(name)
        job.stop_event.set()
        if job.thread and job.thread is not threading.current_thread():
            job.thread.join(timeout=timeout)
        job.thread = None
        job.next_run = None
        self.app.logger.info("Stopped scheduled job", extra={"job": name})

    def stop_all(self) -> None:
        for name in list(self.jobs):
            self.stop_job(name)
        self.app.logger.info("All scheduled jobs stopped")

    def job_status(self) -> Dict[str, Dict]:
        return {
            name: {
                "running": job.running,
                "schedule": job.schedule,
                "nextRun": job.next_run.isoformat() if job.next_run else None,
                "lastRun": job.last_run.isoformat() if job.last_run else None,
                "lastStatus": job.last_status,
            }
            for name, job in self.jobs.items()
        }
