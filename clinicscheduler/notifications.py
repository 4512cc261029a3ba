from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from typing import Callable

import httpx
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger
from tenacity import RetryCallState, retry, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from clinicscheduler.domain import Appointment, NotificationJob
from clinicscheduler.sms import is_transient_error, normalize_phone
from clinicscheduler.store import Store

logger = logging.getLogger(__name__)

Sender = Callable[[str, str], None]
Clock = Callable[[], dt.datetime]

DEFAULT_LEAD_TIME = dt.timedelta(minutes=30)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _job_id(appointment_id: str) -> str:
    return f"reminder:{appointment_id}"


def format_reminder(
    appointment: Appointment,
    patient_name: str | None,
    professional_name: str | None,
    tz: dt.tzinfo = dt.timezone.utc,
) -> str:
    start = appointment.start.astimezone(tz)
    greeting = f"Hola {patient_name}" if patient_name else "Hola"
    return (
        f"{greeting}, tienes una cita con {professional_name or 'su profesional'} "
        f"el {start:%d/%m/%Y %H:%M}. Te esperamos."
    )


def _failure_reason(retry_state: RetryCallState) -> str:
    exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
    if exc is None:
        return "unknown error"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code} from {exc.request.url.host}"
    detail = str(exc).strip()
    return f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__


def _log_before_sleep(retry_state: RetryCallState) -> None:
    sleep_seconds = getattr(retry_state.next_action, "sleep", None)
    reason = _failure_reason(retry_state)
    if sleep_seconds is None:
        logger.info("Send attempt %s failed, retrying (%s)", retry_state.attempt_number, reason)
        return
    logger.info(
        "Send attempt %s failed, retrying in %.0f s (%s)",
        retry_state.attempt_number,
        sleep_seconds,
        reason,
    )


class NotificationScheduler:
    """One reminder per appointment, fired ``lead_time`` before it starts.

    Keeps a table of pending one-shot jobs keyed by appointment id. The table is guarded by a
    single lock, so schedule / cancel / fire never interleave on it; a fire callback only sends
    if its job is still the registered one. Jobs live in memory only: after a restart
    ``worker.reschedule_upcoming`` rebuilds them from the store.

    The sender is ``sender(destination, body)`` and signals failure by raising.
    """

    def __init__(
        self,
        store: Store,
        sender: Sender,
        *,
        lead_time: dt.timedelta = DEFAULT_LEAD_TIME,
        max_send_attempts: int = 3,
        send_retry_attempts: int = 2,
        retry_wait: wait_base | None = None,
        tz: dt.tzinfo = dt.timezone.utc,
        default_country_code: str | None = None,
        scheduler: BaseScheduler | None = None,
        clock: Clock = _utcnow,
    ):
        self._store = store
        self._sender = sender
        self.lead_time = lead_time
        self.max_send_attempts = max_send_attempts
        self._send_retry_attempts = send_retry_attempts
        self._retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=2, min=2, max=8)
        self._tz = tz
        self._default_country_code = default_country_code
        self._scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone=dt.timezone.utc)
        self._clock = clock

        self._lock = threading.Lock()
        self._jobs: dict[str, NotificationJob] = {}
        # Appointments with a send in progress; a second concurrent delivery is dropped.
        self._in_flight: set[str] = set()

    # --- lifecycle ---

    @property
    def scheduler(self) -> BaseScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            logger.warning("Notification scheduler already running")
            return
        self._scheduler.start()
        logger.info("Notification scheduler started (lead_time=%s)", self.lead_time)

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        with self._lock:
            self._jobs.clear()
        logger.info("Notification scheduler stopped")

    # --- job table ---

    def pending_jobs(self) -> list[NotificationJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: (j.fire_at, j.appointment_id))

    def get_job(self, appointment_id: str) -> NotificationJob | None:
        with self._lock:
            return self._jobs.get(appointment_id)

    def _remove_locked(self, appointment_id: str) -> bool:
        job = self._jobs.pop(appointment_id, None)
        if job is None:
            return False
        try:
            self._scheduler.remove_job(_job_id(appointment_id))
        except JobLookupError:
            # Already fired or never reached the job store.
            pass
        return True

    def cancel(self, appointment_id: str) -> bool:
        """Drops the pending reminder of an appointment. Returns False when there was none."""
        with self._lock:
            removed = self._remove_locked(appointment_id)
        if removed:
            logger.info("Cancelled scheduled reminder for appointment %s", appointment_id)
        return removed

    # --- scheduling ---

    def schedule(self, appointment: Appointment, *, lead_time: dt.timedelta | None = None) -> NotificationJob | None:
        """Registers (or replaces) the reminder for an appointment.

        Returns the registered job, or None when nothing was registered: notifications are off,
        the reminder was already sent, the appointment is cancelled, already started or
        dead-lettered, or the fire time has passed and the reminder was sent right away.
        """
        if not appointment.notification_enabled or appointment.notification_sent:
            return None
        if appointment.is_cancelled:
            self.cancel(appointment.id)
            return None
        if appointment.notification_attempts >= self.max_send_attempts:
            logger.warning(
                "Appointment %s reached %d failed reminder attempts, not scheduling",
                appointment.id,
                appointment.notification_attempts,
            )
            return None

        now = self._clock()
        if appointment.start <= now:
            logger.info("Appointment %s already started, no reminder", appointment.id)
            self.cancel(appointment.id)
            return None

        fire_at = appointment.start - (lead_time if lead_time is not None else self.lead_time)
        if fire_at <= now:
            self.cancel(appointment.id)
            logger.info("Reminder for appointment %s is already due, sending now", appointment.id)
            self._deliver(appointment.id)
            return None

        job = NotificationJob(appointment_id=appointment.id, fire_at=fire_at, token=uuid.uuid4().hex)
        with self._lock:
            self._remove_locked(appointment.id)
            self._scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=fire_at),
                args=[appointment.id, job.token],
                id=_job_id(appointment.id),
                name=f"Reminder for appointment {appointment.id}",
                replace_existing=True,
                misfire_grace_time=None,
            )
            self._jobs[appointment.id] = job

        logger.info("Scheduled reminder for appointment %s at %s", appointment.id, fire_at.isoformat())
        return job

    def schedule_by_id(self, appointment_id: str, *, lead_time: dt.timedelta | None = None) -> NotificationJob | None:
        return self.schedule(self._store.get_appointment(appointment_id), lead_time=lead_time)

    def send_now(self, appointment_id: str) -> bool:
        """Manual trigger: drops any pending job and sends the reminder immediately."""
        self.cancel(appointment_id)
        return self._deliver(appointment_id)

    # --- firing ---

    def _fire(self, appointment_id: str, token: str) -> None:
        with self._lock:
            job = self._jobs.get(appointment_id)
            if job is None or job.token != token:
                logger.info("Stale reminder job for appointment %s ignored", appointment_id)
                return
            del self._jobs[appointment_id]

        try:
            self._deliver(appointment_id)
        except Exception:
            # A failure here must not take down the scheduler or other pending reminders.
            logger.error("Reminder job for appointment %s failed", appointment_id, exc_info=True)

    def _deliver(self, appointment_id: str) -> bool:
        with self._lock:
            if appointment_id in self._in_flight:
                logger.info("Reminder for appointment %s is already being sent", appointment_id)
                return False
            self._in_flight.add(appointment_id)
        try:
            return self._send_reminder(appointment_id)
        finally:
            with self._lock:
                self._in_flight.discard(appointment_id)

    def _send_reminder(self, appointment_id: str) -> bool:
        appointment = self._store.find_appointment(appointment_id)
        if appointment is None:
            logger.info("Appointment %s no longer exists, reminder dropped", appointment_id)
            return False
        if appointment.is_cancelled or not appointment.notification_enabled or appointment.notification_sent:
            logger.info("Appointment %s no longer needs a reminder", appointment_id)
            return False

        phone, patient_name, professional_name = self._store.reminder_details(appointment_id)
        destination = normalize_phone(phone, self._default_country_code)
        if not destination:
            logger.warning("No phone for appointment %s, skipping reminder", appointment_id)
            self._record_failure(appointment_id)
            return False

        body = format_reminder(appointment, patient_name, professional_name, self._tz)
        try:
            self._send_with_retry(destination, body)
        except Exception as e:
            logger.warning(
                "Failed to send reminder for appointment %s to %s (%s: %s)",
                appointment_id,
                destination,
                type(e).__name__,
                e,
            )
            self._record_failure(appointment_id)
            return False

        with self._store.transaction():
            current = self._store.find_appointment(appointment_id)
            if current is None or current.start != appointment.start:
                # Moved or deleted while the message was in flight; the new time gets its own job.
                logger.info("Appointment %s changed during send, not marking it sent", appointment_id)
                return True
            self._store.update_appointment(appointment_id, notification_sent=True)
        logger.info("Reminder sent for appointment %s to %s", appointment_id, destination)
        return True

    def _send_with_retry(self, destination: str, body: str) -> None:
        decorated = retry(
            stop=stop_after_attempt(self._send_retry_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_before_sleep,
            reraise=True,
        )(self._sender)

        decorated(destination, body)

    def _record_failure(self, appointment_id: str) -> None:
        with self._store.transaction():
            current = self._store.find_appointment(appointment_id)
            if current is None:
                return
            attempts = current.notification_attempts + 1
            self._store.update_appointment(appointment_id, notification_attempts=attempts)
        if attempts >= self.max_send_attempts:
            logger.warning(
                "Giving up on reminder for appointment %s after %d failed attempts",
                appointment_id,
                attempts,
            )
