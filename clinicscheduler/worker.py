from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from clinicscheduler.booking import AppointmentService
from clinicscheduler.config import Settings
from clinicscheduler.domain import ValidationError
from clinicscheduler.notifications import NotificationScheduler
from clinicscheduler.sms import TwilioSender
from clinicscheduler.store import Store

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reschedule_upcoming"


@dataclass
class Runtime:
    settings: Settings
    store: Store
    notifier: NotificationScheduler
    booking: AppointmentService


def build_runtime(settings: Settings, *, store: Store | None = None) -> Runtime:
    store = store if store is not None else Store(settings.store_file)

    sender = TwilioSender(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from,
    )
    if not sender.configured:
        logger.warning(
            "Twilio credentials not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM; "
            "reminders will fail until then."
        )

    notifier = NotificationScheduler(
        store,
        sender,
        lead_time=dt.timedelta(minutes=settings.notification_lead_minutes),
        max_send_attempts=settings.max_send_attempts,
        send_retry_attempts=settings.send_retry_attempts,
        tz=settings.tz,
        default_country_code=settings.default_country_code,
        scheduler=BackgroundScheduler(timezone=dt.timezone.utc),
    )
    return Runtime(
        settings=settings,
        store=store,
        notifier=notifier,
        booking=AppointmentService(
            store,
            notifier,
            tz=settings.tz,
            max_scan_days=settings.generator_max_scan_days,
        ),
    )


def reschedule_upcoming(
    store: Store,
    notifier: NotificationScheduler,
    days_ahead: int = 7,
    *,
    now: dt.datetime | None = None,
) -> int:
    """Rebuilds reminder jobs for appointments starting within the next ``days_ahead`` days.

    Picks appointments that still need a reminder: notifications on, not yet sent, not
    cancelled, not dead-lettered. Safe to repeat: ``schedule`` replaces any existing job.
    Returns how many appointments were handed to the scheduler.
    """
    if days_ahead < 1:
        raise ValidationError("days_ahead must be >= 1")

    now = now if now is not None else dt.datetime.now(dt.timezone.utc)
    until = now + dt.timedelta(days=days_ahead)

    appointments = [
        a
        for a in store.list_in_range(now, until, include_cancelled=False)
        if a.notification_enabled
        and not a.notification_sent
        and a.notification_attempts < notifier.max_send_attempts
    ]

    failed = 0
    for appointment in appointments:
        try:
            notifier.schedule(appointment)
        except Exception as e:
            # One bad appointment must not stop the rest of the sweep.
            failed += 1
            logger.error("Failed to reschedule appointment %s (%s: %s)", appointment.id, type(e).__name__, e)

    logger.info(
        "Rescheduled %d upcoming notifications (window %d days, failures=%d)",
        len(appointments) - failed,
        days_ahead,
        failed,
    )
    return len(appointments) - failed


def _sweep(runtime: Runtime, days_ahead: int) -> None:
    try:
        reschedule_upcoming(runtime.store, runtime.notifier, days_ahead)
    except Exception:
        logger.error("Periodic reschedule sweep failed", exc_info=True)


def run_once(settings: Settings, *, days_ahead: int | None = None) -> int:
    """Single sweep without keeping timers: reminders already due are sent, the rest are dropped on exit."""
    runtime = build_runtime(settings)
    try:
        return reschedule_upcoming(runtime.store, runtime.notifier, days_ahead or settings.reschedule_days_ahead)
    finally:
        runtime.notifier.shutdown(wait=False)


def run_forever(settings: Settings, *, days_ahead: int | None = None, stop_event: threading.Event | None = None) -> None:
    runtime = build_runtime(settings)
    window = days_ahead or settings.reschedule_days_ahead
    stop_event = stop_event or threading.Event()

    runtime.notifier.start()
    try:
        # Jobs do not survive a restart; this sweep is what brings them back.
        reschedule_upcoming(runtime.store, runtime.notifier, window)

        if settings.reschedule_interval_seconds > 0:
            runtime.notifier.scheduler.add_job(
                _sweep,
                trigger=IntervalTrigger(seconds=settings.reschedule_interval_seconds),
                args=[runtime, window],
                id=SWEEP_JOB_ID,
                name="Reschedule upcoming notifications",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.info("Periodic sweep every %ss", settings.reschedule_interval_seconds)

        logger.info("Worker started. Lookahead=%s days", window)
        stop_event.wait()
    finally:
        runtime.notifier.shutdown(wait=False)
        logger.info("Worker stopped")
