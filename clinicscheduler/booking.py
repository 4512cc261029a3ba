from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable

from clinicscheduler.conflicts import find_conflicts, validate_interval
from clinicscheduler.domain import Appointment, AppointmentStatus, GenerationResult, SchedulingConflict, ValidationError
from clinicscheduler.notifications import NotificationScheduler
from clinicscheduler.sessions import DEFAULT_MAX_SCAN_DAYS, generate_sessions
from clinicscheduler.store import Store

logger = logging.getLogger(__name__)


class AppointmentService:
    """Create, move, cancel and delete appointments.

    Keeps the no-overlap rule per professional and per resource, and keeps the reminder table
    in step: every change that affects an appointment's start or its eligibility for a reminder
    cancels and (where it still applies) reschedules its job.
    """

    def __init__(
        self,
        store: Store,
        notifier: NotificationScheduler,
        *,
        tz: dt.tzinfo = dt.timezone.utc,
        max_scan_days: int = DEFAULT_MAX_SCAN_DAYS,
    ):
        self._store = store
        self._notifier = notifier
        self._tz = tz
        self._max_scan_days = max_scan_days

    def _ensure_free(
        self,
        start: dt.datetime,
        end: dt.datetime,
        *,
        professional_id: str | None,
        resource_id: str | None,
        exclude_appointment_id: str | None = None,
    ) -> None:
        conflicts = find_conflicts(
            self._store,
            start,
            end,
            professional_id=professional_id,
            resource_id=resource_id,
            exclude_appointment_id=exclude_appointment_id,
        )
        if conflicts:
            raise SchedulingConflict(conflicts)

    def book(
        self,
        *,
        patient_id: str,
        start: dt.datetime,
        end: dt.datetime,
        professional_id: str | None = None,
        resource_id: str | None = None,
        title: str | None = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        notification_enabled: bool = True,
        lead_time: dt.timedelta | None = None,
    ) -> Appointment:
        if not patient_id:
            raise ValidationError("patient_id is required")
        if status is AppointmentStatus.CANCELLED:
            raise ValidationError("Cannot book a cancelled appointment")
        validate_interval(start, end)

        with self._store.transaction():
            self._ensure_free(start, end, professional_id=professional_id, resource_id=resource_id)
            appointment = self._store.create_appointment(
                patient_id=patient_id,
                start=start,
                end=end,
                professional_id=professional_id,
                resource_id=resource_id,
                title=title,
                status=status,
                notification_enabled=notification_enabled,
            )

        logger.info("Booked appointment %s (%s - %s)", appointment.id, start.isoformat(), end.isoformat())
        self._notifier.schedule(appointment, lead_time=lead_time)
        return appointment

    def book_series(
        self,
        *,
        patient_id: str,
        professional_id: str,
        first_start: dt.datetime,
        duration_minutes: int,
        count: int = 10,
        resource_id: str | None = None,
    ) -> list[Appointment]:
        """Books ``count`` back-to-back appointments starting at ``first_start``; all or nothing."""
        if not patient_id or not professional_id:
            raise ValidationError("patient_id and professional_id are required")
        if duration_minutes < 1:
            raise ValidationError("duration_minutes must be >= 1")
        if count < 1:
            raise ValidationError("count must be >= 1")

        duration = dt.timedelta(minutes=duration_minutes)
        created: list[Appointment] = []
        with self._store.transaction():
            for i in range(count):
                start = first_start + i * duration
                end = start + duration
                validate_interval(start, end)
                self._ensure_free(start, end, professional_id=professional_id, resource_id=resource_id)
                created.append(
                    self._store.create_appointment(
                        patient_id=patient_id,
                        start=start,
                        end=end,
                        professional_id=professional_id,
                        resource_id=resource_id,
                        title=f"Cita {i + 1}",
                    )
                )

        logger.info("Booked series of %d appointments for patient %s", len(created), patient_id)
        for appointment in created:
            self._notifier.schedule(appointment)
        return created

    def generate_sessions(
        self,
        plan_id: str,
        *,
        start_date: dt.date,
        weekdays: Iterable[int | str],
        time_of_day: dt.time,
        duration_minutes: int,
        professional_id: str,
        session_count: int,
        resource_id: str | None = None,
    ) -> GenerationResult:
        """Recurring sessions for a plan, laid out in the clinic timezone and handed to the notifier."""
        return generate_sessions(
            self._store,
            plan_id,
            start_date,
            weekdays,
            time_of_day,
            duration_minutes,
            professional_id,
            session_count,
            resource_id=resource_id,
            tz=self._tz,
            max_scan_days=self._max_scan_days,
            notifier=self._notifier,
        )

    def move(
        self,
        appointment_id: str,
        start: dt.datetime,
        end: dt.datetime,
        *,
        resource_id: str | None = None,
    ) -> Appointment:
        """Reschedules an appointment; its reminder is recomputed from the new start."""
        validate_interval(start, end)

        with self._store.transaction():
            current = self._store.get_appointment(appointment_id)
            if current.is_cancelled:
                raise ValidationError(f"Appointment {appointment_id} is cancelled and cannot be moved")
            new_resource = resource_id if resource_id is not None else current.resource_id
            self._ensure_free(
                start,
                end,
                professional_id=current.professional_id,
                resource_id=new_resource,
                exclude_appointment_id=appointment_id,
            )
            self._notifier.cancel(appointment_id)
            appointment = self._store.update_appointment(
                appointment_id,
                start=start,
                end=end,
                resource_id=new_resource,
                notification_sent=False,
                notification_attempts=0,
            )

        logger.info("Moved appointment %s to %s - %s", appointment_id, start.isoformat(), end.isoformat())
        self._notifier.schedule(appointment)
        return appointment

    def set_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment:
        with self._store.transaction():
            current = self._store.get_appointment(appointment_id)
            if current.is_cancelled and status is not AppointmentStatus.CANCELLED:
                # Reviving would bypass the overlap check; book a new appointment instead.
                raise ValidationError(f"Appointment {appointment_id} is cancelled")
            appointment = self._store.update_appointment(appointment_id, status=status)
            if status is AppointmentStatus.CANCELLED:
                # The plan keeps its slot: the session can be booked again.
                self._store.unlink_appointment(appointment_id)
                appointment = self._store.get_appointment(appointment_id)

        if status is AppointmentStatus.CANCELLED:
            self._notifier.cancel(appointment_id)
            logger.info("Cancelled appointment %s", appointment_id)
        return appointment

    def cancel(self, appointment_id: str) -> Appointment:
        return self.set_status(appointment_id, AppointmentStatus.CANCELLED)

    def set_notifications(self, appointment_id: str, enabled: bool) -> Appointment:
        appointment = self._store.update_appointment(appointment_id, notification_enabled=enabled)
        if enabled:
            self._notifier.schedule(appointment)
        else:
            self._notifier.cancel(appointment_id)
        return appointment

    def delete(self, appointment_id: str) -> Appointment:
        """Hard-removes an appointment; a linked session goes back to pending."""
        self._notifier.cancel(appointment_id)
        with self._store.transaction():
            self._store.unlink_appointment(appointment_id)
            appointment = self._store.delete_appointment(appointment_id)

        logger.info("Deleted appointment %s", appointment_id)
        return appointment
