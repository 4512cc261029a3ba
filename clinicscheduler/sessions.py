"""Therapy plan sessions.

Recurring generation walks the calendar day by day from a start date, offers every day whose
weekday is in the pattern as a candidate slot, and books a Session + Appointment pair for each
slot the professional is free. Busy slots are reported back, not booked, and do not consume a
plan slot.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Iterable

from clinicscheduler.conflicts import find_conflicts
from clinicscheduler.domain import (
    AppointmentStatus,
    CandidateSlot,
    GenerationResult,
    Plan,
    Session,
    SessionAppointment,
    ValidationError,
)
from clinicscheduler.store import Store

if TYPE_CHECKING:
    from clinicscheduler.notifications import NotificationScheduler

logger = logging.getLogger(__name__)

DEFAULT_MAX_SCAN_DAYS = 366

WEEKDAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
    # Spanish names, as the clinic staff enter them
    "lunes": 0,
    "martes": 1,
    "miercoles": 2,
    "miércoles": 2,
    "jueves": 3,
    "viernes": 4,
    "sabado": 5,
    "sábado": 5,
    "domingo": 6,
}


def parse_weekdays(values: Iterable[int | str]) -> frozenset[int]:
    """Weekday set in Python numbering (Monday=0 .. Sunday=6); accepts numbers or day names."""
    days: set[int] = set()
    for value in values:
        if isinstance(value, str):
            key = value.strip().lower()
            if key.isdigit():
                day = int(key)
            elif key in WEEKDAY_NAMES:
                day = WEEKDAY_NAMES[key]
            else:
                raise ValidationError(f"Unknown weekday: {value!r}")
        else:
            day = int(value)
        if not 0 <= day <= 6:
            raise ValidationError(f"Weekday out of range (0=Monday .. 6=Sunday): {value!r}")
        days.add(day)
    if not days:
        raise ValidationError("Weekday set must not be empty")
    return frozenset(days)


def _is_open(store: Store, session: Session) -> bool:
    # Pending, or still pointing at an appointment that was cancelled or removed.
    if session.completed:
        return False
    if session.appointment_id is None:
        return True
    appointment = store.find_appointment(session.appointment_id)
    return appointment is None or appointment.is_cancelled


def remaining_capacity(store: Store, plan: Plan) -> int:
    """Sessions the plan can still book: target minus sessions that are done or hold a live appointment."""
    taken = sum(1 for s in store.list_sessions(plan.id) if not _is_open(store, s))
    return plan.target_sessions - taken


def _candidate_slots(
    start_date: dt.date,
    weekdays: frozenset[int],
    time_of_day: dt.time,
    duration: dt.timedelta,
    tz: dt.tzinfo,
    max_scan_days: int,
) -> Iterable[tuple[dt.datetime, dt.datetime]]:
    for offset in range(max_scan_days):
        day = start_date + dt.timedelta(days=offset)
        if day.weekday() not in weekdays:
            continue
        start = dt.datetime.combine(day, time_of_day.replace(tzinfo=None), tzinfo=tz)
        yield start, start + duration


def generate_sessions(
    store: Store,
    plan_id: str,
    start_date: dt.date,
    weekdays: Iterable[int | str],
    time_of_day: dt.time,
    duration_minutes: int,
    professional_id: str,
    session_count: int,
    *,
    resource_id: str | None = None,
    tz: dt.tzinfo = dt.timezone.utc,
    max_scan_days: int = DEFAULT_MAX_SCAN_DAYS,
    notifier: "NotificationScheduler | None" = None,
) -> GenerationResult:
    """Books up to ``session_count`` recurring sessions for a plan.

    Each booked slot fills an open Session (or creates one) and its Appointment in one store
    transaction, so a failure never leaves half a pair behind.
    Not idempotent: every successful call books real slots.

    Raises:
        ValidationError: bad pattern, inactive plan, or no capacity left in the plan.
        NotFoundError: unknown plan.
    """
    weekday_set = parse_weekdays(weekdays)
    if session_count < 1:
        raise ValidationError("session_count must be >= 1")
    if duration_minutes < 1:
        raise ValidationError("duration_minutes must be >= 1")
    if max_scan_days < 1:
        raise ValidationError("max_scan_days must be >= 1")
    if not professional_id:
        raise ValidationError("professional_id is required")

    plan = store.get_plan(plan_id)
    if not plan.active:
        raise ValidationError(f"Plan {plan_id} is not active")

    capacity = remaining_capacity(store, plan)
    if capacity <= 0:
        raise ValidationError(f"Plan {plan_id} already has all {plan.target_sessions} sessions")
    if session_count > capacity:
        logger.info("Plan %s: requested %d sessions, only %d left; capping", plan_id, session_count, capacity)
        session_count = capacity

    # Open sessions are filled first, in ordinal order, before new ones are created.
    open_sessions = [s for s in store.list_sessions(plan_id) if _is_open(store, s)]
    duration = dt.timedelta(minutes=duration_minutes)
    result = GenerationResult(requested=session_count)

    for start, end in _candidate_slots(start_date, weekday_set, time_of_day, duration, tz, max_scan_days):
        if len(result.created) >= session_count:
            break

        with store.transaction():
            conflicts = find_conflicts(
                store,
                start,
                end,
                professional_id=professional_id,
                resource_id=resource_id,
            )
            if conflicts:
                result.conflicts.append(
                    CandidateSlot(start=start, end=end, conflicting_ids=tuple(a.id for a in conflicts))
                )
                continue

            if open_sessions:
                session = open_sessions.pop(0)
                if session.appointment_id is not None:
                    store.unlink_appointment(session.appointment_id)
                ordinal = session.ordinal
            else:
                ordinal = store.next_ordinal(plan_id)
                session = store.create_session(plan_id, ordinal)
            appointment = store.create_appointment(
                patient_id=plan.patient_id,
                start=start,
                end=end,
                professional_id=professional_id,
                resource_id=resource_id,
                title=f"Sesión {ordinal}",
                status=AppointmentStatus.SCHEDULED,
            )
            session, appointment = store.link_to_appointment(session.id, appointment.id)

        result.created.append(SessionAppointment(session=session, appointment=appointment))
        if notifier is not None:
            notifier.schedule(appointment)

    if len(result.created) < session_count:
        result.horizon_exhausted = True
        logger.warning(
            "Plan %s: scanned %d days from %s and booked %d of %d sessions (%d conflicting slots)",
            plan_id,
            max_scan_days,
            start_date.isoformat(),
            len(result.created),
            session_count,
            len(result.conflicts),
        )
    else:
        logger.info(
            "Plan %s: booked %d sessions (%d conflicting slots skipped)",
            plan_id,
            len(result.created),
            len(result.conflicts),
        )
    return result


def pending_sessions(store: Store, plan_id: str) -> list[Session]:
    store.get_plan(plan_id)
    return [s for s in store.list_sessions(plan_id) if s.is_pending]


def assign_appointment(store: Store, session_id: str, appointment_id: str) -> Session:
    """Links an existing appointment to a pending session of the same patient."""
    with store.transaction():
        session = store.get_session(session_id)
        if session.appointment_id is not None:
            raise ValidationError(f"Session {session_id} already has appointment {session.appointment_id}")

        appointment = store.get_appointment(appointment_id)
        if appointment.is_cancelled:
            raise ValidationError(f"Appointment {appointment_id} is cancelled")

        plan = store.get_plan(session.plan_id)
        if appointment.patient_id != plan.patient_id:
            raise ValidationError(f"Appointment {appointment_id} belongs to a different patient")

        other = store.find_session_for_appointment(appointment_id)
        if other is not None and other.id != session_id:
            raise ValidationError(f"Appointment {appointment_id} is already linked to session {other.id}")

        session, _ = store.link_to_appointment(session_id, appointment_id)

    logger.info("Session %s linked to appointment %s", session_id, appointment_id)
    return session


def complete_session(store: Store, session_id: str, notes: str | None = None) -> Session:
    """Marks a session done, completes its appointment and advances the plan."""
    with store.transaction():
        session = store.get_session(session_id)
        if session.completed:
            raise ValidationError(f"Session {session_id} is already completed")

        plan = store.get_plan(session.plan_id)
        if plan.completed_sessions >= plan.target_sessions:
            raise ValidationError(f"Plan {plan.id} already completed all {plan.target_sessions} sessions")

        fields: dict[str, object] = {"completed": True}
        if notes is not None:
            fields["notes"] = notes
        session = store.update_session(session_id, **fields)

        if session.appointment_id is not None:
            store.update_appointment(session.appointment_id, status=AppointmentStatus.COMPLETED)
        store.update_plan(plan.id, completed_sessions=plan.completed_sessions + 1)

    logger.info("Session %s completed (plan %s)", session_id, session.plan_id)
    return session
