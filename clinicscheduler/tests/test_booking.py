from __future__ import annotations

import datetime as dt
from unittest.mock import MagicMock

import pytest

from clinicscheduler.booking import AppointmentService
from clinicscheduler.domain import AppointmentStatus, SchedulingConflict, ValidationError
from clinicscheduler.sessions import assign_appointment, pending_sessions, remaining_capacity
from clinicscheduler.store import Store

UTC = dt.timezone.utc


def _at(hour: int, minute: int = 0) -> dt.datetime:
    return dt.datetime(2030, 3, 4, hour, minute, tzinfo=UTC)


def _service() -> tuple[AppointmentService, Store, MagicMock]:
    store = Store()
    notifier = MagicMock()
    return AppointmentService(store, notifier), store, notifier


def test_book_creates_appointment_and_schedules_reminder() -> None:
    service, store, notifier = _service()

    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1", title="Evaluación")

    assert store.get_appointment(appt.id).title == "Evaluación"
    notifier.schedule.assert_called_once_with(appt, lead_time=None)


def test_book_passes_lead_time_override() -> None:
    service, _, notifier = _service()

    service.book(patient_id="pat-1", start=_at(9), end=_at(10), lead_time=dt.timedelta(hours=2))

    assert notifier.schedule.call_args.kwargs["lead_time"] == dt.timedelta(hours=2)


def test_book_rejects_overlap_for_same_professional() -> None:
    service, store, notifier = _service()
    first = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")

    with pytest.raises(SchedulingConflict) as excinfo:
        service.book(patient_id="pat-2", start=_at(9, 30), end=_at(10, 30), professional_id="pro-1")

    assert [a.id for a in excinfo.value.conflicts] == [first.id]
    assert len(store.list_in_range(_at(0), _at(23))) == 1
    assert notifier.schedule.call_count == 1


def test_book_allows_back_to_back_and_other_professionals() -> None:
    service, store, _ = _service()
    service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")

    service.book(patient_id="pat-2", start=_at(10), end=_at(11), professional_id="pro-1")
    service.book(patient_id="pat-3", start=_at(9), end=_at(10), professional_id="pro-2")

    assert len(store.list_in_range(_at(0), _at(23))) == 3


def test_book_rejects_malformed_interval() -> None:
    service, store, _ = _service()

    with pytest.raises(ValidationError):
        service.book(patient_id="pat-1", start=_at(10), end=_at(10))
    assert store.list_in_range(_at(0), _at(23)) == []


def test_book_series_is_all_or_nothing() -> None:
    service, store, notifier = _service()
    blocker = service.book(patient_id="pat-9", start=_at(11), end=_at(11, 30), professional_id="pro-1")
    notifier.reset_mock()

    with pytest.raises(SchedulingConflict):
        service.book_series(patient_id="pat-1", professional_id="pro-1", first_start=_at(9), duration_minutes=60, count=4)

    assert [a.id for a in store.list_in_range(_at(0), _at(23))] == [blocker.id]
    notifier.schedule.assert_not_called()


def test_book_series_creates_back_to_back_appointments() -> None:
    service, _, notifier = _service()

    created = service.book_series(patient_id="pat-1", professional_id="pro-1", first_start=_at(9), duration_minutes=30, count=3)

    assert [(a.start, a.end, a.title) for a in created] == [
        (_at(9), _at(9, 30), "Cita 1"),
        (_at(9, 30), _at(10), "Cita 2"),
        (_at(10), _at(10, 30), "Cita 3"),
    ]
    assert notifier.schedule.call_count == 3


def test_move_cancels_then_reschedules_and_resets_sent_flag() -> None:
    service, store, notifier = _service()
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")
    store.update_appointment(appt.id, notification_sent=True, notification_attempts=2)
    notifier.reset_mock()

    moved = service.move(appt.id, _at(9, 30), _at(10, 30))

    notifier.cancel.assert_called_once_with(appt.id)
    notifier.schedule.assert_called_once_with(moved)
    assert moved.start == _at(9, 30)
    assert moved.notification_sent is False
    assert moved.notification_attempts == 0


def test_move_into_a_busy_slot_is_rejected_and_keeps_the_job() -> None:
    service, store, notifier = _service()
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")
    service.book(patient_id="pat-2", start=_at(11), end=_at(12), professional_id="pro-1")
    notifier.reset_mock()

    with pytest.raises(SchedulingConflict):
        service.move(appt.id, _at(11, 30), _at(12, 30))

    assert store.get_appointment(appt.id).start == _at(9)
    notifier.cancel.assert_not_called()


def test_cancel_drops_job_and_frees_the_slot() -> None:
    service, _, notifier = _service()
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")

    cancelled = service.cancel(appt.id)

    assert cancelled.status is AppointmentStatus.CANCELLED
    notifier.cancel.assert_called_once_with(appt.id)
    service.book(patient_id="pat-2", start=_at(9), end=_at(10), professional_id="pro-1")

    with pytest.raises(ValidationError):
        service.move(appt.id, _at(14), _at(15))
    with pytest.raises(ValidationError):
        service.set_status(appt.id, AppointmentStatus.CONFIRMED)


def test_confirming_keeps_the_reminder() -> None:
    service, _, notifier = _service()
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10))

    service.set_status(appt.id, AppointmentStatus.CONFIRMED)

    notifier.cancel.assert_not_called()


def test_toggle_notifications() -> None:
    service, _, notifier = _service()
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10))
    notifier.reset_mock()

    service.set_notifications(appt.id, False)
    notifier.cancel.assert_called_once_with(appt.id)

    enabled = service.set_notifications(appt.id, True)
    notifier.schedule.assert_called_once_with(enabled)


def test_delete_unlinks_session_and_cancels_job() -> None:
    service, store, notifier = _service()
    plan = store.create_plan("pat-1", target_sessions=3)
    session = store.create_session(plan.id, 1)
    appt = service.book(patient_id="pat-1", start=_at(9), end=_at(10))
    store.link_to_appointment(session.id, appt.id)

    service.delete(appt.id)

    notifier.cancel.assert_called_once_with(appt.id)
    assert store.find_appointment(appt.id) is None
    assert store.get_session(session.id).is_pending


def _generated_pair(service: AppointmentService, store: Store):
    plan = store.create_plan("pat-1", target_sessions=2)
    result = service.generate_sessions(
        plan.id,
        start_date=dt.date(2030, 3, 4),
        weekdays=[0, 2],
        time_of_day=dt.time(9, 0),
        duration_minutes=45,
        professional_id="pro-1",
        session_count=2,
    )
    return plan, result


def test_cancelling_a_session_appointment_frees_the_plan_slot() -> None:
    service, store, _ = _service()
    plan, result = _generated_pair(service, store)
    first = result.created[0]

    service.cancel(first.appointment.id)

    assert [s.id for s in pending_sessions(store, plan.id)] == [first.session.id]
    assert store.get_appointment(first.appointment.id).session_id is None
    assert remaining_capacity(store, store.get_plan(plan.id)) == 1

    replacement = service.book(patient_id="pat-1", start=_at(9), end=_at(10), professional_id="pro-1")
    assign_appointment(store, first.session.id, replacement.id)
    assert store.get_session(first.session.id).appointment_id == replacement.id


def test_regenerating_after_cancel_refills_the_open_session() -> None:
    service, store, _ = _service()
    plan, result = _generated_pair(service, store)
    service.cancel(result.created[0].appointment.id)

    again = service.generate_sessions(
        plan.id,
        start_date=dt.date(2030, 3, 11),
        weekdays=[0],
        time_of_day=dt.time(9, 0),
        duration_minutes=45,
        professional_id="pro-1",
        session_count=5,
    )

    assert len(again.created) == 1
    assert again.created[0].session.id == result.created[0].session.id
    assert len(store.list_sessions(plan.id)) == 2
    assert pending_sessions(store, plan.id) == []
