from __future__ import annotations

import datetime as dt
import itertools

import pytest

from clinicscheduler.conflicts import find_conflicts, intervals_overlap
from clinicscheduler.domain import AppointmentStatus, ValidationError
from clinicscheduler.store import Store

UTC = dt.timezone.utc


def _at(hour: int, minute: int = 0, day: int = 6) -> dt.datetime:
    # 2025-01-06 is a Monday
    return dt.datetime(2025, 1, day, hour, minute, tzinfo=UTC)


def _book(store: Store, start: dt.datetime, end: dt.datetime, *, professional_id: str | None = "pro-1", resource_id: str | None = None, status: AppointmentStatus = AppointmentStatus.SCHEDULED):
    return store.create_appointment(
        patient_id="pat-1",
        start=start,
        end=end,
        professional_id=professional_id,
        resource_id=resource_id,
        status=status,
    )


def test_overlapping_appointment_is_reported() -> None:
    store = Store()
    existing = _book(store, _at(9), _at(10))

    conflicts = find_conflicts(store, _at(9, 30), _at(10, 30), professional_id="pro-1")
    assert [a.id for a in conflicts] == [existing.id]


def test_back_to_back_appointments_do_not_conflict() -> None:
    store = Store()
    _book(store, _at(9), _at(10))

    assert find_conflicts(store, _at(10), _at(11), professional_id="pro-1") == []
    assert find_conflicts(store, _at(8), _at(9), professional_id="pro-1") == []


def test_other_professional_does_not_conflict() -> None:
    store = Store()
    _book(store, _at(9), _at(10), professional_id="pro-2")

    assert find_conflicts(store, _at(9), _at(10), professional_id="pro-1") == []


def test_cancelled_appointments_are_ignored() -> None:
    store = Store()
    _book(store, _at(9), _at(10), status=AppointmentStatus.CANCELLED)

    assert find_conflicts(store, _at(9), _at(10), professional_id="pro-1") == []


def test_completed_and_confirmed_appointments_still_block() -> None:
    store = Store()
    a = _book(store, _at(9), _at(10), status=AppointmentStatus.CONFIRMED)
    b = _book(store, _at(10), _at(11), status=AppointmentStatus.COMPLETED)

    conflicts = find_conflicts(store, _at(9, 30), _at(10, 30), professional_id="pro-1")
    assert [c.id for c in conflicts] == [a.id, b.id]


def test_excluded_appointment_is_skipped() -> None:
    store = Store()
    moving = _book(store, _at(9), _at(10))

    assert find_conflicts(store, _at(9, 15), _at(10, 15), professional_id="pro-1", exclude_appointment_id=moving.id) == []


def test_no_professional_and_no_resource_means_no_conflicts() -> None:
    store = Store()
    _book(store, _at(9), _at(10))

    assert find_conflicts(store, _at(9), _at(10)) == []


def test_resource_conflicts_are_detected_independently_of_professional() -> None:
    store = Store()
    room = _book(store, _at(9), _at(10), professional_id="pro-2", resource_id="room-1")

    conflicts = find_conflicts(store, _at(9, 30), _at(10), professional_id="pro-1", resource_id="room-1")
    assert [a.id for a in conflicts] == [room.id]


def test_appointment_matching_both_filters_is_reported_once() -> None:
    store = Store()
    both = _book(store, _at(9), _at(10), professional_id="pro-1", resource_id="room-1")

    conflicts = find_conflicts(store, _at(9), _at(10), professional_id="pro-1", resource_id="room-1")
    assert [a.id for a in conflicts] == [both.id]


def test_results_are_ordered_by_start_then_id() -> None:
    store = Store()
    late = _book(store, _at(11), _at(12))
    early = _book(store, _at(8), _at(9))
    mid = _book(store, _at(9, 30), _at(10), professional_id="pro-1", resource_id="room-9")

    conflicts = find_conflicts(store, _at(7), _at(13), professional_id="pro-1")
    assert [a.id for a in conflicts] == [early.id, mid.id, late.id]


@pytest.mark.parametrize(
    "start, end",
    [
        (_at(10), _at(10)),
        (_at(10), _at(9)),
        (dt.datetime(2025, 1, 6, 9), dt.datetime(2025, 1, 6, 10)),
    ],
)
def test_malformed_interval_is_rejected(start: dt.datetime, end: dt.datetime) -> None:
    with pytest.raises(ValidationError):
        find_conflicts(Store(), start, end, professional_id="pro-1")


def test_overlap_rule_matches_max_start_before_min_end() -> None:
    points = [_at(h) for h in range(8, 13)]
    for s1, e1, s2, e2 in itertools.product(points, repeat=4):
        if not (s1 < e1 and s2 < e2):
            continue
        assert intervals_overlap(s1, e1, s2, e2) == (max(s1, s2) < min(e1, e2))
