"""Interval conflict detection.

Two bookings conflict when they share a professional or a resource and their half-open
intervals [start, end) intersect. Cancelled appointments never conflict.
"""

from __future__ import annotations

import datetime as dt

from clinicscheduler.domain import Appointment, ValidationError
from clinicscheduler.store import Store


def intervals_overlap(s1: dt.datetime, e1: dt.datetime, s2: dt.datetime, e2: dt.datetime) -> bool:
    # Back-to-back intervals (e1 == s2) do not overlap.
    return s1 < e2 and s2 < e1


def validate_interval(start: dt.datetime, end: dt.datetime) -> None:
    for name, value in (("start", start), ("end", end)):
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValidationError(f"{name} must be timezone-aware")
    if end <= start:
        raise ValidationError(f"end ({end.isoformat()}) must be after start ({start.isoformat()})")


def find_conflicts(
    store: Store,
    start: dt.datetime,
    end: dt.datetime,
    *,
    professional_id: str | None = None,
    resource_id: str | None = None,
    exclude_appointment_id: str | None = None,
) -> list[Appointment]:
    """Non-cancelled appointments overlapping [start, end) for the professional or the resource.

    With neither professional_id nor resource_id there is nothing to collide with and the
    result is empty. When both are given an appointment conflicts if it matches either one.
    exclude_appointment_id skips the appointment being moved.

    Returns appointments ordered by (start, id).
    """
    validate_interval(start, end)

    candidates: dict[str, Appointment] = {}
    if professional_id is not None:
        for appt in store.list_by_professional(professional_id, window_start=start, window_end=end):
            candidates[appt.id] = appt
    if resource_id is not None:
        for appt in store.list_by_resource(resource_id, window_start=start, window_end=end):
            candidates[appt.id] = appt

    conflicts = [
        appt
        for appt in candidates.values()
        if appt.id != exclude_appointment_id
        and not appt.is_cancelled
        and intervals_overlap(start, end, appt.start, appt.end)
    ]
    conflicts.sort(key=lambda a: (a.start, a.id))
    return conflicts

