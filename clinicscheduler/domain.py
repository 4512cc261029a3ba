from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Appointment:
    """A booked time block for a patient, optionally tied to a professional and/or a resource.

    The interval is half-open: [start, end).
    """

    id: str
    patient_id: str
    start: dt.datetime
    end: dt.datetime
    professional_id: str | None = None
    resource_id: str | None = None
    title: str | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notification_enabled: bool = True
    notification_sent: bool = False
    # Failed reminder sends so far; reaching MAX_SEND_ATTEMPTS stops further retries.
    notification_attempts: int = 0
    session_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status is AppointmentStatus.CANCELLED


@dataclass(frozen=True)
class Session:
    """One planned therapy encounter. Pending while appointment_id is None."""

    id: str
    plan_id: str
    ordinal: int
    appointment_id: str | None = None
    completed: bool = False
    notes: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.appointment_id is None and not self.completed


@dataclass(frozen=True)
class Plan:
    id: str
    patient_id: str
    target_sessions: int
    completed_sessions: int = 0
    active: bool = True

    @property
    def remaining_sessions(self) -> int:
        return self.target_sessions - self.completed_sessions


@dataclass(frozen=True)
class Patient:
    id: str
    first_name: str
    last_name: str = ""
    phone: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class Professional:
    id: str
    first_name: str
    last_name: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True, order=True)
class CandidateSlot:
    """A generator slot that could not be booked, with the ids of the appointments in its way."""

    start: dt.datetime
    end: dt.datetime
    conflicting_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SessionAppointment:
    session: Session
    appointment: Appointment


@dataclass
class GenerationResult:
    created: list[SessionAppointment] = field(default_factory=list)
    conflicts: list[CandidateSlot] = field(default_factory=list)
    # True when the scan horizon ran out before the requested count was reached.
    horizon_exhausted: bool = False
    requested: int = 0

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.created))


@dataclass(frozen=True)
class NotificationJob:
    appointment_id: str
    fire_at: dt.datetime
    # Identifies this particular registration; a fire callback carrying a stale token is ignored.
    token: str


class SchedulingError(RuntimeError):
    """Base class for errors raised by the scheduling core."""


class ValidationError(SchedulingError, ValueError):
    """Malformed input, rejected before anything is written."""


class NotFoundError(SchedulingError, LookupError):
    pass


class StoreError(SchedulingError):
    pass


class SchedulingConflict(SchedulingError):
    """The requested interval overlaps existing bookings.

    Raised by the booking surface only; the session generator reports conflicts as data.
    """

    def __init__(self, conflicts: list[Appointment]):
        self.conflicts = conflicts
        ids = ", ".join(a.id for a in conflicts)
        super().__init__(f"Interval overlaps existing appointments: {ids}")
