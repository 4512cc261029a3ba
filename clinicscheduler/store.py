from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from clinicscheduler.domain import (
    Appointment,
    AppointmentStatus,
    NotFoundError,
    Patient,
    Plan,
    Professional,
    Session,
    StoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_TABLES = ("patients", "professionals", "plans", "sessions", "appointments")
_DATETIME_FIELDS = {"start", "end"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _require_aware(value: dt.datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{name} must be timezone-aware, got naive {value.isoformat()}")


def _to_json(record: Any) -> dict[str, Any]:
    data = dataclasses.asdict(record)
    for key, value in data.items():
        if isinstance(value, dt.datetime):
            data[key] = value.isoformat()
        elif isinstance(value, AppointmentStatus):
            data[key] = value.value
    return data


def _appointment_from_json(raw: dict[str, Any]) -> Appointment:
    data = dict(raw)
    for key in _DATETIME_FIELDS:
        data[key] = dt.datetime.fromisoformat(data[key])
    data["status"] = AppointmentStatus(data.get("status", AppointmentStatus.SCHEDULED.value))
    return Appointment(**data)


_LOADERS = {
    "patients": lambda raw: Patient(**raw),
    "professionals": lambda raw: Professional(**raw),
    "plans": lambda raw: Plan(**raw),
    "sessions": lambda raw: Session(**raw),
    "appointments": _appointment_from_json,
}


def load_state(path: str) -> dict[str, dict[str, Any]]:
    tables: dict[str, dict[str, Any]] = {name: {} for name in _TABLES}
    if not os.path.exists(path):
        return tables

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        # Unlike a cache, this file is the source of truth; refuse to start on top of it.
        raise StoreError(f"Store file {path} is corrupted: {e}") from e

    for name in _TABLES:
        for item in raw.get(name, []):
            try:
                record = _LOADERS[name](item)
            except (TypeError, ValueError, KeyError) as e:
                raise StoreError(f"Invalid {name} record in {path}: {item!r}") from e
            tables[name][record.id] = record
    return tables


def save_state(path: str, tables: dict[str, dict[str, Any]]) -> None:
    """Writes every table to a temp file next to ``path`` and swaps it in with ``os.replace``."""
    payload = {name: [_to_json(r) for r in tables[name].values()] for name in _TABLES}
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=".clinic-", suffix=".json.tmp", dir=folder)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        os.replace(tmp_name, path)
    except BaseException:
        # Never leave a half-written temp file behind.
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class Store:
    """Appointment, session and plan records.

    Records are immutable dataclasses; every change replaces the stored record. All mutations
    run inside ``transaction()``: nested calls join the outer transaction, an exception restores
    every table to its state at the start of the outermost one, and a successful outermost
    transaction is written to ``path`` (when given).
    """

    def __init__(self, path: str | None = None):
        self._path = path
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = load_state(path) if path else {name: {} for name in _TABLES}
        if path:
            logger.info("Store loaded from %s (appointments=%d)", path, len(self._tables["appointments"]))

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        with self._lock:
            snapshot = {name: dict(rows) for name, rows in self._tables.items()} if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if snapshot is not None:
                    self._tables = snapshot
                raise
            self._depth -= 1
            if self._depth == 0 and self._path:
                try:
                    save_state(self._path, self._tables)
                except OSError as e:
                    self._tables = snapshot  # type: ignore[assignment]
                    raise StoreError(f"Failed to write store file {self._path}: {e}") from e

    # --- patients / professionals ---

    def add_patient(self, patient: Patient) -> Patient:
        with self.transaction():
            self._tables["patients"][patient.id] = patient
        return patient

    def find_patient(self, patient_id: str) -> Patient | None:
        with self._lock:
            return self._tables["patients"].get(patient_id)

    def add_professional(self, professional: Professional) -> Professional:
        with self.transaction():
            self._tables["professionals"][professional.id] = professional
        return professional

    def find_professional(self, professional_id: str) -> Professional | None:
        with self._lock:
            return self._tables["professionals"].get(professional_id)

    # --- plans ---

    def create_plan(self, patient_id: str, target_sessions: int, *, active: bool = True) -> Plan:
        if target_sessions < 1:
            raise ValidationError("target_sessions must be >= 1")
        plan = Plan(id=_new_id(), patient_id=patient_id, target_sessions=target_sessions, active=active)
        with self.transaction():
            self._tables["plans"][plan.id] = plan
        return plan

    def get_plan(self, plan_id: str) -> Plan:
        with self._lock:
            plan = self._tables["plans"].get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")
        return plan

    def update_plan(self, plan_id: str, **fields: Any) -> Plan:
        with self.transaction():
            plan = dataclasses.replace(self.get_plan(plan_id), **fields)
            if plan.completed_sessions > plan.target_sessions:
                raise ValidationError(
                    f"Plan {plan_id}: completed sessions ({plan.completed_sessions}) "
                    f"would exceed target ({plan.target_sessions})"
                )
            self._tables["plans"][plan_id] = plan
        return plan

    # --- sessions ---

    def create_session(self, plan_id: str, ordinal: int, *, notes: str | None = None) -> Session:
        with self.transaction():
            self.get_plan(plan_id)
            session = Session(id=_new_id(), plan_id=plan_id, ordinal=ordinal, notes=notes)
            self._tables["sessions"][session.id] = session
        return session

    def get_session(self, session_id: str) -> Session:
        with self._lock:
            session = self._tables["sessions"].get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def update_session(self, session_id: str, **fields: Any) -> Session:
        with self.transaction():
            session = dataclasses.replace(self.get_session(session_id), **fields)
            self._tables["sessions"][session_id] = session
        return session

    def list_sessions(self, plan_id: str) -> list[Session]:
        with self._lock:
            sessions = [s for s in self._tables["sessions"].values() if s.plan_id == plan_id]
        return sorted(sessions, key=lambda s: (s.ordinal, s.id))

    def next_ordinal(self, plan_id: str) -> int:
        return max((s.ordinal for s in self.list_sessions(plan_id)), default=0) + 1

    def link_to_appointment(self, session_id: str, appointment_id: str) -> tuple[Session, Appointment]:
        with self.transaction():
            session = self.update_session(session_id, appointment_id=appointment_id)
            appointment = self.update_appointment(appointment_id, session_id=session_id)
        return session, appointment

    def unlink_appointment(self, appointment_id: str) -> Session | None:
        """Detaches the session linked to an appointment; the session goes back to pending."""
        with self.transaction():
            session = self.find_session_for_appointment(appointment_id)
            if session is None:
                return None
            session = self.update_session(session.id, appointment_id=None)
            if self.find_appointment(appointment_id) is not None:
                self.update_appointment(appointment_id, session_id=None)
        return session

    def find_session_for_appointment(self, appointment_id: str) -> Session | None:
        with self._lock:
            for session in self._tables["sessions"].values():
                if session.appointment_id == appointment_id:
                    return session
        return None

    # --- appointments ---

    def create_appointment(
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
    ) -> Appointment:
        _require_aware(start, "start")
        _require_aware(end, "end")
        if end <= start:
            raise ValidationError(f"Appointment end ({end.isoformat()}) must be after start ({start.isoformat()})")

        appointment = Appointment(
            id=_new_id(),
            patient_id=patient_id,
            start=start,
            end=end,
            professional_id=professional_id,
            resource_id=resource_id,
            title=title,
            status=status,
            notification_enabled=notification_enabled,
        )
        with self.transaction():
            self._tables["appointments"][appointment.id] = appointment
        return appointment

    def find_appointment(self, appointment_id: str) -> Appointment | None:
        with self._lock:
            return self._tables["appointments"].get(appointment_id)

    def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.find_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment not found: {appointment_id}")
        return appointment

    def update_appointment(self, appointment_id: str, **fields: Any) -> Appointment:
        with self.transaction():
            appointment = dataclasses.replace(self.get_appointment(appointment_id), **fields)
            _require_aware(appointment.start, "start")
            _require_aware(appointment.end, "end")
            if appointment.end <= appointment.start:
                raise ValidationError(f"Appointment {appointment_id}: end must be after start")
            self._tables["appointments"][appointment_id] = appointment
        return appointment

    def delete_appointment(self, appointment_id: str) -> Appointment:
        with self.transaction():
            appointment = self.get_appointment(appointment_id)
            del self._tables["appointments"][appointment_id]
        return appointment

    def list_in_range(
        self,
        start: dt.datetime,
        end: dt.datetime,
        *,
        professional_id: str | None = None,
        patient_id: str | None = None,
        include_cancelled: bool = True,
    ) -> list[Appointment]:
        """Appointments whose start falls within [start, end], ordered by start."""
        _require_aware(start, "start")
        _require_aware(end, "end")
        with self._lock:
            rows = [
                a
                for a in self._tables["appointments"].values()
                if start <= a.start <= end
                and (professional_id is None or a.professional_id == professional_id)
                and (patient_id is None or a.patient_id == patient_id)
                and (include_cancelled or not a.is_cancelled)
            ]
        return sorted(rows, key=lambda a: (a.start, a.id))

    def list_by_professional(
        self,
        professional_id: str,
        *,
        window_start: dt.datetime | None = None,
        window_end: dt.datetime | None = None,
    ) -> list[Appointment]:
        """Appointments of a professional, optionally only those intersecting [window_start, window_end)."""
        return self._list_by("professional_id", professional_id, window_start, window_end)

    def list_by_resource(
        self,
        resource_id: str,
        *,
        window_start: dt.datetime | None = None,
        window_end: dt.datetime | None = None,
    ) -> list[Appointment]:
        return self._list_by("resource_id", resource_id, window_start, window_end)

    def _list_by(
        self,
        attr: str,
        value: str,
        window_start: dt.datetime | None,
        window_end: dt.datetime | None,
    ) -> list[Appointment]:
        with self._lock:
            rows = [
                a
                for a in self._tables["appointments"].values()
                if getattr(a, attr) == value
                and (window_end is None or a.start < window_end)
                and (window_start is None or a.end > window_start)
            ]
        return sorted(rows, key=lambda a: (a.start, a.id))

    def reminder_details(self, appointment_id: str) -> tuple[str | None, str | None, str | None]:
        """(patient phone, patient name, professional name) for an appointment."""
        appointment = self.get_appointment(appointment_id)
        patient = self.find_patient(appointment.patient_id)
        professional = self.find_professional(appointment.professional_id) if appointment.professional_id else None
        return (
            patient.phone if patient else None,
            patient.display_name if patient else None,
            professional.display_name if professional else None,
        )
