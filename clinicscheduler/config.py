from __future__ import annotations

import os
import re
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

_E164_RE = re.compile(r"^\+\d{8,15}$")
_COUNTRY_CODE_RE = re.compile(r"^\+\d{1,4}$")


def _parse_from_number(raw: str | None) -> str | None:
    # TWILIO_FROM is optional, but when it is set it must be a full E.164 number,
    # e.g. TWILIO_FROM=+573001234567
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    if not _E164_RE.match(value):
        raise RuntimeError(f"Invalid TWILIO_FROM value: {value!r}. Expected E.164 number like +573001234567.")
    return value


def _parse_country_code(raw: str | None) -> str | None:
    if raw is None or not raw.strip():
        return None
    value = raw.strip()
    if not value.startswith("+"):
        value = "+" + value
    if not _COUNTRY_CODE_RE.match(value):
        raise RuntimeError(f"Invalid DEFAULT_COUNTRY_CODE value: {raw!r}. Expected something like +57.")
    return value


def _int_env(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected an integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from: str | None = None

    # Prefix for patient numbers stored without "+".
    default_country_code: str | None = None

    notification_lead_minutes: int = 30
    reschedule_days_ahead: int = 7
    # 0 disables the periodic sweep; the startup sweep always runs.
    reschedule_interval_seconds: int = 3600

    # Failed sends per appointment before we stop retrying it (dead letter).
    max_send_attempts: int = 3
    # Retries of transient transport errors within a single send.
    send_retry_attempts: int = 2

    generator_max_scan_days: int = 366

    clinic_timezone: str = "UTC"
    store_file: str = "clinic.json"

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.clinic_timezone)


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    clinic_timezone = os.getenv("CLINIC_TIMEZONE", "UTC").strip() or "UTC"
    try:
        ZoneInfo(clinic_timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise RuntimeError(f"Invalid CLINIC_TIMEZONE value: {clinic_timezone!r}") from e

    return Settings(
        twilio_account_sid=_optional("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=_optional("TWILIO_AUTH_TOKEN"),
        twilio_from=_parse_from_number(os.getenv("TWILIO_FROM")),
        default_country_code=_parse_country_code(os.getenv("DEFAULT_COUNTRY_CODE")),
        notification_lead_minutes=_int_env("NOTIFICATION_LEAD_MINUTES", 30, minimum=0),
        reschedule_days_ahead=_int_env("RESCHEDULE_DAYS_AHEAD", 7, minimum=1),
        reschedule_interval_seconds=_int_env("RESCHEDULE_INTERVAL_SECONDS", 3600, minimum=0),
        max_send_attempts=_int_env("MAX_SEND_ATTEMPTS", 3, minimum=1),
        send_retry_attempts=_int_env("SEND_RETRY_ATTEMPTS", 2, minimum=1),
        generator_max_scan_days=_int_env("GENERATOR_MAX_SCAN_DAYS", 366, minimum=1),
        clinic_timezone=clinic_timezone,
        store_file=os.getenv("STORE_FILE", "clinic.json").strip() or "clinic.json",
    )
