from __future__ import annotations

import re

import httpx

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"

_PHONE_SEPARATORS_RE = re.compile(r"[\s\-\.\(\)]")


def normalize_phone(raw: str | None, default_country_code: str | None = None) -> str | None:
    """Best-effort cleanup of a stored patient number. Returns None when there is nothing to dial."""
    if not raw:
        return None
    phone = _PHONE_SEPARATORS_RE.sub("", raw)
    if not phone:
        return None
    if phone.startswith("00"):
        phone = "+" + phone[2:]
    if not phone.startswith("+") and default_country_code:
        phone = default_country_code + phone.lstrip("0")
    return phone


def is_transient_error(exc: BaseException) -> bool:
    # Network trouble, throttling and Twilio-side 5xx are worth another try; 4xx are not.
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def send_sms(
    *,
    account_sid: str,
    auth_token: str,
    from_number: str,
    to: str,
    body: str,
    timeout_seconds: float = 20.0,
) -> str:
    """Sends one SMS through the Twilio Messages API and returns the message SID."""
    url = f"{TWILIO_API_URL}/Accounts/{account_sid}/Messages.json"
    payload = {
        "From": from_number,
        "To": to,
        "Body": body,
    }

    with httpx.Client(timeout=timeout_seconds) as client:
        r = client.post(url, data=payload, auth=(account_sid, auth_token))
        r.raise_for_status()
        data = r.json()
        if data.get("error_code") or data.get("status") == "failed":
            raise RuntimeError(f"Twilio API error: {data}")
        return str(data.get("sid", ""))


class TwilioSender:
    """The message-send capability the notification scheduler depends on: ``sender(to, body)``.

    Raises on any failure; missing credentials count as a transport error.
    """

    def __init__(
        self,
        *,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        timeout_seconds: float = 20.0,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    def __call__(self, to: str, body: str) -> None:
        if not self.configured:
            raise RuntimeError("Twilio client not configured (TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM)")
        send_sms(
            account_sid=self._account_sid,  # type: ignore[arg-type]
            auth_token=self._auth_token,  # type: ignore[arg-type]
            from_number=self._from_number,  # type: ignore[arg-type]
            to=to,
            body=body,
            timeout_seconds=self._timeout_seconds,
        )
