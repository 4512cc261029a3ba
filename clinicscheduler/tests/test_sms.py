from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from clinicscheduler.sms import TwilioSender, is_transient_error, normalize_phone, send_sms


@pytest.mark.parametrize(
    "raw, country_code, expected",
    [
        ("+57 300 111 2233", None, "+573001112233"),
        ("(300) 111-2233", "+57", "+573001112233"),
        ("0300.111.2233", "+57", "+573001112233"),
        ("0057 300 111 2233", None, "+573001112233"),
        ("3001112233", None, "3001112233"),
        ("", "+57", None),
        (None, "+57", None),
        (" - ", "+57", None),
    ],
)
def test_normalize_phone(raw, country_code, expected) -> None:
    assert normalize_phone(raw, country_code) == expected


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.twilio.com")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(code, request=request))


def test_transient_error_classification() -> None:
    assert is_transient_error(httpx.ConnectError("refused"))
    assert is_transient_error(httpx.ReadTimeout("slow"))
    assert is_transient_error(_status_error(503))
    assert is_transient_error(_status_error(429))
    assert not is_transient_error(_status_error(400))
    assert not is_transient_error(RuntimeError("Twilio API error"))


def _patched_client(response: httpx.Response):
    client = MagicMock()
    client.post.return_value = response
    client_cls = MagicMock()
    client_cls.return_value.__enter__.return_value = client
    return patch("clinicscheduler.sms.httpx.Client", client_cls), client


def test_send_sms_posts_form_to_twilio() -> None:
    request = httpx.Request("POST", "https://api.twilio.com")
    ctx, client = _patched_client(httpx.Response(201, json={"sid": "SM1", "status": "queued"}, request=request))

    with ctx:
        sid = send_sms(account_sid="AC1", auth_token="tok", from_number="+15005550006", to="+573001112233", body="Hola")

    assert sid == "SM1"
    url = client.post.call_args.args[0]
    assert url.endswith("/Accounts/AC1/Messages.json")
    assert client.post.call_args.kwargs["data"] == {"From": "+15005550006", "To": "+573001112233", "Body": "Hola"}
    assert client.post.call_args.kwargs["auth"] == ("AC1", "tok")


def test_send_sms_raises_on_http_error() -> None:
    request = httpx.Request("POST", "https://api.twilio.com")
    ctx, _ = _patched_client(httpx.Response(400, json={"code": 21211}, request=request))

    with ctx, pytest.raises(httpx.HTTPStatusError):
        send_sms(account_sid="AC1", auth_token="tok", from_number="+15005550006", to="bad", body="Hola")


def test_unconfigured_sender_fails_every_send() -> None:
    sender = TwilioSender(account_sid=None, auth_token=None, from_number=None)

    assert sender.configured is False
    with pytest.raises(RuntimeError, match="not configured"):
        sender("+573001112233", "Hola")


def test_configured_sender_delegates_to_send_sms() -> None:
    sender = TwilioSender(account_sid="AC1", auth_token="tok", from_number="+15005550006")

    with patch("clinicscheduler.sms.send_sms") as send:
        sender("+573001112233", "Hola")

    assert send.call_args.kwargs["to"] == "+573001112233"
    assert send.call_args.kwargs["body"] == "Hola"
