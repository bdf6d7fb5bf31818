"""Out-of-band channels: phone normalization and the SendGrid call"""
import json

import httpx
import pytest

from exceptions import ExternalProviderError
from utils.notification_channels import SendGridEmailChannel, TwilioSmsChannel, normalize_msisdn


def test_normalize_msisdn():
    assert normalize_msisdn("0712 345 678") == "+255712345678"
    assert normalize_msisdn("255712345678") == "+255712345678"
    assert normalize_msisdn("+14155550100") == "+14155550100"


def test_unconfigured_channels_simulate(monkeypatch):
    for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "SENDGRID_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    assert TwilioSmsChannel().send("0712345678", "hello").ok
    assert SendGridEmailChannel().send("a@example.com", "hello", subject="Hi").provider_response == "simulated"


def test_sendgrid_posts_message(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-key")
    monkeypatch.setenv("SENDGRID_FROM_EMAIL", "noreply@carelink-hms.org")
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, headers={"X-Message-Id": "msg-1"})

    channel = SendGridEmailChannel(transport=httpx.MockTransport(handler))
    result = channel.send("doctor@example.com", "On call tonight", subject="Shift")

    assert result.provider_response == "msg-1"
    assert seen["auth"] == "Bearer sg-key"
    assert seen["body"]["subject"] == "Shift"
    assert seen["body"]["personalizations"][0]["to"] == [{"email": "doctor@example.com"}]


def test_sendgrid_rejection_raises(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "sg-key")
    monkeypatch.setenv("SENDGRID_FROM_EMAIL", "noreply@carelink-hms.org")

    channel = SendGridEmailChannel(transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad key")))
    with pytest.raises(ExternalProviderError):
        channel.send("doctor@example.com", "On call tonight")
