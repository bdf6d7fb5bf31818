"""Out-of-band notification channels: SMS via Twilio, email via SendGrid"""
import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from exceptions import ExternalProviderError
from models import DeliveryChannel

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    ok: bool
    provider_response: Optional[Any] = None


class NotificationChannel(ABC):
    """send(target, message) -> DeliveryResult; failures raise ExternalProviderError"""

    kind: DeliveryChannel

    @abstractmethod
    def send(self, target: str, message: str, subject: Optional[str] = None) -> DeliveryResult:
        ...


def normalize_msisdn(phone: str) -> str:
    """Normalize a local number to E.164 (+255 default country code)"""
    s = "".join(str(phone or "").split())
    country = os.getenv("DEFAULT_COUNTRY_CODE", "255")
    if s.startswith("+"):
        return s
    if s.startswith("0"):
        return f"+{country}{s[1:]}"
    if s.startswith(country) and s.isdigit():
        return f"+{s}"
    return s


class TwilioSmsChannel(NotificationChannel):
    kind = DeliveryChannel.SMS

    def __init__(self):
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.sms_from = os.getenv("TWILIO_SMS_FROM")  # e.g., +1234567890

        if self.account_sid and self.auth_token:
            self.client = Client(self.account_sid, self.auth_token)
        else:
            self.client = None
            logger.warning("Twilio credentials not configured. SMS will be simulated.")

    def _is_configured(self) -> bool:
        return self.client is not None and bool(self.sms_from)

    def send(self, target: str, message: str, subject: Optional[str] = None) -> DeliveryResult:
        to_phone = normalize_msisdn(target)
        if not self._is_configured():
            logger.info(f"[SIMULATED SMS] To: {to_phone}, Message: {message}")
            return DeliveryResult(ok=True, provider_response="simulated_message_sid")

        try:
            message_obj = self.client.messages.create(
                from_=self.sms_from,
                body=message,
                to=to_phone
            )
        except TwilioRestException as e:
            raise ExternalProviderError("SMS send failed", details=str(e))
        return DeliveryResult(ok=True, provider_response=message_obj.sid)


class SendGridEmailChannel(NotificationChannel):
    kind = DeliveryChannel.EMAIL

    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = os.getenv("SENDGRID_API_KEY", "")
        self.from_email = os.getenv("SENDGRID_FROM_EMAIL", "")
        self.from_name = os.getenv("SENDGRID_FROM_NAME", "CareLink HMS")
        self.timeout = timeout
        self.transport = transport

    def send(self, target: str, message: str, subject: Optional[str] = None) -> DeliveryResult:
        if not self.api_key or not self.from_email:
            logger.info(f"[SIMULATED EMAIL] To: {target}, Subject: {subject}")
            return DeliveryResult(ok=True, provider_response="simulated")

        payload = {
            "personalizations": [{"to": [{"email": target}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject or "Notification",
            "content": [{"type": "text/plain", "value": message}],
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise ExternalProviderError("Email send failed", details=str(e))

        if response.status_code >= 400:
            raise ExternalProviderError(
                f"SendGrid send failed ({response.status_code})",
                details=response.text[:500],
            )
        return DeliveryResult(ok=True, provider_response=response.headers.get("X-Message-Id"))


def default_channels() -> List[NotificationChannel]:
    return [TwilioSmsChannel(), SendGridEmailChannel()]
