"""
Payment provider adapters.
Each adapter wraps one provider: starting a checkout, authenticating its
callbacks and normalizing callback bodies into ProviderCallback.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import httpx

from exceptions import ExternalProviderError, ValidationError
from models import PaymentStatus

logger = logging.getLogger(__name__)

SUCCESS_WORDS = {"success", "successful", "succeeded", "completed", "paid", "settled"}
FAILURE_WORDS = {"failed", "failure", "error", "cancelled", "canceled", "rejected", "declined", "expired"}


def normalize_status(raw: Any) -> Optional[PaymentStatus]:
    """Map a provider status word to ours; None means still pending"""
    word = str(raw or "").strip().lower()
    if word in SUCCESS_WORDS:
        return PaymentStatus.SUCCESS
    if word in FAILURE_WORDS:
        return PaymentStatus.FAILED
    return None


def _to_amount(raw: Any) -> Optional[Decimal]:
    if raw in (None, ""):
        return None
    try:
        return Decimal(str(raw)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError("amount must be a number")


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass
class BuyerInfo:
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ProviderCheckout:
    reference: str
    checkout_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderCallback:
    """A provider's asynchronous status report in canonical form"""
    reference: str
    status: Optional[PaymentStatus]
    amount: Optional[Decimal] = None
    external_tx_id: Optional[str] = None
    control_number: Optional[str] = None
    method: Optional[str] = None
    # Adapter that authenticated the callback; None for operator-entered reports
    provider: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        body: Mapping[str, Any],
        method: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> "ProviderCallback":
        control_number = body.get("control_number")
        reference = body.get("reference") or control_number
        if not reference:
            raise ValidationError("reference or control_number required")
        return cls(
            reference=str(reference),
            status=normalize_status(body.get("status")),
            amount=_to_amount(body.get("amount")),
            external_tx_id=str(body["provider_tx_id"]) if body.get("provider_tx_id") else None,
            control_number=str(control_number) if control_number else None,
            method=method,
            provider=provider,
            raw=dict(body),
        )


def verify_hmac_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    """HMAC-SHA256 hex digest of the raw request body"""
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, (signature or "").strip().lower())


class ProviderAdapter(ABC):
    """Narrow contract around one payment provider"""

    name: str
    # Method recorded on payments that arrive only through callbacks
    settlement_method: str
    webhook_secret_env: str
    signature_headers = ("x-signature",)
    reference_prefix = "CN"

    def new_reference(self, invoice_id: int) -> str:
        return f"{self.reference_prefix}-{invoice_id}-{_millis()}"

    @abstractmethod
    async def initiate(
        self,
        invoice_id: int,
        amount: Decimal,
        buyer: BuyerInfo,
        fields: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> ProviderCheckout:
        """Start a checkout; `reference` is sent to the provider when given"""

    def verify_callback_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        secret = os.getenv(self.webhook_secret_env, "")
        if not secret:
            if os.getenv("ENVIRONMENT", "development").lower() == "production":
                logger.error(f"{self.webhook_secret_env} not configured; rejecting {self.name} callback")
                return False
            logger.warning(f"{self.webhook_secret_env} not configured; accepting unsigned {self.name} callback")
            return True
        signature = next((headers.get(h) for h in self.signature_headers if headers.get(h)), "")
        if not signature:
            return False
        return verify_hmac_signature(secret, raw_body, signature)

    def parse_callback(self, body: Mapping[str, Any]) -> ProviderCallback:
        return ProviderCallback.from_dict(body, method=self.settlement_method, provider=self.name)


class ControlNumberProvider(ProviderAdapter):
    """Bank-style payment against a reference the payer quotes at the counter"""

    name = "control"
    settlement_method = "bank_transfer"
    webhook_secret_env = "BANK_WEBHOOK_SECRET"

    async def initiate(self, invoice_id, amount, buyer, fields=None, reference=None) -> ProviderCheckout:
        return ProviderCheckout(reference=reference or self.new_reference(invoice_id))


class MobileMoneyProvider(ProviderAdapter):
    """Push-to-pay: the payer gets a USSD/STK prompt on their phone"""

    name = "mobile_money"
    settlement_method = "mobile_money"
    webhook_secret_env = "MOMO_WEBHOOK_SECRET"
    reference_prefix = "PUSH"

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.push_url = os.getenv("MOMO_PUSH_URL", "")
        self.api_key = os.getenv("MOMO_API_KEY", "")
        self.timeout = timeout
        self.transport = transport

    async def initiate(self, invoice_id, amount, buyer, fields=None, reference=None) -> ProviderCheckout:
        fields = fields or {}
        operator = fields.get("provider")
        phone = fields.get("phone") or buyer.phone
        if not operator:
            raise ValidationError("provider required")
        if not phone:
            raise ValidationError("phone required")

        reference = reference or self.new_reference(invoice_id)
        if not self.push_url:
            # No operator gateway configured; the prompt is simulated
            logger.info(f"[SIMULATED PUSH] {operator} {phone} amount {amount} ref {reference}")
            return ProviderCheckout(reference=reference, raw={"operator": operator, "phone": phone})

        payload = {"reference": reference, "amount": str(amount), "phone": phone, "operator": operator}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.push_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.TimeoutException as e:
            raise ExternalProviderError("Mobile money push timed out", details=str(e), timed_out=True)
        except httpx.HTTPError as e:
            raise ExternalProviderError("Mobile money push failed", details=str(e))

        if response.status_code >= 400:
            raise ExternalProviderError(f"Mobile money push rejected ({response.status_code})")
        data = response.json() if response.content else {}
        return ProviderCheckout(reference=data.get("reference") or reference, raw=data)


class ZenoPayProvider(ProviderAdapter):
    """Hosted checkout through ZenoPay"""

    name = "zenopay"
    settlement_method = "zenopay"
    webhook_secret_env = "ZENOPAY_WEBHOOK_SECRET"
    signature_headers = ("x-zenopay-signature", "x-signature")

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = os.getenv("ZENOPAY_BASE_URL", "https://api.zeno.africa").rstrip("/")
        self.api_key = os.getenv("ZENOPAY_API_KEY", "")
        self.secret_key = os.getenv("ZENOPAY_SECRET_KEY", "")
        self.account_id = os.getenv("ZENOPAY_ACCOUNT_ID", "")
        self.callback_url = os.getenv("ZENOPAY_CALLBACK_URL", "")
        self.return_url = os.getenv("ZENOPAY_RETURN_URL", "")
        self.timeout = timeout
        self.transport = transport

    async def initiate(self, invoice_id, amount, buyer, fields=None, reference=None) -> ProviderCheckout:
        order_id = reference or self.new_reference(invoice_id)
        form = {
            "amount": str(amount),
            "order_id": order_id,
        }
        optional = {
            "buyer_name": buyer.name,
            "buyer_phone": buyer.phone,
            "buyer_email": buyer.email,
            "account_id": self.account_id,
            "api_key": self.api_key,
            "secret_key": self.secret_key,
            "callback_url": self.callback_url,
            "return_url": self.return_url,
        }
        form.update({k: v for k, v in optional.items() if v})

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.base_url, data=form)
        except httpx.TimeoutException as e:
            raise ExternalProviderError("ZenoPay initiate timed out", details=str(e), timed_out=True)
        except httpx.HTTPError as e:
            raise ExternalProviderError("ZenoPay initiate failed", details=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if response.status_code >= 400 or data.get("status") == "error":
            message = data.get("message") or data.get("error") or "ZenoPay initiate failed"
            raise ExternalProviderError(message, details={"status_code": response.status_code})

        return ProviderCheckout(
            reference=data.get("reference") or data.get("order_id") or order_id,
            checkout_url=data.get("checkout_url") or data.get("link") or data.get("payment_url"),
            raw=data,
        )


# Public webhook path segment -> adapter name
WEBHOOK_ALIASES = {
    "bank": "control",
    "control": "control",
    "mobile-money": "mobile_money",
    "mobile_money": "mobile_money",
    "zenopay": "zenopay",
}


def build_provider_adapters(timeout: float = 15.0) -> Dict[str, ProviderAdapter]:
    adapters = [
        ControlNumberProvider(),
        MobileMoneyProvider(timeout=timeout),
        ZenoPayProvider(timeout=timeout),
    ]
    return {adapter.name: adapter for adapter in adapters}
