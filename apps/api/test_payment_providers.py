"""Provider adapters: callback signatures, callback parsing and the ZenoPay checkout call"""
import asyncio
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from exceptions import ExternalProviderError, ValidationError
from models import PaymentStatus
from services.payment_providers import (
    BuyerInfo, ControlNumberProvider, MobileMoneyProvider, ProviderCallback,
    ZenoPayProvider, build_provider_adapters, normalize_status,
)

BODY = json.dumps({"control_number": "CN123", "amount": 100, "status": "success", "provider_tx_id": "T1"}).encode()


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ==================== SIGNATURES ====================

def test_signature_checked_when_secret_configured(monkeypatch):
    monkeypatch.setenv("BANK_WEBHOOK_SECRET", "s3cret")
    adapter = ControlNumberProvider()

    assert adapter.verify_callback_signature(BODY, {"x-signature": sign("s3cret", BODY)})
    assert not adapter.verify_callback_signature(BODY, {"x-signature": sign("wrong", BODY)})
    assert not adapter.verify_callback_signature(BODY, {})
    assert not adapter.verify_callback_signature(BODY + b" ", {"x-signature": sign("s3cret", BODY)})


def test_unsigned_callbacks_rejected_in_production(monkeypatch):
    monkeypatch.delenv("MOMO_WEBHOOK_SECRET", raising=False)
    adapter = MobileMoneyProvider()

    monkeypatch.setenv("ENVIRONMENT", "production")
    assert not adapter.verify_callback_signature(BODY, {})

    monkeypatch.setenv("ENVIRONMENT", "development")
    assert adapter.verify_callback_signature(BODY, {})


def test_zenopay_accepts_its_own_header(monkeypatch):
    monkeypatch.setenv("ZENOPAY_WEBHOOK_SECRET", "zeno")
    adapter = ZenoPayProvider()
    assert adapter.verify_callback_signature(BODY, {"x-zenopay-signature": sign("zeno", BODY)})


# ==================== CALLBACK PARSING ====================

def test_normalize_status():
    assert normalize_status("SUCCESS") == PaymentStatus.SUCCESS
    assert normalize_status("completed") == PaymentStatus.SUCCESS
    assert normalize_status("cancelled") == PaymentStatus.FAILED
    assert normalize_status("pending") is None
    assert normalize_status(None) is None


def test_parse_callback_prefers_reference_then_control_number():
    adapter = ControlNumberProvider()
    callback = adapter.parse_callback(json.loads(BODY))

    assert callback.reference == "CN123"
    assert callback.control_number == "CN123"
    assert callback.amount == Decimal("100.00")
    assert callback.status == PaymentStatus.SUCCESS
    assert callback.external_tx_id == "T1"
    assert callback.method == "bank_transfer"
    assert callback.provider == "control"

    callback = ProviderCallback.from_dict({"reference": "ZP-1", "status": "failed"})
    assert callback.reference == "ZP-1"
    assert callback.provider is None
    assert callback.control_number is None
    assert callback.amount is None


def test_parse_callback_rejects_malformed_bodies():
    with pytest.raises(ValidationError):
        ProviderCallback.from_dict({"status": "success"})
    with pytest.raises(ValidationError):
        ProviderCallback.from_dict({"reference": "R", "amount": "lots"})


def test_build_provider_adapters():
    adapters = build_provider_adapters()
    assert set(adapters) == {"control", "mobile_money", "zenopay"}


# ==================== ZENOPAY CHECKOUT ====================

def test_zenopay_initiate_posts_form_and_normalizes_response(monkeypatch):
    monkeypatch.setenv("ZENOPAY_BASE_URL", "https://zeno.test/api")
    monkeypatch.setenv("ZENOPAY_API_KEY", "key")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"status": "success", "order_id": "ZP-77", "payment_url": "https://zeno.test/pay/77"})

    adapter = ZenoPayProvider(transport=httpx.MockTransport(handler))
    checkout = asyncio.run(adapter.initiate(5, Decimal("25.50"), BuyerInfo(name="Asha", phone="0712345678")))

    assert checkout.reference == "ZP-77"
    assert checkout.checkout_url == "https://zeno.test/pay/77"
    assert seen["url"] == "https://zeno.test/api"
    assert seen["body"]["amount"] == "25.50"
    assert seen["body"]["buyer_name"] == "Asha"
    assert seen["body"]["api_key"] == "key"
    assert seen["body"]["order_id"].startswith("CN-5-")
    assert "buyer_email" not in seen["body"]


def test_zenopay_error_payload_raises():
    def handler(request):
        return httpx.Response(400, json={"status": "error", "message": "Invalid API key"})

    adapter = ZenoPayProvider(transport=httpx.MockTransport(handler))
    with pytest.raises(ExternalProviderError) as exc:
        asyncio.run(adapter.initiate(1, Decimal("10"), BuyerInfo()))
    assert exc.value.message == "Invalid API key"
    assert not exc.value.timed_out


def test_zenopay_timeout_is_flagged():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    adapter = ZenoPayProvider(transport=httpx.MockTransport(handler))
    with pytest.raises(ExternalProviderError) as exc:
        asyncio.run(adapter.initiate(1, Decimal("10"), BuyerInfo()))
    assert exc.value.timed_out


def test_mobile_money_push_gateway(monkeypatch):
    monkeypatch.setenv("MOMO_PUSH_URL", "https://momo.test/push")

    def handler(request):
        payload = json.loads(request.content)
        assert payload["operator"] == "airtel"
        return httpx.Response(202, json={"reference": "AIR-1"})

    adapter = MobileMoneyProvider(transport=httpx.MockTransport(handler))
    checkout = asyncio.run(adapter.initiate(3, Decimal("5"), BuyerInfo(), {"phone": "0688000000", "provider": "airtel"}))
    assert checkout.reference == "AIR-1"


def test_caller_supplied_reference_is_sent_to_the_provider():
    seen = {}

    def handler(request):
        seen["body"] = dict(httpx.QueryParams(request.content.decode()))
        raise httpx.ReadTimeout("slow", request=request)

    adapter = ZenoPayProvider(transport=httpx.MockTransport(handler))
    reference = adapter.new_reference(9)
    with pytest.raises(ExternalProviderError):
        asyncio.run(adapter.initiate(9, Decimal("10"), BuyerInfo(), reference=reference))

    assert reference.startswith("CN-9-")
    assert seen["body"]["order_id"] == reference
    assert MobileMoneyProvider().new_reference(9).startswith("PUSH-9-")
