"""Payment initiation, status and provider webhook endpoints"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlmodel import Session, select
from typing import List, Optional
import html
import json
import logging

from database import get_session
from models import Invoice, Patient, Payment, User, UserRole, enum_value
from dependencies import get_current_user, get_payment_manager
from exceptions import NotFound, PermissionDenied, Unauthorized, ValidationError
from schemas import PaymentInitiateRequest, PaymentResponse
from services.payment_lifecycle import PaymentLifecycleManager
from services.payment_providers import WEBHOOK_ALIASES
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Rate limiter for payment endpoints
limiter = Limiter(key_func=get_remote_address)

BILLING_STAFF = (UserRole.ADMIN.value, UserRole.MANAGER.value)


def own_patient_ids(user: User, session: Session) -> List[int]:
    return list(session.exec(select(Patient.id).where(Patient.user_id == user.id)).all())


def ensure_invoice_access(user: User, invoice: Invoice, session: Session) -> None:
    """Patients may only touch their own invoices; billing staff may touch any"""
    role = enum_value(user.role)
    if role in BILLING_STAFF:
        return
    if role == UserRole.PATIENT.value and invoice.patient_id in own_patient_ids(user, session):
        return
    raise PermissionDenied("Not authorized")


def ensure_payment_access(user: User, payment: Payment, session: Session) -> None:
    role = enum_value(user.role)
    if role in BILLING_STAFF:
        return
    if role == UserRole.PATIENT.value and payment.patient_id in own_patient_ids(user, session):
        return
    raise PermissionDenied("Not authorized")


@router.post("/initiate", response_model=PaymentResponse)
@limiter.limit("10/minute")
async def initiate_payment(
    request: Request,
    data: PaymentInitiateRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Start a payment attempt for an invoice (rate limited to prevent abuse)"""
    invoice = manager.get_invoice(data.invoice_id)
    ensure_invoice_access(current_user, invoice, session)

    fields = data.model_dump(exclude={"invoice_id", "method", "amount"}, exclude_none=True)
    payment = await manager.initiate(invoice.id, data.method, fields, amount=data.amount)
    return payment


@router.get("/status/{reference}", response_model=PaymentResponse)
def payment_status(
    reference: str,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Latest payment attempt for a provider reference"""
    payment = manager.payment_by_reference(reference)
    ensure_payment_access(current_user, payment, session)
    return payment


@router.get("", response_model=List[PaymentResponse])
def list_payments(
    status: Optional[str] = None,
    method: Optional[str] = None,
    invoice_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List payments; patients only see their own"""
    query = select(Payment)

    if enum_value(current_user.role) == UserRole.PATIENT.value:
        query = query.where(Payment.patient_id.in_(own_patient_ids(current_user, session)))
    elif enum_value(current_user.role) not in BILLING_STAFF:
        raise PermissionDenied("Not authorized")

    if status:
        query = query.where(Payment.status == status)
    if method:
        query = query.where(Payment.method == method)
    if invoice_id:
        query = query.where(Payment.invoice_id == invoice_id)

    query = query.order_by(Payment.id.desc()).offset(skip).limit(min(limit, 200))
    return session.exec(query).all()


@router.get("/by-invoice/{invoice_id}", response_model=List[PaymentResponse])
def payments_by_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    invoice = manager.get_invoice(invoice_id)
    ensure_invoice_access(current_user, invoice, session)
    return session.exec(
        select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.id.desc())
    ).all()


@router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    payment = session.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    ensure_payment_access(current_user, payment, session)
    return payment


RECEIPT_TEMPLATE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"/><title>Receipt #{payment_id}</title>
<style>body{{font-family:system-ui,Arial,sans-serif;padding:24px;color:#111}}table{{border-collapse:collapse;margin-top:12px}}td{{padding:4px 8px}}small{{color:#555}}</style>
</head><body>
<h1>Payment Receipt</h1>
<small>CareLink HMS &bull; {timestamp}</small>
<table>
{rows}
</table>
<p><small>For support contact your billing office.</small></p>
</body></html>"""


@router.get("/{payment_id}/receipt", response_class=HTMLResponse)
def payment_receipt(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Printable HTML receipt for one payment"""
    payment = session.get(Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    ensure_payment_access(current_user, payment, session)

    control_number = manager.receipt_control_number(payment)
    patient = session.get(Patient, payment.patient_id) if payment.patient_id else None
    timestamp = payment.updated_at.strftime("%Y-%m-%d %H:%M UTC")
    fields = [
        ("Payment ID", f"#{payment.id}"),
        ("Invoice ID", f"#{payment.invoice_id}" if payment.invoice_id else ""),
        ("Patient", patient.name if patient else ""),
        ("Amount", payment.amount),
        ("Status", enum_value(payment.status)),
        ("Method", payment.method),
        ("Reference", payment.reference or ""),
        ("Control Number", control_number.number if control_number else ""),
        ("Timestamp", timestamp),
    ]
    rows = "\n".join(
        f"<tr><td><b>{label}</b></td><td>{html.escape(str(value))}</td></tr>" for label, value in fields
    )
    return HTMLResponse(RECEIPT_TEMPLATE.format(payment_id=payment.id, timestamp=timestamp, rows=rows))


@webhook_router.post("/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Provider callback. Replays are safe; unknown references are acknowledged and ignored."""
    adapter = manager.providers.get(WEBHOOK_ALIASES.get(provider.lower(), ""))
    if not adapter:
        raise NotFound(f"Unknown provider: {provider}")

    body = await request.body()
    if not adapter.verify_callback_signature(body, request.headers):
        logger.warning(f"Rejected {provider} webhook: invalid signature")
        raise Unauthorized("invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Body must be a JSON object")

    result = await manager.reconcile(adapter.parse_callback(payload))
    return {"ok": True, **result.to_dict()}
