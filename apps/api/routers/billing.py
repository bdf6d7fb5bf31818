"""Billing: invoices, control numbers, insurance claims and status metrics"""
from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session, select
from typing import List, Optional
from datetime import date

from database import get_session
from models import ControlNumber, Invoice, User, UserRole, enum_value
from dependencies import get_current_user, get_payment_manager, require_billing_staff
from exceptions import PermissionDenied
from routers.payments import ensure_invoice_access, own_patient_ids
from schemas import (
    ControlNumberCreate, ControlNumberReissueResponse, ControlNumberResponse,
    InsuranceClaimCreate, InsuranceClaimResponse, InsuranceClaimUpdate,
    InvoiceCreate, InvoiceResponse,
)
from services.payment_lifecycle import PaymentLifecycleManager

router = APIRouter(prefix="/api", tags=["Billing & Invoicing"])


def invoice_view(invoice: Invoice, manager: PaymentLifecycleManager) -> InvoiceResponse:
    return InvoiceResponse(
        **invoice.model_dump(exclude={"status"}),
        status=enum_value(invoice.status),
        outstanding=manager.outstanding(invoice),
    )


# ==================== INVOICE ENDPOINTS ====================

@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(
    data: InvoiceCreate,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Create a new invoice"""
    invoice = manager.create_invoice(
        data.patient_id,
        data.amount,
        service_date=data.service_date,
        description=data.description,
        created_by=current_user,
    )
    return invoice_view(invoice, manager)


@router.get("/invoices", response_model=List[InvoiceResponse])
def get_invoices(
    patient_id: Optional[int] = None,
    status: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    skip: int = 0,
    limit: int = Query(50, le=200),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Get list of invoices with filters"""
    query = select(Invoice)

    # Role-based filtering
    role = enum_value(current_user.role)
    if role == UserRole.PATIENT.value:
        query = query.where(Invoice.patient_id.in_(own_patient_ids(current_user, session)))
    elif role not in (UserRole.ADMIN.value, UserRole.MANAGER.value):
        raise PermissionDenied("Not authorized")
    elif patient_id:
        query = query.where(Invoice.patient_id == patient_id)

    if status:
        query = query.where(Invoice.status == status)
    if from_date:
        query = query.where(Invoice.service_date >= from_date)
    if to_date:
        query = query.where(Invoice.service_date <= to_date)

    query = query.order_by(Invoice.id.desc()).offset(skip).limit(limit)
    return [invoice_view(inv, manager) for inv in session.exec(query).all()]


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(
    invoice_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    invoice = manager.get_invoice(invoice_id)
    ensure_invoice_access(current_user, invoice, session)
    return invoice_view(invoice, manager)


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceResponse)
def void_invoice(
    invoice_id: int,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    return invoice_view(manager.void_invoice(invoice_id), manager)


@router.post("/invoices/{invoice_id}/mark-paid", response_model=InvoiceResponse)
def mark_invoice_paid(
    invoice_id: int,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Manual settlement override"""
    return invoice_view(manager.mark_invoice_paid(invoice_id), manager)


# ==================== CONTROL NUMBER ENDPOINTS ====================

@router.post("/control-numbers", response_model=ControlNumberResponse, status_code=status.HTTP_201_CREATED)
def create_control_number(
    data: ControlNumberCreate,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Issue a control number for the invoice's outstanding balance"""
    return manager.generate_control_number(data.invoice_id, provider=data.provider, expiry_at=data.expiry_at)


@router.get("/control-numbers", response_model=List[ControlNumberResponse])
def list_control_numbers(
    invoice_id: Optional[int] = None,
    status: Optional[str] = None,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_billing_staff),
):
    query = select(ControlNumber)
    if invoice_id:
        query = query.where(ControlNumber.invoice_id == invoice_id)
    if status:
        query = query.where(ControlNumber.status == status)
    return session.exec(query.order_by(ControlNumber.id.desc()).limit(100)).all()


@router.post("/control-numbers/{control_number_id}/cancel", response_model=ControlNumberResponse)
def cancel_control_number(
    control_number_id: int,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    return manager.cancel_control_number(control_number_id)


@router.post("/control-numbers/{control_number_id}/reissue", response_model=ControlNumberReissueResponse)
def reissue_control_number(
    control_number_id: int,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Retire a control number and issue a new one for the remaining balance"""
    return manager.reissue_control_number(control_number_id)


# ==================== INSURANCE CLAIM ENDPOINTS ====================

@router.post("/insurance-claims", response_model=InsuranceClaimResponse, status_code=status.HTTP_201_CREATED)
def submit_insurance_claim(
    data: InsuranceClaimCreate,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    return manager.submit_insurance_claim(
        data.invoice_id,
        data.claim_number,
        provider=data.provider,
        claim_amount=data.claim_amount,
        remarks=data.remarks,
        created_by=current_user,
    )


@router.put("/insurance-claims/{claim_id}", response_model=InsuranceClaimResponse)
def update_insurance_claim(
    claim_id: int,
    data: InsuranceClaimUpdate,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Record the insurer's decision"""
    return manager.update_insurance_claim(
        claim_id,
        status=data.status,
        claim_amount=data.claim_amount,
        remarks=data.remarks,
    )


@router.get("/insurance-claims", response_model=List[InsuranceClaimResponse])
def list_insurance_claims(
    invoice_id: Optional[int] = None,
    status: Optional[str] = None,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    return manager.list_insurance_claims(invoice_id=invoice_id, status=status)


# ==================== METRICS ====================

@router.get("/metrics/invoices-status")
def invoices_status_metrics(
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Invoice counts per status plus claims awaiting adjudication"""
    return manager.invoice_status_metrics()
