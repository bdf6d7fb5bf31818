from typing import Optional, List
from pydantic import BaseModel, EmailStr, Field
from models import UserRole
from datetime import date, datetime
from decimal import Decimal

# Auth schemas
class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserResponse(BaseModel):
    id: int
    email: str
    full_name: str
    role: UserRole
    phone_number: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

# Notification schemas
class NotificationCreate(BaseModel):
    title: str
    message: str
    target_role: Optional[str] = None
    target_user_id: Optional[int] = None
    notify_out_of_band: bool = False

class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    target_role: Optional[str] = None
    target_user_id: Optional[int] = None
    created_by: Optional[int] = None
    created_at: datetime
    read: bool = False

    class Config:
        from_attributes = True

class UnreadCountResponse(BaseModel):
    unread: int

# Billing schemas
class InvoiceCreate(BaseModel):
    patient_id: int
    amount: Decimal = Field(gt=0)
    service_date: Optional[date] = None
    description: Optional[str] = None

class InvoiceResponse(BaseModel):
    id: int
    patient_id: int
    amount: Decimal
    service_date: date
    status: str
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    outstanding: Optional[Decimal] = None

    class Config:
        from_attributes = True

class ControlNumberCreate(BaseModel):
    invoice_id: int
    provider: Optional[str] = None
    expiry_at: Optional[datetime] = None

class ControlNumberResponse(BaseModel):
    id: int
    invoice_id: int
    number: str
    status: str
    total_amount: Decimal
    remaining_balance: Decimal
    provider: Optional[str] = None
    expiry_at: datetime
    replaces_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True

class ControlNumberReissueResponse(BaseModel):
    old: ControlNumberResponse
    new: Optional[ControlNumberResponse] = None

class InsuranceClaimCreate(BaseModel):
    invoice_id: int
    claim_number: str
    provider: Optional[str] = None
    claim_amount: Optional[Decimal] = None
    remarks: Optional[str] = None

class InsuranceClaimUpdate(BaseModel):
    status: Optional[str] = None
    claim_amount: Optional[Decimal] = None
    remarks: Optional[str] = None

class InsuranceClaimResponse(BaseModel):
    id: int
    invoice_id: int
    claim_number: str
    provider: Optional[str] = None
    claim_amount: Optional[Decimal] = None
    status: str
    remarks: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

# Payment schemas
class PaymentInitiateRequest(BaseModel):
    invoice_id: int
    method: str = "control"
    amount: Optional[Decimal] = None
    phone: Optional[str] = None
    provider: Optional[str] = None  # mobile money operator
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None

class PaymentResponse(BaseModel):
    id: int
    invoice_id: Optional[int] = None
    patient_id: Optional[int] = None
    amount: Decimal
    method: str
    status: str
    reference: Optional[str] = None
    provider_tx_id: Optional[str] = None
    checkout_url: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class ProviderResult(BaseModel):
    """One provider-reported status, as fed to the reconciliation job"""
    reference: Optional[str] = None
    control_number: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    provider_tx_id: Optional[str] = None
    method: Optional[str] = None

class ReconcileRequest(BaseModel):
    results: List[ProviderResult]

class OverdueJobRequest(BaseModel):
    as_of: Optional[datetime] = None
