from typing import Optional
from datetime import datetime, date
from decimal import Decimal
from sqlmodel import Field, SQLModel
from sqlalchemy import Column, String, Index, UniqueConstraint, text
from enum import Enum


def enum_value(value):
    """Plain value of a str-enum member; plain strings pass through"""
    return value.value if isinstance(value, Enum) else value

class UserRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    LAB_TECHNICIAN = "lab_technician"
    MANAGER = "manager"

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole = Field(sa_column=Column(String(20), nullable=False))
    full_name: str
    phone_number: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

class Patient(SQLModel, table=True):
    """Billing identity of a patient; may or may not have a login"""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ==================== NOTIFICATION MODELS ====================

class TargetRole(str, Enum):
    ALL = "all"
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    LAB_TECHNICIAN = "lab_technician"
    MANAGER = "manager"

class Notification(SQLModel, table=True):
    """Role- or user-addressed notification. Immutable once created."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    message: str
    # Exactly one of target_role / target_user_id is set
    target_role: Optional[str] = Field(default=None, sa_column=Column(String(20), index=True))
    target_user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)

class NotificationRead(SQLModel, table=True):
    """Per-recipient read marker; presence means read"""
    __tablename__ = "notification_read"
    __table_args__ = (UniqueConstraint("user_id", "notification_id", name="uq_notification_read_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    notification_id: int = Field(foreign_key="notification.id", index=True)
    read_at: datetime = Field(default_factory=datetime.utcnow)

class DeliveryChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"

class NotificationLog(SQLModel, table=True):
    """Log of out-of-band (SMS/email) delivery attempts"""
    id: Optional[int] = Field(default=None, primary_key=True)
    notification_id: Optional[int] = Field(default=None, foreign_key="notification.id", index=True)
    channel: DeliveryChannel = Field(sa_column=Column(String(10), nullable=False))
    target: str
    status: str = Field(default="sent")  # sent, failed
    provider_response: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ==================== BILLING & PAYMENT MODELS ====================

class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"

# Statuses from which an invoice can still be settled
PAYABLE_INVOICE_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE)

class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"

# Status rank; a payment only ever moves to a higher rank
PAYMENT_STATUS_RANK = {
    PaymentStatus.INITIATED: 0,
    PaymentStatus.FAILED: 1,
    PaymentStatus.SUCCESS: 2,
}

class ControlNumberStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REISSUED = "reissued"

class ClaimStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    APPEALED = "appealed"

class Invoice(SQLModel, table=True):
    """Patient invoice. Never deleted, only voided."""
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    service_date: date
    status: InvoiceStatus = Field(default=InvoiceStatus.PENDING, sa_column=Column(String(20), index=True, nullable=False))
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Payment(SQLModel, table=True):
    """One payment attempt. Rows are never deleted; retries create new rows."""
    # A bank transaction is recorded at most once per control number
    __table_args__ = (
        UniqueConstraint("control_number_id", "provider_tx_id", name="uq_payment_control_number_tx"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: Optional[int] = Field(default=None, foreign_key="invoice.id", index=True)
    patient_id: Optional[int] = Field(default=None, foreign_key="patient.id", index=True)
    control_number_id: Optional[int] = Field(default=None, foreign_key="controlnumber.id")
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    method: str  # control, mobile_money, zenopay, bank_transfer ...
    status: PaymentStatus = Field(default=PaymentStatus.INITIATED, sa_column=Column(String(20), index=True, nullable=False))
    reference: Optional[str] = Field(default=None, index=True)
    provider_tx_id: Optional[str] = Field(default=None, index=True)
    checkout_url: Optional[str] = None
    meta: Optional[str] = None  # JSON string
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class ControlNumber(SQLModel, table=True):
    """Bank/provider payment reference tied to one invoice"""
    __table_args__ = (
        Index(
            "uq_controlnumber_one_active",
            "invoice_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    number: str = Field(unique=True, index=True)
    status: ControlNumberStatus = Field(default=ControlNumberStatus.ACTIVE, sa_column=Column(String(20), nullable=False))
    total_amount: Decimal = Field(max_digits=10, decimal_places=2)
    remaining_balance: Decimal = Field(max_digits=10, decimal_places=2)
    provider: Optional[str] = None
    expiry_at: datetime
    replaces_id: Optional[int] = Field(default=None, foreign_key="controlnumber.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class InsuranceClaim(SQLModel, table=True):
    """Insurance claim submissions; adjudication happens outside this system"""
    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    claim_number: str = Field(unique=True, index=True)
    provider: Optional[str] = None
    claim_amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    status: ClaimStatus = Field(default=ClaimStatus.SUBMITTED, sa_column=Column(String(30), index=True, nullable=False))
    remarks: Optional[str] = None
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
