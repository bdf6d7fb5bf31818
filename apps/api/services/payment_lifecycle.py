"""
Payment lifecycle manager.

Drives invoices through pending -> partially_paid/overdue -> paid (or void),
issues and retires control numbers, records insurance claims and folds
asynchronous provider reports back into stored payments.

Every status transition is a single UPDATE guarded by the expected current
status, so two concurrent deliveries for one reference cannot both apply.
"""
import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select
from starlette.concurrency import run_in_threadpool

from exceptions import ExternalProviderError, InvalidState, NotFound, ValidationError
from models import (
    ClaimStatus, ControlNumber, ControlNumberStatus, InsuranceClaim, Invoice,
    InvoiceStatus, Patient, Payment, PaymentStatus, PAYABLE_INVOICE_STATUSES,
    PAYMENT_STATUS_RANK, User, enum_value,
)
from services.payment_providers import (
    BuyerInfo, ProviderAdapter, ProviderCallback, WEBHOOK_ALIASES,
)
from utils.notification_channels import NotificationChannel
from validators.business_rules import BillingRules, get_billing_rules

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
PENDING_CLAIM_STATUSES = (ClaimStatus.SUBMITTED, ClaimStatus.PROCESSING)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN = "unknown"
    # Reference matched, but the invoice no longer accepts payments
    REJECTED = "rejected"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    reference: str
    payment_id: Optional[int] = None
    invoice_id: Optional[int] = None
    invoice_status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reference": self.reference,
            "payment_id": self.payment_id,
            "invoice_id": self.invoice_id,
            "invoice_status": self.invoice_status,
        }


def generate_control_number() -> str:
    """CN + last 8 digits of epoch millis + 4 random digits"""
    millis = str(int(time.time() * 1000))[-8:]
    return f"CN{millis}{secrets.randbelow(10000):04d}"


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def _lower_ranks(target: PaymentStatus) -> List[str]:
    rank = PAYMENT_STATUS_RANK[target]
    return [s.value for s, r in PAYMENT_STATUS_RANK.items() if r < rank]


class PaymentLifecycleManager:
    def __init__(
        self,
        session: Session,
        providers: Dict[str, ProviderAdapter],
        channel: Optional[NotificationChannel] = None,
        rules: Optional[BillingRules] = None,
    ):
        self.session = session
        self.providers = providers
        self.channel = channel
        self.rules = rules or get_billing_rules()

    # ==================== INVOICES ====================

    def get_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if not invoice:
            raise NotFound("Invoice not found")
        return invoice

    def create_invoice(
        self,
        patient_id: int,
        amount,
        service_date: Optional[date] = None,
        description: Optional[str] = None,
        created_by: Optional[User] = None,
    ) -> Invoice:
        amount = _money(amount)
        if amount <= ZERO:
            raise ValidationError("amount must be greater than 0")
        if not self.session.get(Patient, patient_id):
            raise NotFound("Patient not found")

        invoice = Invoice(
            patient_id=patient_id,
            amount=amount,
            service_date=service_date or date.today(),
            status=InvoiceStatus.PENDING.value,
            description=description,
            created_by=created_by.id if created_by else None,
        )
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        logger.info(f"Invoice {invoice.id} created for patient {patient_id}, amount {amount}")
        return invoice

    def settled_total(self, invoice_id: int) -> Decimal:
        total = self.session.exec(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.invoice_id == invoice_id,
                Payment.status == PaymentStatus.SUCCESS.value,
            )
        ).one()
        return _money(total)

    def outstanding(self, invoice: Invoice) -> Decimal:
        return max(ZERO, _money(invoice.amount) - self.settled_total(invoice.id))

    def void_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        result = self.session.exec(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .where(Invoice.status.in_([s.value for s in PAYABLE_INVOICE_STATUSES]))
            .values(status=InvoiceStatus.VOID.value, updated_at=datetime.utcnow())
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise InvalidState(f"Invoice is {enum_value(invoice.status)}")

        self._retire_active_control_numbers(invoice_id)
        self.session.commit()
        self.session.refresh(invoice)
        logger.info(f"Invoice {invoice_id} voided")
        return invoice

    def mark_invoice_paid(self, invoice_id: int) -> Invoice:
        """Manual override, e.g. cash taken at the counter"""
        invoice = self.get_invoice(invoice_id)
        if not self._flip_to_paid(invoice_id):
            self.session.rollback()
            raise InvalidState(f"Invoice is {enum_value(invoice.status)}")
        self._retire_active_control_numbers(invoice_id)
        self.session.commit()
        self.session.refresh(invoice)
        logger.info(f"Invoice {invoice_id} marked paid manually")
        return invoice

    def _flip_to_paid(self, invoice_id: int) -> bool:
        now = datetime.utcnow()
        result = self.session.exec(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .where(Invoice.status.in_([s.value for s in PAYABLE_INVOICE_STATUSES]))
            .values(status=InvoiceStatus.PAID.value, paid_at=now, updated_at=now)
        )
        return result.rowcount == 1

    def _retire_active_control_numbers(self, invoice_id: int) -> int:
        # A settled invoice keeps no payable reference
        return self.session.exec(
            update(ControlNumber)
            .where(ControlNumber.invoice_id == invoice_id)
            .where(ControlNumber.status == ControlNumberStatus.ACTIVE.value)
            .values(status=ControlNumberStatus.CANCELLED.value, updated_at=datetime.utcnow())
        ).rowcount

    def invoice_status_metrics(self) -> dict:
        rows = self.session.exec(
            select(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status)
        ).all()
        counts = {s.value: 0 for s in InvoiceStatus}
        counts.update({enum_value(status): count for status, count in rows})
        pending_claims = self.session.exec(
            select(func.count(InsuranceClaim.id)).where(
                InsuranceClaim.status.in_([s.value for s in PENDING_CLAIM_STATUSES])
            )
        ).one()
        return {**counts, "claims_pending": pending_claims}

    # ==================== PAYMENTS ====================

    def resolve_provider(self, method: str) -> ProviderAdapter:
        name = WEBHOOK_ALIASES.get((method or "").strip().lower(), method)
        adapter = self.providers.get(name)
        if not adapter:
            raise ValidationError(
                f"Unsupported payment method: {method}",
                details={"allowed": sorted(self.providers)},
            )
        return adapter

    def _buyer_for(self, invoice: Invoice, fields: dict) -> BuyerInfo:
        patient = self.session.get(Patient, invoice.patient_id)
        return BuyerInfo(
            name=fields.get("buyer_name") or (patient.name if patient else None),
            phone=fields.get("buyer_phone") or fields.get("phone") or (patient.phone if patient else None),
            email=fields.get("buyer_email") or (patient.email if patient else None),
        )

    async def initiate(
        self,
        invoice_id: int,
        method: str,
        fields: Optional[dict] = None,
        amount=None,
    ) -> Payment:
        fields = fields or {}
        adapter = self.resolve_provider(method)
        invoice = self.get_invoice(invoice_id)

        status = enum_value(invoice.status)
        if status == InvoiceStatus.VOID.value:
            raise InvalidState("Invoice is void")
        if status == InvoiceStatus.PAID.value:
            raise InvalidState("Invoice already paid")

        outstanding = self.outstanding(invoice)
        if outstanding <= ZERO:
            raise InvalidState("Invoice already settled")
        if amount is None:
            amount = outstanding
        else:
            amount = _money(amount)
            if amount <= ZERO or amount > outstanding:
                raise ValidationError(
                    "amount must be greater than 0 and not exceed the outstanding balance",
                    details={"outstanding": str(outstanding)},
                )

        buyer = self._buyer_for(invoice, fields)
        # Fixed before the call so a late callback still finds its row
        reference = adapter.new_reference(invoice.id)
        try:
            checkout = await asyncio.wait_for(
                adapter.initiate(invoice.id, amount, buyer, fields, reference=reference),
                timeout=self.rules.PROVIDER_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise self._record_unconfirmed_attempt(
                invoice, adapter, amount, reference,
                ExternalProviderError(f"{adapter.name} did not respond in time", timed_out=True),
            )
        except ExternalProviderError as e:
            if e.timed_out:
                raise self._record_unconfirmed_attempt(invoice, adapter, amount, reference, e)
            self._record_failed_attempt(invoice, adapter, amount, e, reference)
            raise

        payment = Payment(
            invoice_id=invoice.id,
            patient_id=invoice.patient_id,
            amount=amount,
            method=adapter.name,
            status=PaymentStatus.INITIATED.value,
            reference=checkout.reference,
            checkout_url=checkout.checkout_url,
            meta=json.dumps(checkout.raw, default=str) if checkout.raw else None,
        )
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Payment {payment.id} initiated via {adapter.name} for invoice {invoice_id}, ref {payment.reference}")
        return payment

    def _record_failed_attempt(
        self,
        invoice: Invoice,
        adapter: ProviderAdapter,
        amount: Decimal,
        error: ExternalProviderError,
        reference: Optional[str] = None,
    ) -> None:
        logger.error(f"{adapter.name} initiate for invoice {invoice.id} failed: {error.message}")
        self.session.add(Payment(
            invoice_id=invoice.id,
            patient_id=invoice.patient_id,
            amount=amount,
            method=adapter.name,
            status=PaymentStatus.FAILED.value,
            reference=reference,
            meta=json.dumps({"error": error.message, "details": error.details}, default=str),
        ))
        self.session.commit()

    def _record_unconfirmed_attempt(
        self,
        invoice: Invoice,
        adapter: ProviderAdapter,
        amount: Decimal,
        reference: str,
        error: ExternalProviderError,
    ) -> ExternalProviderError:
        """
        The provider may or may not have accepted the request. Keep an
        initiated row under the reference we sent so the eventual callback
        reconciles against it, and hand the reference back for polling.
        """
        payment = Payment(
            invoice_id=invoice.id,
            patient_id=invoice.patient_id,
            amount=amount,
            method=adapter.name,
            status=PaymentStatus.INITIATED.value,
            reference=reference,
            meta=json.dumps({"timed_out": True, "error": error.message}, default=str),
        )
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.warning(
            f"{adapter.name} initiate for invoice {invoice.id} timed out; "
            f"payment {payment.id} left initiated under ref {reference}"
        )
        error.details = {"reference": reference, "payment_id": payment.id}
        return error

    def payment_by_reference(self, reference: str) -> Payment:
        payment = self.session.exec(
            select(Payment).where(Payment.reference == reference).order_by(Payment.id.desc())
        ).first()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def receipt_control_number(self, payment: Payment) -> Optional[ControlNumber]:
        """The number the payment went through, else the invoice's latest one"""
        if payment.control_number_id:
            return self.session.get(ControlNumber, payment.control_number_id)
        if not payment.invoice_id:
            return None
        return self.session.exec(
            select(ControlNumber)
            .where(ControlNumber.invoice_id == payment.invoice_id)
            .order_by(ControlNumber.id.desc())
        ).first()

    # ==================== RECONCILIATION ====================

    async def reconcile(self, callback: ProviderCallback) -> ReconcileResult:
        """
        Fold one provider report into stored state. Safe to replay: a repeat
        of the same report is a no-op and a lower-ranked report arriving
        after a higher one is ignored.
        """
        target = callback.status or PaymentStatus.INITIATED

        query = (
            select(Payment)
            .where(Payment.reference == callback.reference)
            .where(Payment.control_number_id.is_(None))
        )
        if callback.provider:
            # A provider may only report on payments it was asked to collect
            query = query.where(Payment.method == callback.provider)
        payment = self.session.exec(query.order_by(Payment.id.desc())).first()

        if payment is None:
            control_number = self.session.exec(
                select(ControlNumber).where(
                    ControlNumber.number == (callback.control_number or callback.reference),
                    ControlNumber.status == ControlNumberStatus.ACTIVE.value,
                )
            ).first()
            if control_number is None:
                logger.warning(f"Reconcile: unknown reference {callback.reference}, ignored")
                return ReconcileResult(ReconcileStatus.UNKNOWN, callback.reference)
            return await self._reconcile_control_number(control_number, callback, target)

        return await self._advance(payment, callback, target)

    async def _advance(self, payment: Payment, callback: ProviderCallback, target: PaymentStatus) -> ReconcileResult:
        current = PaymentStatus(payment.status)
        if PAYMENT_STATUS_RANK[target] <= PAYMENT_STATUS_RANK[current]:
            return self._no_op(payment, callback, target, current)

        if callback.amount is not None and callback.amount != _money(payment.amount):
            logger.warning(
                f"Reconcile: payment {payment.id} reported amount {callback.amount} != recorded {payment.amount}"
            )

        values = {"status": target.value, "updated_at": datetime.utcnow()}
        if callback.external_tx_id:
            values["provider_tx_id"] = callback.external_tx_id
        result = self.session.exec(
            update(Payment)
            .where(Payment.id == payment.id)
            .where(Payment.status.in_(_lower_ranks(target)))
            .values(**values)
        )
        if result.rowcount == 0:
            # Lost the race to a concurrent delivery
            self.session.rollback()
            self.session.refresh(payment)
            return self._no_op(payment, callback, target, PaymentStatus(payment.status))

        settled = False
        if target == PaymentStatus.SUCCESS:
            settled = self._apply_settlement(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Reconcile: payment {payment.id} ({callback.reference}) -> {target.value}")

        return await self._applied(payment, callback, settled)

    def _no_op(self, payment, callback, target, current) -> ReconcileResult:
        status = ReconcileStatus.DUPLICATE if target == current else ReconcileStatus.STALE
        logger.info(f"Reconcile: {callback.reference} reported {target.value}, stored {current.value} ({status.value})")
        invoice = self.session.get(Invoice, payment.invoice_id) if payment.invoice_id else None
        return ReconcileResult(
            status,
            callback.reference,
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            invoice_status=enum_value(invoice.status) if invoice else None,
        )

    async def _reconcile_control_number(
        self,
        control_number: ControlNumber,
        callback: ProviderCallback,
        target: PaymentStatus,
    ) -> ReconcileResult:
        """Payments against a control number arrive unannounced; each one is a new row"""
        if not callback.external_tx_id:
            raise ValidationError("provider_tx_id required for control number payments")
        if target == PaymentStatus.INITIATED:
            logger.info(f"Reconcile: pending report for control number {control_number.number} ignored")
            return ReconcileResult(ReconcileStatus.UNKNOWN, callback.reference, invoice_id=control_number.invoice_id)

        control_number_id = control_number.id
        existing = self._control_number_payment(control_number_id, callback.external_tx_id)
        if existing:
            return await self._advance(existing, callback, target)

        invoice = self.session.get(Invoice, control_number.invoice_id)
        invoice_status = enum_value(invoice.status) if invoice else None
        if invoice_status not in [s.value for s in PAYABLE_INVOICE_STATUSES]:
            logger.warning(
                f"Reconcile: control number {control_number.number} reported {target.value} "
                f"but invoice {control_number.invoice_id} is {invoice_status}, rejected"
            )
            return ReconcileResult(
                ReconcileStatus.REJECTED,
                callback.reference,
                invoice_id=control_number.invoice_id,
                invoice_status=invoice_status,
            )

        payment = Payment(
            invoice_id=control_number.invoice_id,
            patient_id=invoice.patient_id,
            control_number_id=control_number_id,
            amount=callback.amount if callback.amount is not None else _money(control_number.remaining_balance),
            method=callback.method or "bank_transfer",
            status=target.value,
            reference=control_number.number,
            provider_tx_id=callback.external_tx_id,
            meta=json.dumps(callback.raw, default=str) if callback.raw else None,
        )
        self.session.add(payment)
        try:
            self.session.flush()
        except IntegrityError:
            # A concurrent delivery of the same transaction inserted first
            self.session.rollback()
            existing = self._control_number_payment(control_number_id, callback.external_tx_id)
            if existing is None:
                raise
            return await self._advance(existing, callback, target)

        settled = False
        if target == PaymentStatus.SUCCESS:
            settled = self._apply_settlement(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(
            f"Reconcile: control number {control_number.number} payment {payment.id} "
            f"({callback.external_tx_id}) recorded as {target.value}"
        )
        return await self._applied(payment, callback, settled)

    def _control_number_payment(self, control_number_id: int, provider_tx_id: str) -> Optional[Payment]:
        return self.session.exec(
            select(Payment).where(
                Payment.control_number_id == control_number_id,
                Payment.provider_tx_id == provider_tx_id,
            )
        ).first()

    def _active_control_number(self, invoice_id: int) -> Optional[ControlNumber]:
        return self.session.exec(
            select(ControlNumber).where(
                ControlNumber.invoice_id == invoice_id,
                ControlNumber.status == ControlNumberStatus.ACTIVE.value,
            )
        ).first()

    def _apply_settlement(self, payment: Payment) -> bool:
        """Recompute invoice status from successful payments; True if it just became paid"""
        if payment.control_number_id:
            control_number = self.session.get(ControlNumber, payment.control_number_id)
        elif payment.invoice_id:
            # Money collected by reference still lowers what the bank may take
            control_number = self._active_control_number(payment.invoice_id)
        else:
            control_number = None
        if control_number is not None:
            control_number.remaining_balance = max(
                ZERO, _money(control_number.remaining_balance) - _money(payment.amount)
            )
            control_number.updated_at = datetime.utcnow()
            self.session.add(control_number)
        if not payment.invoice_id:
            return False

        invoice_id = payment.invoice_id
        self.session.flush()
        invoice = self.session.get(Invoice, invoice_id)
        if not invoice:
            return False
        if enum_value(invoice.status) not in [s.value for s in PAYABLE_INVOICE_STATUSES]:
            logger.warning(f"Payment settled against invoice {invoice_id} in status {enum_value(invoice.status)}")
            return False

        if self.settled_total(invoice_id) >= _money(invoice.amount):
            if not self._flip_to_paid(invoice_id):
                return False
            retired = self._retire_active_control_numbers(invoice_id)
            if retired:
                logger.info(f"Invoice {invoice_id} settled; {retired} control number(s) cancelled")
            return True

        self.session.exec(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .where(Invoice.status == InvoiceStatus.PENDING.value)
            .values(status=InvoiceStatus.PARTIALLY_PAID.value, updated_at=datetime.utcnow())
        )
        return False

    async def _applied(self, payment: Payment, callback: ProviderCallback, settled: bool) -> ReconcileResult:
        invoice = self.session.get(Invoice, payment.invoice_id) if payment.invoice_id else None
        if invoice is not None:
            self.session.refresh(invoice)
        if settled and invoice is not None:
            logger.info(f"Invoice {invoice.id} settled by payment {payment.id}")
            await self._send_receipt(invoice, payment)
        return ReconcileResult(
            ReconcileStatus.APPLIED,
            callback.reference,
            payment_id=payment.id,
            invoice_id=payment.invoice_id,
            invoice_status=enum_value(invoice.status) if invoice else None,
        )

    async def _send_receipt(self, invoice: Invoice, payment: Payment) -> None:
        if self.channel is None:
            return
        patient = self.session.get(Patient, invoice.patient_id)
        if not patient or not patient.phone:
            return
        message = f"Payment received for invoice #{invoice.id}. Amount: {payment.amount}. Thank you."
        try:
            await run_in_threadpool(self.channel.send, patient.phone, message, "Payment received")
        except Exception as e:
            logger.warning(f"Receipt for invoice {invoice.id} not delivered: {e}")

    # ==================== CONTROL NUMBERS ====================

    def get_control_number(self, control_number_id: int) -> ControlNumber:
        control_number = self.session.get(ControlNumber, control_number_id)
        if not control_number:
            raise NotFound("Control number not found")
        return control_number

    def _new_control_number(self, invoice_id: int, amount: Decimal, provider, expiry_at, replaces_id=None) -> ControlNumber:
        control_number = ControlNumber(
            invoice_id=invoice_id,
            number=generate_control_number(),
            status=ControlNumberStatus.ACTIVE.value,
            total_amount=amount,
            remaining_balance=amount,
            provider=provider,
            expiry_at=expiry_at or datetime.utcnow() + timedelta(days=self.rules.CONTROL_NUMBER_VALIDITY_DAYS),
            replaces_id=replaces_id,
        )
        self.session.add(control_number)
        return control_number

    def generate_control_number(
        self,
        invoice_id: int,
        provider: Optional[str] = None,
        expiry_at: Optional[datetime] = None,
    ) -> ControlNumber:
        invoice = self.get_invoice(invoice_id)
        if enum_value(invoice.status) not in [s.value for s in PAYABLE_INVOICE_STATUSES]:
            raise InvalidState(f"Invoice is {enum_value(invoice.status)}")
        outstanding = self.outstanding(invoice)
        if outstanding <= ZERO:
            raise InvalidState("Invoice already settled")

        active = self._active_control_number(invoice_id)
        if active:
            raise InvalidState(
                "Invoice already has an active control number",
                details={"control_number_id": active.id},
            )

        control_number = self._new_control_number(invoice_id, outstanding, provider, expiry_at)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise InvalidState("Invoice already has an active control number")
        self.session.refresh(control_number)
        logger.info(f"Control number {control_number.number} issued for invoice {invoice_id}")
        return control_number

    def _retire(self, control_number: ControlNumber, status: ControlNumberStatus) -> bool:
        result = self.session.exec(
            update(ControlNumber)
            .where(ControlNumber.id == control_number.id)
            .where(ControlNumber.status == ControlNumberStatus.ACTIVE.value)
            .values(status=status.value, updated_at=datetime.utcnow())
        )
        return result.rowcount == 1

    def cancel_control_number(self, control_number_id: int) -> ControlNumber:
        control_number = self.get_control_number(control_number_id)
        if not self._retire(control_number, ControlNumberStatus.CANCELLED):
            self.session.rollback()
            raise InvalidState(f"Control number is {enum_value(control_number.status)}")
        self.session.commit()
        self.session.refresh(control_number)
        logger.info(f"Control number {control_number.number} cancelled")
        return control_number

    def reissue_control_number(self, control_number_id: int) -> dict:
        """Returns {"old": ..., "new": ...}; new is None when the invoice is settled"""
        old = self.get_control_number(control_number_id)
        invoice = self.get_invoice(old.invoice_id)
        outstanding = self.outstanding(invoice)
        if enum_value(invoice.status) == InvoiceStatus.PAID.value or outstanding <= ZERO:
            logger.info(f"Reissue of {old.number} skipped: invoice {invoice.id} settled")
            return {"old": old, "new": None}
        if enum_value(invoice.status) == InvoiceStatus.VOID.value:
            raise InvalidState("Invoice is void")

        if not self._retire(old, ControlNumberStatus.REISSUED):
            self.session.rollback()
            raise InvalidState(f"Control number is {enum_value(old.status)}")
        new = self._new_control_number(
            old.invoice_id, outstanding, old.provider, self._carry_expiry(old), replaces_id=old.id
        )
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise InvalidState("Invoice already has an active control number")
        self.session.refresh(old)
        self.session.refresh(new)
        logger.info(f"Control number {old.number} reissued as {new.number}")
        return {"old": old, "new": new}

    def _carry_expiry(self, old: ControlNumber) -> Optional[datetime]:
        # Keep the old expiry unless it has already passed
        if old.expiry_at and old.expiry_at > datetime.utcnow():
            return old.expiry_at
        return None

    # ==================== INSURANCE CLAIMS ====================

    def submit_insurance_claim(
        self,
        invoice_id: int,
        claim_number: str,
        provider: Optional[str] = None,
        claim_amount=None,
        remarks: Optional[str] = None,
        created_by: Optional[User] = None,
    ) -> InsuranceClaim:
        claim_number = (claim_number or "").strip()
        if not claim_number:
            raise ValidationError("invoice_id and claim_number required")
        self.get_invoice(invoice_id)

        claim = InsuranceClaim(
            invoice_id=invoice_id,
            claim_number=claim_number,
            provider=provider,
            claim_amount=_money(claim_amount) if claim_amount is not None else None,
            status=ClaimStatus.SUBMITTED.value,
            remarks=remarks,
            created_by=created_by.id if created_by else None,
        )
        self.session.add(claim)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise InvalidState(f"Claim number {claim_number} already submitted")
        self.session.refresh(claim)
        logger.info(f"Insurance claim {claim_number} submitted for invoice {invoice_id}")
        return claim

    def update_insurance_claim(
        self,
        claim_id: int,
        status: Optional[str] = None,
        claim_amount=None,
        remarks: Optional[str] = None,
    ) -> InsuranceClaim:
        claim = self.session.get(InsuranceClaim, claim_id)
        if not claim:
            raise NotFound("Insurance claim not found")
        if status is not None:
            try:
                claim.status = ClaimStatus(enum_value(status)).value
            except ValueError:
                raise ValidationError("Invalid claim status", details={"allowed": [s.value for s in ClaimStatus]})
        if claim_amount is not None:
            claim.claim_amount = _money(claim_amount)
        if remarks is not None:
            claim.remarks = remarks
        claim.updated_at = datetime.utcnow()
        self.session.add(claim)
        self.session.commit()
        self.session.refresh(claim)
        return claim

    def list_insurance_claims(self, invoice_id: Optional[int] = None, status: Optional[str] = None) -> List[InsuranceClaim]:
        query = select(InsuranceClaim)
        if invoice_id:
            query = query.where(InsuranceClaim.invoice_id == invoice_id)
        if status:
            query = query.where(InsuranceClaim.status == enum_value(status))
        return self.session.exec(query.order_by(InsuranceClaim.id.desc()).limit(100)).all()

    # ==================== MAINTENANCE ====================

    def expire_overdue_control_numbers(self, as_of: Optional[datetime] = None) -> dict:
        """Expire lapsed control numbers and flag invoices past the due window"""
        as_of = as_of or datetime.utcnow()

        expired = self.session.exec(
            update(ControlNumber)
            .where(ControlNumber.status == ControlNumberStatus.ACTIVE.value)
            .where(ControlNumber.expiry_at < as_of)
            .values(status=ControlNumberStatus.EXPIRED.value, updated_at=as_of)
        ).rowcount

        due_before = as_of.date() - timedelta(days=self.rules.INVOICE_DUE_DAYS)
        overdue = self.session.exec(
            update(Invoice)
            .where(Invoice.status.in_([InvoiceStatus.PENDING.value, InvoiceStatus.PARTIALLY_PAID.value]))
            .where(Invoice.service_date < due_before)
            .values(status=InvoiceStatus.OVERDUE.value, updated_at=as_of)
        ).rowcount
        self.session.commit()

        logger.info(f"Overdue sweep as of {as_of.isoformat()}: {expired} control number(s) expired, {overdue} invoice(s) overdue")
        return {"control_numbers_expired": expired, "invoices_overdue": overdue}
