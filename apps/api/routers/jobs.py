"""Maintenance jobs: batch reconciliation and the overdue sweep"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from dependencies import get_payment_manager, require_billing_staff, require_job_secret
from exceptions import ValidationError
from models import User
from schemas import OverdueJobRequest, ReconcileRequest
from services.payment_lifecycle import PaymentLifecycleManager, ReconcileStatus
from services.payment_providers import ProviderCallback

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["Jobs"],
    dependencies=[Depends(require_job_secret)],
)


@router.post("/reconcile/payments")
async def reconcile_payments(
    data: ReconcileRequest,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Apply a batch of provider-reported statuses (e.g. from a settlement file or poll)"""
    results = []
    for item in data.results:
        try:
            callback = ProviderCallback.from_dict(item.model_dump(exclude_none=True), method=item.method)
            result = await manager.reconcile(callback)
        except ValidationError as e:
            results.append({"status": "invalid", "reference": item.reference, "message": e.message})
            continue
        results.append(result.to_dict())

    summary = {s.value: 0 for s in ReconcileStatus}
    for r in results:
        summary[r["status"]] = summary.get(r["status"], 0) + 1
    logger.info(f"Batch reconcile by user {current_user.id}: {summary}")
    return {"ok": True, "summary": summary, "results": results}


@router.post("/jobs/overdue")
def run_overdue_sweep(
    data: Optional[OverdueJobRequest] = None,
    current_user: User = Depends(require_billing_staff),
    manager: PaymentLifecycleManager = Depends(get_payment_manager),
):
    """Expire lapsed control numbers and flag overdue invoices"""
    as_of = (data.as_of if data else None) or datetime.utcnow()
    if as_of.tzinfo:
        # Stored timestamps are naive UTC
        as_of = as_of.astimezone(timezone.utc).replace(tzinfo=None)
    return {"ok": True, **manager.expire_overdue_control_numbers(as_of)}
