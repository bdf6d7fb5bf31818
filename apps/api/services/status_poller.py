"""
Client-side payment status polling with bounded exponential backoff.

Used by integrations (and the checkout UI's server-side helpers) that cannot
receive webhooks. Gives up after the configured attempts or total time and
reports "pending" so the caller can check later instead of assuming failure.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from validators.business_rules import BillingRules, get_billing_rules

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"success", "failed"}


@dataclass
class PollOutcome:
    status: str
    settled: bool
    attempts: int
    payment: Optional[dict] = None


def backoff_delays(rules: BillingRules):
    """Yield the wait before each retry: base, 2*base, 4*base ... capped"""
    delay = rules.POLL_BASE_DELAY_SECONDS
    for _ in range(rules.POLL_MAX_ATTEMPTS - 1):
        yield min(delay, rules.POLL_MAX_DELAY_SECONDS)
        delay *= 2


async def poll_payment_status(
    client: httpx.AsyncClient,
    reference: str,
    token: Optional[str] = None,
    rules: Optional[BillingRules] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    rules = rules or get_billing_rules()
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    started = time.monotonic()
    delays = backoff_delays(rules)
    attempts = 0
    waited = 0.0
    payment = None

    while True:
        attempts += 1
        try:
            response = await client.get(f"/api/payments/status/{reference}", headers=headers)
            if response.status_code == 200:
                payment = response.json()
                status = (payment or {}).get("status")
                if status in TERMINAL_STATUSES:
                    return PollOutcome(status=status, settled=status == "success", attempts=attempts, payment=payment)
            elif response.status_code != 404:
                logger.warning(f"Status check for {reference} returned {response.status_code}")
        except httpx.HTTPError as e:
            # Transient; retried on the next tick
            logger.warning(f"Status check for {reference} failed: {e}")

        delay = next(delays, None)
        elapsed = max(time.monotonic() - started, waited)
        if delay is None or elapsed + delay > rules.POLL_MAX_TOTAL_SECONDS:
            break
        await sleep(delay)
        waited += delay

    logger.info(f"Status of {reference} still pending after {attempts} attempt(s)")
    return PollOutcome(status="pending", settled=False, attempts=attempts, payment=payment)
