"""
Events emitted for the notification component. Delivery lives elsewhere;
the default dispatcher only logs.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from shift_allocation.models import RejectionReason

logger = logging.getLogger(__name__)


class ClaimApproved(BaseModel):
    kind: Literal["claim_approved"] = "claim_approved"
    claim_id: str
    shift_id: str
    worker_id: str
    occurred_at: datetime


class ClaimRejected(BaseModel):
    kind: Literal["claim_rejected"] = "claim_rejected"
    claim_id: str
    shift_id: str
    worker_id: str
    reason: RejectionReason
    message: str
    occurred_at: datetime


class ShiftAssigned(BaseModel):
    kind: Literal["shift_assigned"] = "shift_assigned"
    shift_id: str
    worker_id: str
    restaurant_id: str
    occurred_at: datetime


Event = ClaimApproved | ClaimRejected | ShiftAssigned
EmitFn = Callable[[Event], Awaitable[None]]


async def log_event(event: Event) -> None:
    logger.info("event %s", event.model_dump_json())


async def dispatch_all(emit: EmitFn, events: list[Event]) -> None:
    """Send events one by one; a failed send is logged and does not stop the rest."""
    for event in events:
        try:
            await emit(event)
        except Exception:
            logger.exception("failed to dispatch %s event", event.kind)
