"""Inbound payment-provider webhooks."""
import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from apps.backend.deps import get_db
from apps.backend.services.billing import process_razorpay_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/razorpay")
async def razorpay_webhook(request: Request, db: Session = Depends(get_db)):
    """Always ``{"received": true}`` once the signature checks out, known event kind or not."""
    raw = await request.body()
    outcome = await run_in_threadpool(
        process_razorpay_webhook,
        db,
        raw,
        request.headers.get("x-razorpay-signature"),
        event_id=request.headers.get("x-razorpay-event-id"),
    )
    return {"received": True, "outcome": outcome.outcome}
