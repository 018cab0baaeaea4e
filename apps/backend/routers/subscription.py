"""Subscription checkout, confirm, cancel and status for the signed-in account."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from apps.backend.clients.razorpay_client import RazorpayClient
from apps.backend.deps import get_current_user, get_db, get_payment_client
from apps.backend.models.user import User
from apps.backend.services import billing

router = APIRouter()


class CreateBody(BaseModel):
    plan_id: int


class ConfirmBody(BaseModel):
    razorpay_payment_id: str
    razorpay_subscription_id: str
    razorpay_signature: str


class CancelBody(BaseModel):
    reason: str | None = None


@router.post("/create")
def create_subscription(
    body: CreateBody,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: RazorpayClient = Depends(get_payment_client),
):
    return billing.create_checkout(db, user, body.plan_id, client=client)


@router.post("/confirm")
def confirm_subscription(
    body: ConfirmBody,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: RazorpayClient = Depends(get_payment_client),
):
    sub = billing.confirm_subscription(
        db,
        user,
        payment_id=body.razorpay_payment_id,
        subscription_id=body.razorpay_subscription_id,
        signature=body.razorpay_signature,
        client=client,
    )
    return {"success": True, "subscription": billing.subscription_to_dict(sub)}


@router.post("/cancel")
def cancel_subscription(
    body: CancelBody,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: RazorpayClient = Depends(get_payment_client),
):
    sub = billing.cancel_subscription(db, user, body.reason, client=client)
    return {"success": True, "subscription": billing.subscription_to_dict(sub)}


@router.get("/status")
def subscription_status(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    client: RazorpayClient = Depends(get_payment_client),
):
    return billing.get_subscription_status(db, user, client=client)
