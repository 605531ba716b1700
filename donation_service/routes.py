import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Header, Query, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from donation_service.auth import Actor, optional_actor, require_admin, require_owner_or_admin, verify_token
from donation_service.config import get_settings
from donation_service.dependencies import get_reconciliation_service
from donation_service.errors import DonationError, DonationNotFound
from donation_service.models import DonationStatus
from donation_service.schemas import (
    CancelRequest,
    DonationCreated,
    DonationOut,
    DonationPage,
    DonationRequest,
    DonationResult,
    OrderOut,
    RefundOut,
    RefundRequest,
    RefundStatusResult,
    StatusResult,
    VerifyRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/donations", tags=["donations"])

_REDIRECT_STATUS = {
    DonationStatus.COMPLETED.value: "success",
    DonationStatus.REFUNDED.value: "success",
    DonationStatus.FAILED.value: "failed",
    DonationStatus.CANCELLED.value: "cancelled",
}


@router.post("", response_model=DonationCreated, status_code=201)
def create_donation(
    request: DonationRequest,
    actor: Actor = Depends(optional_actor),
    service=Depends(get_reconciliation_service),
):
    donation, order = service.create_donation_and_order(
        request.amount,
        request.donor_info.model_dump(exclude_none=True),
        request.donation_type,
        user_id=actor.id if actor else None,
    )
    return DonationCreated(
        donation=DonationOut.model_validate(donation),
        order=OrderOut(
            order_id=order.order_id,
            amount_minor_unit=order.amount_minor,
            currency=order.currency,
            status=order.status,
        ),
        key=get_settings().razorpay_key_id,
    )


@router.post("/verify", response_model=DonationResult)
def verify_payment(request: VerifyRequest, service=Depends(get_reconciliation_service)):
    donation = service.verify_and_finalize_payment(
        request.payment_id,
        order_id=request.order_id,
        donation_id=request.donation_id,
        signature=request.signature,
    )
    return DonationResult(
        success=donation.status == DonationStatus.COMPLETED.value,
        donation=DonationOut.model_validate(donation),
    )


@router.post("/callback")
def checkout_callback(
    razorpay_payment_id: str = Form(None),
    razorpay_order_id: str = Form(None),
    razorpay_signature: str = Form(None),
    service=Depends(get_reconciliation_service),
):
    try:
        donation = service.verify_and_finalize_payment(
            razorpay_payment_id,
            order_id=razorpay_order_id,
            signature=razorpay_signature or "",
        )
        params = {"status": _REDIRECT_STATUS.get(donation.status, "pending"), "donationId": donation.id}
    except DonationError as exc:
        logger.warning("Checkout callback for order %s failed: %s", razorpay_order_id, exc)
        params = {"status": "error", "message": "Payment verification failed. Please contact support."}
    return RedirectResponse(f"{get_settings().frontend_url}/payment-status?{urlencode(params)}", status_code=303)


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(None),
    service=Depends(get_reconciliation_service),
):
    payload = await request.body()
    await run_in_threadpool(service.handle_webhook_event, payload, x_razorpay_signature)
    return {"success": True}


@router.get("/check-status/{order_id}", response_model=StatusResult)
def check_status(order_id: str, service=Depends(get_reconciliation_service)):
    donation, payment_status = service.poll_and_sync_status(order_id)
    return StatusResult(donation=DonationOut.model_validate(donation), payment_status=payment_status)


@router.post("/{donation_id}/cancel", response_model=DonationResult)
def cancel_donation(donation_id: str, request: CancelRequest = None, service=Depends(get_reconciliation_service)):
    donation = service.cancel_donation(donation_id, reason=request.reason if request else None)
    return DonationResult(
        success=donation.status == DonationStatus.CANCELLED.value,
        donation=DonationOut.model_validate(donation),
    )


@router.post("/{donation_id}/refund", response_model=RefundOut)
def refund_donation(
    donation_id: str,
    request: RefundRequest,
    actor: Actor = Depends(require_admin),
    service=Depends(get_reconciliation_service),
):
    result = service.initiate_refund(donation_id, amount=request.amount, reason=request.reason, actor=actor.id)
    return RefundOut(refund_id=result.refund_id, status=result.status, amount=result.amount)


@router.get("/{donation_id}/refund-status", response_model=RefundStatusResult)
def refund_status(
    donation_id: str,
    actor: Actor = Depends(require_admin),
    service=Depends(get_reconciliation_service),
):
    donation, refund = service.sync_refund_status(donation_id)
    return RefundStatusResult(donation=DonationOut.model_validate(donation), refund_status=refund.status)


@router.get("/{donation_id}", response_model=DonationOut)
def get_donation(
    donation_id: str,
    actor: Actor = Depends(verify_token),
    service=Depends(get_reconciliation_service),
):
    donation = service.store.get_by_id(donation_id)
    if donation is None:
        raise DonationNotFound(donation_id)
    require_owner_or_admin(donation, actor)
    return DonationOut.model_validate(donation)


@router.get("", response_model=DonationPage)
def list_donations(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: str = Query(None),
    actor: Actor = Depends(require_admin),
    service=Depends(get_reconciliation_service),
):
    items, total = service.store.list(status=status, offset=(page - 1) * page_size, limit=page_size)
    return DonationPage(
        total=total,
        page=page,
        page_size=page_size,
        items=[DonationOut.model_validate(d) for d in items],
    )
