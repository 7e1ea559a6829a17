"""
Webhook endpoint for Stripe.

The route hands the raw body and signature header
to the WebhookProcessor and turns the result into a status code. The body
must be read as bytes; the signature covers the exact payload Stripe sent.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from giving.api.deps import get_processor
from giving.webhooks.processor import WebhookProcessor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    processor: WebhookProcessor = Depends(get_processor),
):
    """
    Handle Stripe events for one-time and recurring gifts.

    Returns 2xx once the event is safely handled (or was already handled),
    so Stripe stops redelivering. 400 for bad signatures, 422 for events
    referencing data we don't have, 500 when a dependency was unavailable
    and Stripe should try again.
    """
    body = await request.body()

    # Database and HTTP work is blocking; keep it off the event loop
    result = await run_in_threadpool(processor.handle, body, stripe_signature)

    content = {"status": result.outcome.value}
    if result.event_id:
        content["event_id"] = result.event_id
    if not result.acknowledged and result.detail:
        content["detail"] = result.detail
    return JSONResponse(status_code=result.http_status, content=content)
