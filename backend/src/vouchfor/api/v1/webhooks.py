"""Webhook endpoints for payment providers."""

import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse

from vouchfor.api.deps import LedgerServices, get_services
from vouchfor.ledger.exceptions import InvalidSignatureError
from vouchfor.logging_config import get_logger
from vouchfor.settings import settings
from vouchfor.webhooks.events import verify_signature

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: LedgerServices = Depends(get_services),
):
    """Handle Stripe webhook events.

    Authentic events are acknowledged at once and processed after the
    response is sent. Processing outcomes never change the acknowledgement,
    so Stripe does not retry deliveries that were in fact handled.
    """
    payload = await request.body()

    if settings.stripe_webhook_secret:
        try:
            verify_signature(
                payload,
                request.headers.get("stripe-signature", ""),
                settings.stripe_webhook_secret,
                tolerance=settings.stripe_webhook_tolerance,
            )
        except InvalidSignatureError as e:
            logger.warning("stripe_webhook_invalid_signature", error=e.message)
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"received": False, "error": e.message},
            )
    elif settings.is_production:
        logger.error("stripe_webhook_secret_missing")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"received": False, "error": "Webhooks not configured"},
        )
    else:
        logger.warning("stripe_webhook_unverified", env=settings.env)

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("stripe_webhook_invalid_json", size=len(payload))
        return {"received": True, "error": "Invalid JSON payload"}

    background_tasks.add_task(services.gateway.process, event)

    logger.info(
        "stripe_webhook_received",
        event_id=event.get("id") if isinstance(event, dict) else None,
        event_type=event.get("type") if isinstance(event, dict) else None,
    )
    return {"received": True}
