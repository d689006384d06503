"""Tracking API v1 endpoints (tracker beacon and legacy events)."""

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from vouchfor.api.deps import LedgerServices, get_services
from vouchfor.api.rate_limit import client_ip, limiter
from vouchfor.ledger.exceptions import ValidationError
from vouchfor.logging_config import get_logger
from vouchfor.settings import settings

logger = get_logger(__name__)

router = APIRouter(prefix="/track", tags=["tracking"])


# ==================== MODELS ====================


class TrackRequest(BaseModel):
    """Beacon sent by tracker.js when a visitor lands with ?ref=."""
    event: str | None = None
    event_type: str | None = None  # Older tracker builds
    ref_id: str | None = None
    program_id: str | None = None


class TrackResponse(BaseModel):
    success: bool
    message: str
    session_id: str | None = None


class TrackEventRequest(BaseModel):
    """Legacy tracking event."""
    referral_id: str | None = None
    event_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrackEventResponse(BaseModel):
    success: bool
    referral_id: str
    vendor_id: str
    status: str
    duplicate: bool = False


# ==================== ENDPOINTS ====================


@router.post("", response_model=TrackResponse)
@limiter.limit(settings.track_rate_limit)
async def track(
    request: Request,
    body: TrackRequest,
    services: LedgerServices = Depends(get_services),
):
    """Record a click reported by the tracking script.

    Sales are never accepted here; they arrive through payment webhooks.
    """
    event = body.event or body.event_type
    if not body.ref_id:
        raise ValidationError("ref_id is required")
    if not event:
        raise ValidationError('event is required (must be "click")')
    if event != "click":
        raise ValidationError('event must be "click"; sales are reported by payment webhooks')
    if not body.program_id:
        raise ValidationError("program_id is required")

    result = await run_in_threadpool(
        services.click_recorder.record_click,
        body.ref_id,
        body.program_id,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    )

    return TrackResponse(
        success=True,
        message="click recorded successfully" if result.session_id else "click not recorded",
        session_id=result.session_id,
    )


@router.post("/event", response_model=TrackEventResponse)
@limiter.limit(settings.track_rate_limit)
async def track_event(
    request: Request,
    body: TrackEventRequest,
    services: LedgerServices = Depends(get_services),
):
    """Record a legacy tracking event (currently ``signup``)."""
    result = await run_in_threadpool(
        services.legacy_tracking.record_event,
        body.referral_id or "",
        body.event_name or "",
        body.metadata,
    )

    return TrackEventResponse(
        success=True,
        referral_id=result.signup.id,
        vendor_id=result.signup.vendor_id,
        status=result.signup.status,
        duplicate=not result.created,
    )
