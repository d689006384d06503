"""Affiliate tracking links: record the click, then redirect."""

import asyncio
from functools import partial

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse

from vouchfor.api.deps import LedgerServices, get_services
from vouchfor.api.rate_limit import client_ip, limiter
from vouchfor.logging_config import get_logger
from vouchfor.settings import settings
from vouchfor.tracking.clicks import build_redirect_url

logger = get_logger(__name__)

router = APIRouter(tags=["links"])


@router.get("/go/{affiliate_id}/{vendor_id}")
@limiter.limit(settings.track_rate_limit)
async def follow_tracking_link(
    request: Request,
    affiliate_id: str,
    vendor_id: str,
    services: LedgerServices = Depends(get_services),
):
    """Store the referral session before redirecting to the vendor.

    The session insert is awaited so a fast navigation cannot lose the
    click, but a slow or failing store never holds back the redirect.
    """
    recorder = services.click_recorder
    vendor = await run_in_threadpool(recorder.get_trackable_vendor, vendor_id)

    # Executor futures can be abandoned on timeout, threadpool awaits cannot
    record = partial(
        recorder.record_session,
        affiliate_id,
        vendor,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
        landing_url=request.headers.get("referer"),
    )
    try:
        await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(None, record),
            timeout=settings.click_record_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "click_record_timeout",
            affiliate_id=affiliate_id,
            vendor_id=vendor_id,
            timeout=settings.click_record_timeout_seconds,
        )

    return RedirectResponse(
        url=build_redirect_url(vendor.destination_url, affiliate_id),
        status_code=302,
    )
