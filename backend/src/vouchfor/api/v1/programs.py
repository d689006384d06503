"""Program lookup endpoints."""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from vouchfor.api.deps import LedgerServices, get_services
from vouchfor.ledger.exceptions import VendorNotFoundError
from vouchfor.storage.models import Vendor
from vouchfor.storage.repo import VendorRepository

router = APIRouter(prefix="/programs", tags=["programs"])


class ProgramResponse(BaseModel):
    """Public terms of a referral program."""
    id: str
    name: str | None
    commission_type: str
    commission_value: str
    cookie_duration: int
    is_active: bool


def _load_vendor(services: LedgerServices, vendor_id: str) -> Vendor | None:
    with services.db.session() as session:
        return VendorRepository(session).get_by_id(vendor_id)


@router.get("/{vendor_id}", response_model=ProgramResponse)
async def get_program(vendor_id: str, services: LedgerServices = Depends(get_services)):
    """Get a program's commission terms."""
    vendor = await run_in_threadpool(_load_vendor, services, vendor_id)
    if vendor is None:
        raise VendorNotFoundError(vendor_id)

    return ProgramResponse(
        id=vendor.id,
        name=vendor.name,
        commission_type=vendor.commission_type.value,
        commission_value=str(vendor.commission_value),
        cookie_duration=vendor.cookie_duration,
        is_active=vendor.is_active,
    )
