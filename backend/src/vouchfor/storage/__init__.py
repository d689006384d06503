"""Persistence layer: models, database and repositories."""

from vouchfor.storage.db import Database
from vouchfor.storage.models import (
    Base,
    Commission,
    CommissionStatus,
    CommissionType,
    Conversion,
    ConversionStatus,
    OutboxKind,
    OutboxStatus,
    OutboxTask,
    ReferralSession,
    SignupReferral,
    Vendor,
)

__all__ = [
    "Base",
    "Commission",
    "CommissionStatus",
    "CommissionType",
    "Conversion",
    "ConversionStatus",
    "Database",
    "OutboxKind",
    "OutboxStatus",
    "OutboxTask",
    "ReferralSession",
    "SignupReferral",
    "Vendor",
]
