"""Click and legacy event tracking."""

from vouchfor.tracking.clicks import ClickRecorder, ClickResult, build_redirect_url
from vouchfor.tracking.legacy import LegacyTrackingService, SignupResult

__all__ = [
    "ClickRecorder",
    "ClickResult",
    "LegacyTrackingService",
    "SignupResult",
    "build_redirect_url",
]
