from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from authcore.storage.models import Session, utcnow

RAPID_SESSION_THRESHOLD = 5
DISTINCT_IP_THRESHOLD = 3
DISTINCT_PLATFORM_THRESHOLD = 2
RECENT_SESSION_LIMIT = 10

RAPID_SESSION_CREATION = "rapid_session_creation"
MULTIPLE_IPS = "multiple_ips"
MULTIPLE_PLATFORMS = "multiple_platforms"
MIXED_DEVICE_TYPES = "mixed_device_types"


@dataclass
class SuspicionReport:
    flags: List[str] = field(default_factory=list)
    risk_level: str = "low"
    session_count: int = 0
    distinct_ips: int = 0
    distinct_platforms: int = 0

    @property
    def suspicious(self) -> bool:
        return bool(self.flags)

    def to_dict(self) -> dict:
        return {
            "suspicious": self.suspicious,
            "flags": list(self.flags),
            "risk_level": self.risk_level,
        }


def risk_level_for(flag_count: int) -> str:
    if flag_count >= 3:
        return "high"
    if flag_count == 2:
        return "medium"
    return "low"


def score_sessions(
    sessions: Iterable[Session],
    *,
    now: Optional[datetime] = None,
    window: timedelta = timedelta(hours=24),
) -> SuspicionReport:
    """Flag anomalous device, IP and platform diversity in recent sessions.

    Only the most recent sessions created inside ``window`` are considered,
    revoked ones included. The result is advisory and never blocks a login.
    """
    cutoff = (now or utcnow()) - window
    recent = sorted(
        (s for s in sessions if s.created_at >= cutoff),
        key=lambda s: s.created_at,
        reverse=True,
    )[:RECENT_SESSION_LIMIT]

    ips = {s.ip_address for s in recent if s.ip_address}
    platforms = {s.platform for s in recent if s.platform}
    device_types = {s.device_type for s in recent}

    flags: List[str] = []
    if len(recent) > RAPID_SESSION_THRESHOLD:
        flags.append(RAPID_SESSION_CREATION)
    if len(ips) > DISTINCT_IP_THRESHOLD:
        flags.append(MULTIPLE_IPS)
    if len(platforms) > DISTINCT_PLATFORM_THRESHOLD:
        flags.append(MULTIPLE_PLATFORMS)
    if "mobile" in device_types and "web" in device_types:
        flags.append(MIXED_DEVICE_TYPES)

    return SuspicionReport(
        flags=flags,
        risk_level=risk_level_for(len(flags)),
        session_count=len(recent),
        distinct_ips=len(ips),
        distinct_platforms=len(platforms),
    )
