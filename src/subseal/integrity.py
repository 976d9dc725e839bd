"""Clock-manipulation heuristic.

Compares the client's claimed modification time against the best available
authoritative clock:

* **TSA vs client** — a verified TSA time exists, so any divergence beyond a
  small skew allowance is suspect.
* **server vs client** — without a trusted anchor only grossly implausible
  claims are flagged: a client time in the future of the server's receipt,
  or one more than a day away from it.
* **none** — the client reported nothing, so there is nothing to judge.

Mode selection depends only on which values are present, never on the values
themselves. Thresholds are exclusive: a delta equal to the tolerance passes.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models import (
    ComparisonMode,
    EffectiveTimestampResult,
    IntegrityVerdict,
    TimestampSource,
)
from .models_timestamp import as_utc

logger = logging.getLogger("subseal.integrity")

TSA_TOLERANCE_MINUTES = 2.0
SERVER_TOLERANCE_MINUTES = 24 * 60.0


class IntegrityPolicy(BaseModel):
    """Tolerance windows for the manipulation heuristic.

    Attributes:
        tsa_tolerance_minutes: Allowed TSA/client divergence.
        server_tolerance_minutes: Allowed server/client divergence when no
            TSA time is available.
    """

    tsa_tolerance_minutes: float = Field(TSA_TOLERANCE_MINUTES, ge=0)
    server_tolerance_minutes: float = Field(SERVER_TOLERANCE_MINUTES, ge=0)

    model_config = {"frozen": True}


DEFAULT_POLICY = IntegrityPolicy()


def minutes_between(a: datetime, b: datetime) -> float:
    """Absolute difference between two instants, in minutes."""
    return abs((as_utc(a) - as_utc(b)).total_seconds()) / 60.0


def analyze(
    effective: EffectiveTimestampResult,
    client_reported: Optional[datetime],
    server_received: datetime,
    policy: Optional[IntegrityPolicy] = None,
) -> IntegrityVerdict:
    """Judge whether the client's claimed time is plausible.

    Args:
        effective: Resolved effective timestamp.
        client_reported: Modification time claimed by the client, if any.
        server_received: Server receipt time.
        policy: Tolerance windows; defaults to 2 minutes / 24 hours.

    Returns:
        The verdict with the measured delta and the comparison mode used.
    """
    policy = policy or DEFAULT_POLICY

    if client_reported is None:
        return IntegrityVerdict(
            suspected_manipulation=False,
            delta_minutes=None,
            comparison_mode=ComparisonMode.NONE,
        )

    client_reported = as_utc(client_reported)
    server_received = as_utc(server_received)

    if effective.source == TimestampSource.TSA_VERIFIED:
        delta = minutes_between(effective.time, client_reported)
        suspected = delta > policy.tsa_tolerance_minutes
        mode = ComparisonMode.TSA_VS_CLIENT
    else:
        delta = minutes_between(server_received, client_reported)
        future_dated = client_reported > server_received
        suspected = future_dated or delta > policy.server_tolerance_minutes
        mode = ComparisonMode.SERVER_VS_CLIENT

    if suspected:
        logger.warning(
            "Suspected time manipulation: %s delta %.3f min", mode.value, delta
        )

    return IntegrityVerdict(
        suspected_manipulation=suspected,
        delta_minutes=delta,
        comparison_mode=mode,
    )
