"""Effective timestamp resolution.

Picks one instant to stand for "when this content was produced", in strict
order of trust: a TSA-verified time, then the client's reported modification
time, then the server's receipt time. There is no weighting between sources.
"""

import logging
from datetime import datetime
from typing import Optional

from .models import EffectiveTimestampResult, TimestampSource
from .models_timestamp import TsaOutcome, as_utc

logger = logging.getLogger("subseal.resolver")


def resolve(
    tsa_outcome: Optional[TsaOutcome],
    client_reported: Optional[datetime],
    server_received: datetime,
) -> EffectiveTimestampResult:
    """Choose the effective timestamp for one upload.

    Args:
        tsa_outcome: Result of the TSA round trip, or None if the TSA was
            not invoked for this upload.
        client_reported: Modification time claimed by the client, if any.
        server_received: Server receipt time; always available.

    Returns:
        The effective timestamp together with its provenance.
    """
    attempted = tsa_outcome is not None
    error_kind = tsa_outcome.error_kind if attempted else None

    if attempted and tsa_outcome.succeeded:
        return EffectiveTimestampResult(
            time=tsa_outcome.time,
            source=TimestampSource.TSA_VERIFIED,
            verification_attempted=True,
            verification_succeeded=True,
        )

    if client_reported is not None:
        source = TimestampSource.CLIENT_FALLBACK
        time = as_utc(client_reported)
    else:
        source = TimestampSource.SERVER_FALLBACK
        time = as_utc(server_received)

    if attempted:
        logger.info(
            "No verified timestamp (%s); falling back to %s",
            error_kind.value if error_kind else "unknown",
            source.value,
        )

    return EffectiveTimestampResult(
        time=time,
        source=source,
        verification_attempted=attempted,
        verification_succeeded=False,
        tsa_error_kind=error_kind,
    )
