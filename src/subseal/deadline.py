"""Deadline compliance classification.

Lateness is decided by the server's receipt time alone; it is the one clock
both student and teacher already trust for arrival order. Content time (the
effective timestamp) only decides whether the work itself was changed after
the deadline.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .models import (
    EffectiveTimestampResult,
    IntegrityVerdict,
    SubmissionClassification,
    SubmitterRole,
)
from .models_timestamp import as_utc


class Severity(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ALERT = "alert"


class StatusSummary(BaseModel):
    """Reviewer-facing status line for a submission."""

    severity: Severity
    text: str

    model_config = {"frozen": True}


def classify(
    effective: EffectiveTimestampResult,
    server_received: datetime,
    deadline: datetime,
    verdict: IntegrityVerdict,
    submitter_role: SubmitterRole,
) -> SubmissionClassification:
    """Derive the deadline flags for one submission.

    Args:
        effective: Resolved effective timestamp.
        server_received: Server receipt time.
        deadline: Assignment deadline.
        verdict: Outcome of the integrity check.
        submitter_role: Role of the uploader; only students get locked.

    Returns:
        The submission classification.
    """
    server_received = as_utc(server_received)
    deadline = as_utc(deadline)

    is_late = server_received > deadline
    modified_after = effective.time > deadline
    return SubmissionClassification(
        is_late=is_late,
        is_modified_after_deadline=modified_after,
        is_modified_before_but_late=(
            is_late and not modified_after and not verdict.suspected_manipulation
        ),
        locked=is_late and submitter_role == SubmitterRole.STUDENT,
    )


# ---------------------------------------------------------------------------
# Reviewer helpers
# ---------------------------------------------------------------------------


def late_by(server_received: datetime, deadline: datetime) -> Optional[timedelta]:
    """How long after the deadline the upload arrived, or None if on time."""
    delta = as_utc(server_received) - as_utc(deadline)
    return delta if delta > timedelta(0) else None


def modified_after_by(
    effective: EffectiveTimestampResult, deadline: datetime
) -> Optional[timedelta]:
    """How long after the deadline the content was produced, or None."""
    delta = effective.time - as_utc(deadline)
    return delta if delta > timedelta(0) else None


def format_duration(delta: Optional[timedelta]) -> str:
    """Render a duration as ``"1d 2h 5m"``.

    Whole minutes only; zero parts are omitted, so anything under a minute
    renders as an empty string.
    """
    if delta is None or delta <= timedelta(0):
        return ""
    total_minutes = int(delta.total_seconds() // 60)
    days, remainder = divmod(total_minutes, 1440)
    hours, minutes = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)


def status_summary(
    classification: SubmissionClassification, verdict: IntegrityVerdict
) -> StatusSummary:
    """Summarize a submission for a reviewer, most serious finding first."""
    if verdict.suspected_manipulation:
        return StatusSummary(
            severity=Severity.ALERT,
            text="Suspected manipulation: reported modification time is implausible",
        )
    if classification.is_modified_after_deadline:
        return StatusSummary(
            severity=Severity.ALERT,
            text="File was modified after the deadline",
        )
    if classification.is_late:
        return StatusSummary(
            severity=Severity.WARNING,
            text="Late submission: file was last modified before the deadline",
        )
    return StatusSummary(severity=Severity.OK, text="On time submission")
