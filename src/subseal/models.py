"""Core data models for SubSeal submission integrity.

A submission flows through four pure derivation stages after the TSA round
trip: an effective timestamp is resolved, the client's claimed time is checked
for plausibility, and the deadline flags are derived. Each stage produces an
immutable result; the record that bundles them is written once and never
re-derived in place.

All instants are timezone-aware UTC. Naive datetimes are read as UTC.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from .models_timestamp import HashAlgorithm, TsaErrorKind, as_utc


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TimestampSource(str, Enum):
    """Where the effective timestamp came from, in decreasing trust."""

    TSA_VERIFIED = "tsa_verified"
    CLIENT_FALLBACK = "client_fallback"
    SERVER_FALLBACK = "server_fallback"


class ComparisonMode(str, Enum):
    """Which pair of clocks the integrity check compared."""

    TSA_VS_CLIENT = "tsa_vs_client"
    SERVER_VS_CLIENT = "server_vs_client"
    NONE = "none"


class SubmitterRole(str, Enum):
    """Role of the account that uploaded the artifact."""

    STUDENT = "student"
    TEACHER = "teacher"


class ArrivalState(str, Enum):
    ON_TIME = "on_time"
    LATE = "late"


class IntegrityState(str, Enum):
    VERIFIED = "verified"
    SUSPECT = "suspect"


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    RECEIVED = "received"
    TIMESTAMP_VERIFIED = "timestamp_verified"
    TIMESTAMP_FAILED = "timestamp_failed"
    ANALYZED = "analyzed"
    CLASSIFIED = "classified"
    LOCKED = "locked"
    DELETED = "deleted"
    REPLACED = "replaced"
    MODIFICATION_DENIED = "modification_denied"


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------


class ArtifactDigest(BaseModel):
    """Content digest of an uploaded artifact, computed once per upload.

    Attributes:
        value: Raw digest bytes (32 bytes for SHA-256).
        algorithm: Hash algorithm that produced ``value``.
    """

    value: bytes
    algorithm: HashAlgorithm = HashAlgorithm.SHA256

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_length(self) -> "ArtifactDigest":
        if len(self.value) != self.algorithm.digest_size:
            raise ValueError(
                f"{self.algorithm.value} digest must be "
                f"{self.algorithm.digest_size} bytes, got {len(self.value)}"
            )
        return self

    @property
    def hex(self) -> str:
        return self.value.hex()

    @classmethod
    def from_hex(
        cls, hex_digest: str, algorithm: HashAlgorithm = HashAlgorithm.SHA256
    ) -> "ArtifactDigest":
        return cls(value=bytes.fromhex(hex_digest), algorithm=algorithm)


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


class EffectiveTimestampResult(BaseModel):
    """The single time chosen to represent when the content was produced.

    Attributes:
        time: Effective instant (UTC).
        source: Which clock supplied ``time``.
        verification_attempted: True if the TSA was invoked at all.
        verification_succeeded: True if the TSA returned a verified token.
        tsa_error_kind: Failure category when the attempt failed.
    """

    time: datetime
    source: TimestampSource
    verification_attempted: bool = False
    verification_succeeded: bool = False
    tsa_error_kind: Optional[TsaErrorKind] = None

    model_config = {"frozen": True}

    @field_validator("time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_provenance(self) -> "EffectiveTimestampResult":
        if self.verification_succeeded and not self.verification_attempted:
            raise ValueError("verification cannot succeed without an attempt")
        if (self.source == TimestampSource.TSA_VERIFIED) != self.verification_succeeded:
            raise ValueError(
                "source is TSA_VERIFIED exactly when verification succeeded"
            )
        return self


class IntegrityVerdict(BaseModel):
    """Outcome of the clock-manipulation heuristic.

    Attributes:
        suspected_manipulation: True if the client's claimed time is implausible.
        delta_minutes: Absolute difference between the compared clocks, or
            None when no comparison was possible.
        comparison_mode: Which clocks were compared.
    """

    suspected_manipulation: bool = False
    delta_minutes: Optional[float] = None
    comparison_mode: ComparisonMode = ComparisonMode.NONE

    model_config = {"frozen": True}


class SubmissionClassification(BaseModel):
    """Deadline-compliance flags derived for a submission."""

    is_late: bool
    is_modified_after_deadline: bool
    is_modified_before_but_late: bool
    locked: bool

    model_config = {"frozen": True}


class SubmissionState(BaseModel):
    """Position of a submission in its write-once state machine.

    ``Created -> {OnTime | Late} -> {Verified | Suspect} -> {Unlocked | Locked}``
    """

    arrival: ArrivalState
    integrity: IntegrityState
    lock: LockState

    model_config = {"frozen": True}

    @classmethod
    def from_results(
        cls,
        verdict: IntegrityVerdict,
        classification: SubmissionClassification,
    ) -> "SubmissionState":
        return cls(
            arrival=ArrivalState.LATE if classification.is_late else ArrivalState.ON_TIME,
            integrity=(
                IntegrityState.SUSPECT
                if verdict.suspected_manipulation
                else IntegrityState.VERIFIED
            ),
            lock=LockState.LOCKED if classification.locked else LockState.UNLOCKED,
        )


class AuditRecord(BaseModel):
    """Evidence summary handed to the collaborator for persistence."""

    effective_time: datetime
    source: TimestampSource
    verification_attempted: bool
    verification_succeeded: bool
    tsa_error_kind: Optional[TsaErrorKind] = None

    model_config = {"frozen": True}

    @classmethod
    def from_effective(cls, effective: EffectiveTimestampResult) -> "AuditRecord":
        return cls(
            effective_time=effective.time,
            source=effective.source,
            verification_attempted=effective.verification_attempted,
            verification_succeeded=effective.verification_succeeded,
            tsa_error_kind=effective.tsa_error_kind,
        )


# ---------------------------------------------------------------------------
# Inbound / outbound
# ---------------------------------------------------------------------------


class SubmissionInput(BaseModel):
    """Everything the upload handler knows about one upload.

    Attributes:
        submission_id: Unique identifier for this upload.
        course_id: Course the assignment belongs to.
        student_id: Account that owns the submission.
        file_name: Original file name as uploaded.
        file_size: Size in bytes of the uploaded artifact.
        file_type: MIME type reported by the upload.
        digest: Content digest of the artifact.
        client_reported_at: Last-modified time claimed by the client, if any.
        server_received_at: When the server finished receiving the upload.
        deadline: Assignment deadline.
        submitter_role: Role of the uploading account.
    """

    submission_id: str = Field(default_factory=lambda: str(uuid4()))
    course_id: Optional[str] = None
    student_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    digest: ArtifactDigest
    client_reported_at: Optional[datetime] = None
    server_received_at: datetime
    deadline: datetime
    submitter_role: SubmitterRole = SubmitterRole.STUDENT

    @field_validator("client_reported_at", "server_received_at", "deadline")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class SubmissionOutcome(BaseModel):
    """Result returned to the upload handler."""

    effective: EffectiveTimestampResult
    verdict: IntegrityVerdict
    classification: SubmissionClassification
    audit: AuditRecord

    model_config = {"frozen": True}


class SubmissionRecord(BaseModel):
    """Persisted submission: the inputs plus every derived result.

    The derived fields are written once; the store refuses to overwrite them.
    """

    submission_id: str
    course_id: Optional[str] = None
    student_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    digest_hex: str
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    client_reported_at: Optional[datetime] = None
    server_received_at: datetime
    deadline: datetime
    submitter_role: SubmitterRole = SubmitterRole.STUDENT
    effective: EffectiveTimestampResult
    verdict: IntegrityVerdict
    classification: SubmissionClassification
    state: SubmissionState
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @field_validator("client_reported_at", "server_received_at", "deadline")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def locked(self) -> bool:
        return self.classification.locked

    @classmethod
    def build(
        cls, submission: SubmissionInput, outcome: SubmissionOutcome
    ) -> "SubmissionRecord":
        return cls(
            submission_id=submission.submission_id,
            course_id=submission.course_id,
            student_id=submission.student_id,
            file_name=submission.file_name,
            file_size=submission.file_size,
            file_type=submission.file_type,
            digest_hex=submission.digest.hex,
            hash_algorithm=submission.digest.algorithm,
            client_reported_at=submission.client_reported_at,
            server_received_at=submission.server_received_at,
            deadline=submission.deadline,
            submitter_role=submission.submitter_role,
            effective=outcome.effective,
            verdict=outcome.verdict,
            classification=outcome.classification,
            state=SubmissionState.from_results(outcome.verdict, outcome.classification),
        )


class AuditEntry(BaseModel):
    """A single entry in a submission's append-only audit trail."""

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    submission_id: str
    action: AuditAction
    actor_id: Optional[str] = None
    actor_role: Optional[SubmitterRole] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: str = ""
