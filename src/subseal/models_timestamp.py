"""Pydantic models for RFC 3161 timestamping.

These models represent the data structures involved in Time Stamping Authority
(TSA) interactions: configuration, the parsed response, and the outcome of a
single timestamp round trip. Only the verified UTC instant travels further
down the submission pipeline; the token itself is discarded after
verification.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class HashAlgorithm(str, Enum):
    """Hash algorithms supported for timestamp requests.

    SHA-256 is the default and accepted by every public TSA.
    """

    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @property
    def digest_size(self) -> int:
        """Length in bytes of a digest produced by this algorithm."""
        return {"sha256": 32, "sha384": 48, "sha512": 64}[self.value]


class TsaErrorKind(str, Enum):
    """Why a timestamp could not be obtained. Kept for audit logging only."""

    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
    VERIFICATION_FAILED = "verification_failed"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to an aware UTC instant.

    Naive values are taken to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


DEFAULT_TSA_URL = "https://freetsa.org/tsr"


class TsaConfig(BaseModel):
    """Configuration for the TSA connection and token verification.

    Attributes:
        tsa_url: URL of the Time Stamping Authority endpoint.
        hash_algorithm: Hash algorithm to use for the timestamp request.
        timeout_seconds: Budget for the whole HTTP exchange, trickled
            replies included.
        request_cert: Whether to ask the TSA to embed its signing certificate.
        ca_bundle_path: PEM bundle with the trusted root/intermediate CAs.
        untrusted_cert_path: PEM file with the TSA's own signing certificate,
            used to build the chain but never trusted on its own.
    """

    tsa_url: str = DEFAULT_TSA_URL
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    timeout_seconds: float = 30.0
    request_cert: bool = True
    ca_bundle_path: Optional[str] = None
    untrusted_cert_path: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("timeout_seconds")
    @classmethod
    def _bounded_timeout(cls, value: float) -> float:
        if not 0 < value <= 120:
            raise ValueError("timeout_seconds must be within (0, 120]")
        return value


# ---------------------------------------------------------------------------
# TSA Response
# ---------------------------------------------------------------------------


class ParsedTimestampResponse(BaseModel):
    """A decoded RFC 3161 TimeStampResp.

    Attributes:
        status: PKI status name (``granted``, ``granted_with_mods``, ...).
        status_string: Free text status message from the TSA, if any.
        gen_time: Generation time asserted by the TSA (UTC). Not trusted
            until the token has been verified.
        serial_number: Serial assigned by the TSA to this token.
        policy_id: TSA policy OID under which the token was issued.
        hash_algorithm: Algorithm named in the token's message imprint.
        message_imprint: Hex digest embedded in the token.
        accuracy_seconds: Accuracy claimed by the TSA.
        tsa_name: Name of the TSA as given in TSTInfo, if present.
        token_der: Raw DER of the TimeStampToken (CMS ContentInfo).
    """

    status: str
    status_string: Optional[str] = None
    gen_time: Optional[datetime] = None
    serial_number: Optional[int] = None
    policy_id: Optional[str] = None
    hash_algorithm: Optional[str] = None
    message_imprint: Optional[str] = None
    accuracy_seconds: Optional[float] = None
    tsa_name: Optional[str] = None
    token_der: Optional[bytes] = None

    @property
    def is_granted(self) -> bool:
        """Return True if the TSA granted the timestamp request."""
        return self.status in ("granted", "granted_with_mods")


# ---------------------------------------------------------------------------
# Outcome of a single round trip
# ---------------------------------------------------------------------------


class TsaOutcome(BaseModel):
    """Result of one timestamp request: a verified instant or an error kind.

    Attributes:
        time: Verified generation time (UTC); set only on success.
        error_kind: Failure category when no verified time is available.
        error_detail: Human-readable failure description.
        tsa_url: Endpoint that was asked.
        serial_number: Token serial, on success.
        completed_at: When the client finished the round trip.
    """

    time: Optional[datetime] = None
    error_kind: Optional[TsaErrorKind] = None
    error_detail: Optional[str] = None
    tsa_url: Optional[str] = None
    serial_number: Optional[int] = None
    completed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = {"frozen": True}

    @field_validator("time")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def succeeded(self) -> bool:
        """Return True if a verified time is available."""
        return self.time is not None and self.error_kind is None

    @classmethod
    def ok(
        cls,
        time: datetime,
        tsa_url: Optional[str] = None,
        serial_number: Optional[int] = None,
    ) -> "TsaOutcome":
        return cls(time=time, tsa_url=tsa_url, serial_number=serial_number)

    @classmethod
    def failed(
        cls,
        kind: TsaErrorKind,
        detail: str,
        tsa_url: Optional[str] = None,
    ) -> "TsaOutcome":
        return cls(error_kind=kind, error_detail=detail, tsa_url=tsa_url)
