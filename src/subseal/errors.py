"""Exception hierarchy for SubSeal.

TSA-layer errors are raised inside :mod:`subseal.timestamp` and collapsed
into a failed :class:`~subseal.models_timestamp.TsaOutcome` by the client;
they never escape the submission pipeline. The remaining errors are
configuration or storage policy failures surfaced to the caller.
"""

from __future__ import annotations

from .models_timestamp import TsaErrorKind


class SubSealError(Exception):
    """Base class for all SubSeal errors."""


# ---------------------------------------------------------------------------
# TSA layer
# ---------------------------------------------------------------------------


class TsaError(SubSealError):
    """A timestamp could not be obtained or trusted.

    Attributes:
        kind: Machine-readable failure category kept for audit logging.
        detail: Human-readable description of what went wrong.
    """

    kind: TsaErrorKind = TsaErrorKind.MALFORMED_RESPONSE

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class TsaUnreachable(TsaError):
    """Network failure, timeout or non-200 HTTP status from the TSA."""

    kind = TsaErrorKind.UNREACHABLE


class TsaMalformedResponse(TsaError):
    """The TSA reply could not be decoded or carries no usable token."""

    kind = TsaErrorKind.MALFORMED_RESPONSE


class TsaVerificationFailed(TsaError):
    """Signature, certificate chain or digest check failed."""

    kind = TsaErrorKind.VERIFICATION_FAILED


# ---------------------------------------------------------------------------
# Configuration / input
# ---------------------------------------------------------------------------


class TrustStoreError(SubSealError):
    """Trust material could not be loaded."""


class DigestError(SubSealError):
    """The uploaded artifact could not be read for hashing."""


# ---------------------------------------------------------------------------
# Store policy
# ---------------------------------------------------------------------------


class SubmissionLockedError(SubSealError):
    """A locked submission cannot be changed by its owner."""


class SubmissionImmutableError(SubSealError):
    """Derived submission state is write-once."""
