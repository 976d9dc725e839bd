"""Tests for SubSeal data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from subseal.errors import TsaMalformedResponse, TsaUnreachable, TsaVerificationFailed
from subseal.models import (
    ArrivalState,
    ArtifactDigest,
    EffectiveTimestampResult,
    IntegrityState,
    IntegrityVerdict,
    LockState,
    SubmissionClassification,
    SubmissionInput,
    SubmissionState,
    TimestampSource,
)
from subseal.models_timestamp import (
    HashAlgorithm,
    ParsedTimestampResponse,
    TsaConfig,
    TsaErrorKind,
    TsaOutcome,
    as_utc,
)

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestArtifactDigest:
    def test_length_checked(self):
        with pytest.raises(ValidationError):
            ArtifactDigest(value=b"\x00" * 31)

    def test_sha384(self):
        digest = ArtifactDigest(value=b"\x01" * 48, algorithm=HashAlgorithm.SHA384)
        assert digest.hex == "01" * 48

    def test_from_hex(self):
        digest = ArtifactDigest.from_hex("ab" * 32)
        assert digest.value == b"\xab" * 32
        assert digest.algorithm == HashAlgorithm.SHA256

    def test_frozen(self):
        digest = ArtifactDigest(value=b"\x00" * 32)
        with pytest.raises(ValidationError):
            digest.value = b"\x01" * 32


class TestEffectiveTimestampResult:
    """Provenance flags must agree with the source."""

    def test_tsa_verified(self):
        result = EffectiveTimestampResult(
            time=NOW,
            source=TimestampSource.TSA_VERIFIED,
            verification_attempted=True,
            verification_succeeded=True,
        )
        assert result.source == TimestampSource.TSA_VERIFIED

    def test_success_requires_attempt(self):
        with pytest.raises(ValidationError):
            EffectiveTimestampResult(
                time=NOW,
                source=TimestampSource.TSA_VERIFIED,
                verification_attempted=False,
                verification_succeeded=True,
            )

    def test_tsa_source_requires_success(self):
        with pytest.raises(ValidationError):
            EffectiveTimestampResult(
                time=NOW,
                source=TimestampSource.TSA_VERIFIED,
                verification_attempted=True,
                verification_succeeded=False,
            )

    def test_fallback_cannot_claim_success(self):
        with pytest.raises(ValidationError):
            EffectiveTimestampResult(
                time=NOW,
                source=TimestampSource.CLIENT_FALLBACK,
                verification_attempted=True,
                verification_succeeded=True,
            )

    def test_naive_time_is_utc(self):
        result = EffectiveTimestampResult(
            time=NOW.replace(tzinfo=None), source=TimestampSource.SERVER_FALLBACK
        )
        assert result.time == NOW


class TestSubmissionState:
    def test_from_results(self):
        state = SubmissionState.from_results(
            IntegrityVerdict(suspected_manipulation=True),
            SubmissionClassification(
                is_late=True,
                is_modified_after_deadline=False,
                is_modified_before_but_late=False,
                locked=True,
            ),
        )
        assert state.arrival == ArrivalState.LATE
        assert state.integrity == IntegrityState.SUSPECT
        assert state.lock == LockState.LOCKED


class TestSubmissionInput:
    def test_defaults(self):
        submission = SubmissionInput(
            digest=ArtifactDigest(value=b"\x00" * 32),
            server_received_at=NOW,
            deadline=NOW + timedelta(days=1),
        )
        assert submission.submission_id
        assert submission.client_reported_at is None

    def test_offset_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        submission = SubmissionInput(
            digest=ArtifactDigest(value=b"\x00" * 32),
            server_received_at=datetime(2026, 1, 15, 14, 0, tzinfo=plus_two),
            deadline=NOW,
        )
        assert submission.server_received_at == NOW
        assert submission.server_received_at.utcoffset() == timedelta(0)


class TestTimestampModels:
    def test_as_utc(self):
        assert as_utc(None) is None
        assert as_utc(datetime(2026, 1, 15, 12, 0)) == NOW

    def test_outcome_ok(self):
        outcome = TsaOutcome.ok(NOW, tsa_url="https://tsa.test")
        assert outcome.succeeded
        assert outcome.completed_at.tzinfo is not None

    def test_outcome_failed(self):
        outcome = TsaOutcome.failed(TsaErrorKind.MALFORMED_RESPONSE, "bad DER")
        assert not outcome.succeeded
        assert outcome.time is None

    def test_config_timeout_bounds(self):
        assert TsaConfig(timeout_seconds=120).timeout_seconds == 120
        with pytest.raises(ValidationError):
            TsaConfig(timeout_seconds=0)
        with pytest.raises(ValidationError):
            TsaConfig(timeout_seconds=300)

    def test_parsed_is_granted(self):
        assert ParsedTimestampResponse(status="granted_with_mods").is_granted
        assert not ParsedTimestampResponse(status="rejection").is_granted


class TestErrors:
    def test_error_kinds(self):
        assert TsaUnreachable("x").kind == TsaErrorKind.UNREACHABLE
        assert TsaMalformedResponse("x").kind == TsaErrorKind.MALFORMED_RESPONSE
        assert TsaVerificationFailed("x").kind == TsaErrorKind.VERIFICATION_FAILED
        assert TsaUnreachable("refused").detail == "refused"
