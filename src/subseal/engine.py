"""SubSeal integrity engine — the submission pipeline.

Hashes the artifact, asks the TSA for a verified timestamp, resolves the
effective time, runs the manipulation check and derives the deadline flags:

    hash -> TSA -> resolve -> analyze -> classify

Only the TSA call does I/O. Every other stage is a pure function of its
inputs, so a stored record can be re-derived at any time and must yield the
same result. A TSA failure never fails the submission; it only weakens the
evidence recorded for it.
"""

import asyncio
import concurrent.futures
import hashlib
import logging
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from .deadline import classify
from .errors import DigestError
from .integrity import IntegrityPolicy, analyze
from .models import (
    ArtifactDigest,
    AuditRecord,
    EffectiveTimestampResult,
    SubmissionInput,
    SubmissionOutcome,
    SubmissionRecord,
)
from .models_timestamp import HashAlgorithm, TsaErrorKind, TsaOutcome
from .resolver import resolve
from .timestamp import TimestampAuthority

logger = logging.getLogger("subseal.engine")

CHUNK_SIZE = 64 * 1024
SPOOL_MAX_BYTES = 8 * 1024 * 1024


class IntegrityEngine:
    """Stateless submission integrity pipeline.

    Args:
        authority: TSA backend, or None to skip timestamping entirely.
        policy: Tolerance windows for the manipulation check.
        tsa_timeout: Upper bound in seconds for one TSA round trip.
    """

    def __init__(
        self,
        authority: Optional[TimestampAuthority] = None,
        policy: Optional[IntegrityPolicy] = None,
        tsa_timeout: float = 30.0,
    ) -> None:
        self.authority = authority
        self.policy = policy
        self.tsa_timeout = tsa_timeout

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def hash_stream(
        stream: BinaryIO, algorithm: HashAlgorithm = HashAlgorithm.SHA256
    ) -> ArtifactDigest:
        """Digest a readable binary stream chunk by chunk.

        Raises:
            DigestError: If the stream cannot be read.
        """
        h = hashlib.new(algorithm.value)
        try:
            for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                h.update(chunk)
        except OSError as exc:
            raise DigestError(f"Cannot read upload: {exc}") from exc
        return ArtifactDigest(value=h.digest(), algorithm=algorithm)

    @staticmethod
    def hash_bytes(
        data: bytes, algorithm: HashAlgorithm = HashAlgorithm.SHA256
    ) -> ArtifactDigest:
        return ArtifactDigest(
            value=hashlib.new(algorithm.value, data).digest(), algorithm=algorithm
        )

    @classmethod
    def hash_file(
        cls, path: Path, algorithm: HashAlgorithm = HashAlgorithm.SHA256
    ) -> ArtifactDigest:
        """Digest a file on disk.

        Raises:
            DigestError: If the file is missing or unreadable.
        """
        try:
            with open(path, "rb") as f:
                return cls.hash_stream(f, algorithm)
        except OSError as exc:
            raise DigestError(f"Cannot read {path}: {exc}") from exc

    @classmethod
    def hash_fetched(
        cls,
        fetch: Callable[[BinaryIO], None],
        algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    ) -> ArtifactDigest:
        """Digest an artifact that must first be fetched from blob storage.

        ``fetch`` writes the artifact into the scratch file it is given. The
        scratch file is released on every exit path.
        """
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as scratch:
            try:
                fetch(scratch)
            except OSError as exc:
                raise DigestError(f"Cannot fetch upload: {exc}") from exc
            scratch.seek(0)
            return cls.hash_stream(scratch, algorithm)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def request_timestamp(self, digest: ArtifactDigest) -> Optional[TsaOutcome]:
        """Ask the configured TSA, or return None when none is configured.

        The call runs in a worker thread and is abandoned after
        ``tsa_timeout`` seconds, whatever the transport does.
        """
        if self.authority is None:
            return None
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="subseal-tsa"
        )
        try:
            future = executor.submit(self.authority.request_timestamp, digest)
            return future.result(timeout=self.tsa_timeout)
        except concurrent.futures.TimeoutError:
            return self._tsa_timed_out(digest.hex)
        finally:
            # Do not join: a stalled worker is left to finish on its own.
            executor.shutdown(wait=False)

    def _tsa_timed_out(self, label: str) -> TsaOutcome:
        logger.warning(
            "TSA round trip for %s exceeded %.1fs", label[:8], self.tsa_timeout
        )
        return TsaOutcome.failed(
            TsaErrorKind.UNREACHABLE,
            f"TSA did not answer within {self.tsa_timeout}s",
        )

    def evaluate(
        self,
        submission: SubmissionInput,
        tsa_outcome: Optional[TsaOutcome],
    ) -> SubmissionOutcome:
        """Run the pure stages on a submission and a TSA outcome."""
        effective = resolve(
            tsa_outcome,
            submission.client_reported_at,
            submission.server_received_at,
        )
        return self._derive(submission, effective)

    def _derive(
        self, submission: SubmissionInput, effective: EffectiveTimestampResult
    ) -> SubmissionOutcome:
        verdict = analyze(
            effective,
            submission.client_reported_at,
            submission.server_received_at,
            self.policy,
        )
        classification = classify(
            effective,
            submission.server_received_at,
            submission.deadline,
            verdict,
            submission.submitter_role,
        )
        return SubmissionOutcome(
            effective=effective,
            verdict=verdict,
            classification=classification,
            audit=AuditRecord.from_effective(effective),
        )

    def process_submission(self, submission: SubmissionInput) -> SubmissionOutcome:
        """Timestamp and classify one upload.

        Blocks for at most ``tsa_timeout`` seconds on the TSA.
        """
        tsa_outcome = self.request_timestamp(submission.digest)
        outcome = self.evaluate(submission, tsa_outcome)
        logger.info(
            "Submission %s: source=%s late=%s suspect=%s locked=%s",
            submission.submission_id[:8],
            outcome.effective.source.value,
            outcome.classification.is_late,
            outcome.verdict.suspected_manipulation,
            outcome.classification.locked,
        )
        return outcome

    async def process_submission_async(
        self, submission: SubmissionInput
    ) -> SubmissionOutcome:
        """Async variant: the TSA round trip runs in a worker thread.

        If it does not finish within ``tsa_timeout`` the submission proceeds
        as if the TSA were unreachable.
        """
        tsa_outcome: Optional[TsaOutcome] = None
        if self.authority is not None:
            try:
                tsa_outcome = await asyncio.wait_for(
                    asyncio.to_thread(self.authority.request_timestamp, submission.digest),
                    timeout=self.tsa_timeout,
                )
            except asyncio.TimeoutError:
                tsa_outcome = self._tsa_timed_out(submission.submission_id)
        return self.evaluate(submission, tsa_outcome)

    def rederive(self, record: SubmissionRecord) -> SubmissionOutcome:
        """Recompute verdict and classification from a stored record.

        The stored effective timestamp is reused as-is; the TSA is not asked
        again.
        """
        submission = SubmissionInput(
            submission_id=record.submission_id,
            digest=ArtifactDigest.from_hex(record.digest_hex, record.hash_algorithm),
            client_reported_at=record.client_reported_at,
            server_received_at=record.server_received_at,
            deadline=record.deadline,
            submitter_role=record.submitter_role,
        )
        return self._derive(submission, record.effective)
