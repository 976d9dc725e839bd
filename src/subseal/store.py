"""Filesystem-backed submission record store for SubSeal.

Everything lives on disk as JSON under ``~/.subseal/``. The store enforces
the two record rules the integrity core depends on: derived state is written
once, and a locked (late) submission cannot be deleted or replaced by the
student who owns it. Teachers are exempt from the lock.

Directory layout::

    ~/.subseal/
    ├── submissions/        # One JSON record per submission
    │   └── <submission-id>.json
    └── audit/              # Append-only audit logs (JSONL)
        └── <submission-id>.jsonl
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .errors import SubmissionImmutableError, SubmissionLockedError
from .models import AuditAction, AuditEntry, SubmissionRecord, SubmitterRole

logger = logging.getLogger("subseal.store")

DEFAULT_SUBSEAL_DIR = Path.home() / ".subseal"


def _derivation_trail(record: SubmissionRecord) -> list[tuple[AuditAction, str]]:
    """Audit lines describing how a record's derived state came about."""
    effective = record.effective
    verdict = record.verdict
    flags = record.classification

    trail = [
        (
            AuditAction.RECEIVED,
            f"{record.file_name or 'upload'} {record.hash_algorithm.value}:{record.digest_hex}",
        )
    ]
    if effective.verification_succeeded:
        trail.append((AuditAction.TIMESTAMP_VERIFIED, f"tsa time {effective.time.isoformat()}"))
    elif effective.verification_attempted:
        kind = effective.tsa_error_kind.value if effective.tsa_error_kind else "unknown"
        trail.append((AuditAction.TIMESTAMP_FAILED, f"{kind}; using {effective.source.value}"))

    delta = f"{verdict.delta_minutes:.3f}" if verdict.delta_minutes is not None else "none"
    trail.append(
        (
            AuditAction.ANALYZED,
            f"mode={verdict.comparison_mode.value} delta_minutes={delta} "
            f"suspect={verdict.suspected_manipulation}",
        )
    )
    trail.append(
        (
            AuditAction.CLASSIFIED,
            f"late={flags.is_late} modified_after={flags.is_modified_after_deadline} "
            f"modified_before_but_late={flags.is_modified_before_but_late}",
        )
    )
    if flags.locked:
        trail.append((AuditAction.LOCKED, "Late student submission locked"))
    return trail


class SubmissionStore:
    """Filesystem CRUD for submission records and their audit logs.

    Args:
        base_dir: Root directory for all subseal data.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base = base_dir or DEFAULT_SUBSEAL_DIR
        self._submissions_dir = self.base / "submissions"
        self._audit_dir = self.base / "audit"

        for d in (self._submissions_dir, self._audit_dir):
            d.mkdir(parents=True, exist_ok=True)

    def _record_path(self, submission_id: str) -> Path:
        return self._submissions_dir / f"{submission_id}.json"

    def _write(self, record: SubmissionRecord, exclusive: bool = False) -> Path:
        path = self._record_path(record.submission_id)
        # "x" makes creation atomic: a concurrent writer gets FileExistsError.
        with open(path, "x" if exclusive else "w", encoding="utf-8") as f:
            f.write(record.model_dump_json(indent=2))
        return path

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def save_submission(self, record: SubmissionRecord) -> Path:
        """Persist a newly classified submission.

        Args:
            record: The record to store.

        Returns:
            Path to the saved JSON file.

        Raises:
            SubmissionImmutableError: If a record with this ID already exists.
        """
        try:
            path = self._write(record, exclusive=True)
        except FileExistsError as exc:
            raise SubmissionImmutableError(
                f"Submission {record.submission_id} already recorded"
            ) from exc
        logger.info(
            "Saved submission %s (%s, %s)",
            record.submission_id[:8],
            record.state.arrival.value,
            record.state.lock.value,
        )

        for action, details in _derivation_trail(record):
            self.append_audit(
                AuditEntry(
                    submission_id=record.submission_id,
                    action=action,
                    actor_id=record.student_id,
                    actor_role=record.submitter_role,
                    details=details,
                )
            )
        return path

    def load_submission(self, submission_id: str) -> SubmissionRecord:
        """Load a submission record by ID.

        Raises:
            FileNotFoundError: If the submission doesn't exist.
        """
        path = self._record_path(submission_id)
        if not path.exists():
            raise FileNotFoundError(f"Submission not found: {submission_id}")
        data = json.loads(path.read_text(encoding="utf-8"))
        return SubmissionRecord.model_validate(data)

    def list_submissions(
        self,
        course_id: Optional[str] = None,
        student_id: Optional[str] = None,
    ) -> list[SubmissionRecord]:
        """List submissions, newest receipt first, optionally filtered."""
        records = []
        for f in self._submissions_dir.glob("*.json"):
            try:
                record = SubmissionRecord.model_validate(
                    json.loads(f.read_text(encoding="utf-8"))
                )
            except (OSError, ValueError) as exc:
                logger.warning("Skipping invalid submission %s: %s", f.name, exc)
                continue
            if course_id is not None and record.course_id != course_id:
                continue
            if student_id is not None and record.student_id != student_id:
                continue
            records.append(record)
        records.sort(key=lambda r: r.server_received_at, reverse=True)
        return records

    def _check_lock(
        self,
        record: SubmissionRecord,
        actor_role: SubmitterRole,
        actor_id: Optional[str],
        action: str,
    ) -> None:
        if record.locked and actor_role == SubmitterRole.STUDENT:
            self.append_audit(
                AuditEntry(
                    submission_id=record.submission_id,
                    action=AuditAction.MODIFICATION_DENIED,
                    actor_id=actor_id,
                    actor_role=actor_role,
                    details=f"{action} refused: submission is locked",
                )
            )
            logger.warning(
                "Refused %s of locked submission %s", action, record.submission_id[:8]
            )
            raise SubmissionLockedError(
                f"Submission {record.submission_id} is locked and cannot be {action}d"
            )

    def delete_submission(
        self,
        submission_id: str,
        actor_role: SubmitterRole,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Delete a submission record.

        Returns:
            True if deleted, False if not found.

        Raises:
            SubmissionLockedError: If a student tries to delete a locked record.
        """
        try:
            record = self.load_submission(submission_id)
        except FileNotFoundError:
            return False

        self._check_lock(record, actor_role, actor_id, "delete")
        self._record_path(submission_id).unlink()
        self.append_audit(
            AuditEntry(
                submission_id=submission_id,
                action=AuditAction.DELETED,
                actor_id=actor_id,
                actor_role=actor_role,
            )
        )
        logger.info("Deleted submission %s", submission_id[:8])
        return True

    def replace_submission(
        self,
        record: SubmissionRecord,
        actor_role: SubmitterRole,
        actor_id: Optional[str] = None,
    ) -> Path:
        """Replace an existing submission with a newly processed upload.

        The replacement is a fresh record with its own derived state; the
        old record's flags are never edited in place.

        Raises:
            FileNotFoundError: If there is nothing to replace.
            SubmissionLockedError: If a student tries to replace a locked record.
        """
        existing = self.load_submission(record.submission_id)
        self._check_lock(existing, actor_role, actor_id, "replace")
        path = self._write(record)
        self.append_audit(
            AuditEntry(
                submission_id=record.submission_id,
                action=AuditAction.REPLACED,
                actor_id=actor_id,
                actor_role=actor_role,
                details=f"previous digest {existing.digest_hex[:16]}",
            )
        )
        return path

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the submission's JSONL log."""
        log_path = self._audit_dir / f"{entry.submission_id}.jsonl"
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, submission_id: str) -> list[AuditEntry]:
        """Load the full audit trail for a submission, oldest first."""
        log_path = self._audit_dir / f"{submission_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValueError as exc:
                logger.warning("Skipping corrupt audit line for %s: %s", submission_id[:8], exc)
        return sorted(entries, key=lambda e: e.timestamp)
