"""SubSeal CLI — operator diagnostics for the submission integrity core.

Usage:
    subseal --ca-bundle tsa_bundle.pem --untrusted tsacert.pem stamp <file>
    subseal info <file.tsr>
    subseal check <file> --deadline 2026-01-15T12:00:00Z [--client-time ...]
    subseal submissions [--course <id>] [--student <id>]
    subseal audit <submission-id>
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .deadline import format_duration, late_by, modified_after_by, status_summary
from .engine import IntegrityEngine
from .errors import DigestError, SubmissionImmutableError, TrustStoreError, TsaError
from .integrity import IntegrityPolicy
from .models import SubmissionInput, SubmissionRecord, SubmitterRole
from .models_timestamp import DEFAULT_TSA_URL, HashAlgorithm, TsaConfig, as_utc
from .store import SubmissionStore
from .timestamp import (
    TimestampAuthorityClient,
    create_timestamp_request,
    load_timestamp_response,
    parse_timestamp_response,
    submit_timestamp,
    verify_timestamp_token,
)
from .trust import TrustStore

console = Console()


class IsoDateTime(click.ParamType):
    """ISO 8601 instant; naive values are read as UTC."""

    name = "datetime"

    def convert(self, value, param, ctx):
        if isinstance(value, datetime):
            return as_utc(value)
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            self.fail(f"{value!r} is not an ISO 8601 datetime", param, ctx)


ISO_DATETIME = IsoDateTime()


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "—"


def _trust_store(config: TsaConfig) -> TrustStore:
    try:
        return TrustStore.from_config(config)
    except TrustStoreError as exc:
        console.print(f"[red]Trust store error: {exc}[/]")
        sys.exit(1)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="SubSeal data directory (default: ~/.subseal)",
)
@click.option("--tsa", "tsa_url", default=DEFAULT_TSA_URL, show_default=True, help="TSA endpoint URL")
@click.option("--ca-bundle", type=click.Path(), default=None, help="PEM bundle of trusted CAs")
@click.option("--untrusted", type=click.Path(), default=None, help="PEM file with the TSA signing certificate")
@click.option("--timeout", default=30.0, show_default=True, help="TSA request timeout in seconds")
@click.option(
    "--algorithm",
    default="sha256",
    type=click.Choice([a.value for a in HashAlgorithm]),
    help="Hash algorithm (default: sha256)",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    data_dir: Optional[str],
    tsa_url: str,
    ca_bundle: Optional[str],
    untrusted: Optional[str],
    timeout: float,
    algorithm: str,
    verbose: bool,
) -> None:
    """SubSeal — trusted timestamps and deadline integrity for submissions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = TsaConfig(
            tsa_url=tsa_url,
            hash_algorithm=HashAlgorithm(algorithm),
            timeout_seconds=timeout,
            ca_bundle_path=ca_bundle,
            untrusted_cert_path=untrusted,
        )
    except ValidationError as exc:
        raise click.BadParameter(str(exc)) from exc
    ctx.obj["data_dir"] = Path(data_dir) if data_dir else None


# ---------------------------------------------------------------------------
# Stamp
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--no-save",
    is_flag=True,
    default=False,
    help="Do not save the raw response as <file>.tsr",
)
@click.pass_context
def stamp(ctx: click.Context, file: str, no_save: bool) -> None:
    """Obtain and verify an RFC 3161 timestamp for FILE."""
    config: TsaConfig = ctx.obj["config"]
    trust_store = _trust_store(config)
    path = Path(file).resolve()

    try:
        digest = IntegrityEngine.hash_file(path, config.hash_algorithm)
    except DigestError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)

    with console.status(f"[bold]Submitting timestamp request to {config.tsa_url}...[/]"):
        try:
            request = create_timestamp_request(
                digest.value, digest.algorithm, request_cert=config.request_cert
            )
            response_der = submit_timestamp(request, config)
            parsed = parse_timestamp_response(response_der)
            verified_at = verify_timestamp_token(parsed, digest, trust_store)
        except TsaError as exc:
            console.print(
                Panel(
                    f"[bold red]Timestamp failed[/] ({exc.kind.value})\n\n{exc.detail}",
                    title="SubSeal Timestamp",
                    border_style="red",
                )
            )
            sys.exit(1)

    tsr_path = None
    if not no_save:
        tsr_path = path.with_suffix(path.suffix + ".tsr")
        tsr_path.write_bytes(response_der)

    console.print(
        Panel(
            f"[bold green]Timestamp VERIFIED[/]\n\n"
            f"  File:       {path}\n"
            f"  Hash:       {digest.hex[:32]}...\n"
            f"  Algorithm:  {digest.algorithm.value}\n"
            f"  TSA:        {config.tsa_url}\n"
            f"  Certified:  {_fmt(verified_at)}\n"
            f"  Serial:     {parsed.serial_number}\n"
            f"  Response:   {tsr_path or '(not saved)'}",
            title="SubSeal Timestamp",
            border_style="green",
        )
    )


# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------


@main.command()
@click.argument("tsr_file", type=click.Path(exists=True, dir_okay=False))
def info(tsr_file: str) -> None:
    """Show the metadata of a saved timestamp response (not verified)."""
    try:
        response = load_timestamp_response(tsr_file)
    except TsaError as exc:
        console.print(f"[red]Failed to load response: {exc.detail}[/]")
        sys.exit(1)

    table = Table(title=f"Timestamp Response: {tsr_file}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Status", response.status)
    table.add_row("Status String", response.status_string or "—")
    table.add_row("Generation Time", _fmt(response.gen_time))
    table.add_row("Serial Number", str(response.serial_number or "—"))
    table.add_row("Hash Algorithm", response.hash_algorithm or "—")
    table.add_row(
        "Message Imprint",
        (response.message_imprint[:32] + "...") if response.message_imprint else "—",
    )
    table.add_row("Policy OID", response.policy_id or "—")
    table.add_row(
        "Accuracy",
        f"{response.accuracy_seconds}s" if response.accuracy_seconds else "—",
    )
    table.add_row("TSA Name", response.tsa_name or "—")
    table.add_row(
        "Token Size",
        f"{len(response.token_der)} bytes" if response.token_der else "—",
    )
    console.print(table)


# ---------------------------------------------------------------------------
# Check
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--deadline", required=True, type=ISO_DATETIME, help="Assignment deadline (ISO 8601)")
@click.option("--client-time", type=ISO_DATETIME, default=None, help="Client-reported modification time")
@click.option("--received", type=ISO_DATETIME, default=None, help="Server receipt time (default: now)")
@click.option(
    "--role",
    type=click.Choice([r.value for r in SubmitterRole]),
    default=SubmitterRole.STUDENT.value,
    show_default=True,
)
@click.option("--no-tsa", is_flag=True, default=False, help="Skip the TSA round trip")
@click.option("--tsa-tolerance", type=float, default=None, help="TSA/client tolerance in minutes")
@click.option("--server-tolerance", type=float, default=None, help="Server/client tolerance in minutes")
@click.option("--record", is_flag=True, default=False, help="Persist the result in the store")
@click.option("--course", "course_id", default=None, help="Course ID for the stored record")
@click.option("--student", "student_id", default=None, help="Student ID for the stored record")
@click.pass_context
def check(
    ctx: click.Context,
    file: str,
    deadline: datetime,
    client_time: Optional[datetime],
    received: Optional[datetime],
    role: str,
    no_tsa: bool,
    tsa_tolerance: Optional[float],
    server_tolerance: Optional[float],
    record: bool,
    course_id: Optional[str],
    student_id: Optional[str],
) -> None:
    """Run the full integrity pipeline on FILE against a deadline."""
    config: TsaConfig = ctx.obj["config"]
    path = Path(file).resolve()

    authority = None
    if not no_tsa:
        if config.ca_bundle_path:
            authority = TimestampAuthorityClient(config, _trust_store(config))
        else:
            console.print("[yellow]No --ca-bundle given; skipping TSA verification.[/]")

    policy_fields = {}
    if tsa_tolerance is not None:
        policy_fields["tsa_tolerance_minutes"] = tsa_tolerance
    if server_tolerance is not None:
        policy_fields["server_tolerance_minutes"] = server_tolerance
    engine = IntegrityEngine(
        authority=authority,
        policy=IntegrityPolicy(**policy_fields),
        tsa_timeout=config.timeout_seconds,
    )

    try:
        digest = engine.hash_file(path, config.hash_algorithm)
    except DigestError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(1)

    submission = SubmissionInput(
        course_id=course_id,
        student_id=student_id,
        file_name=path.name,
        file_size=path.stat().st_size,
        digest=digest,
        client_reported_at=client_time,
        server_received_at=received or datetime.now(timezone.utc),
        deadline=deadline,
        submitter_role=SubmitterRole(role),
    )

    with console.status("[bold]Checking submission...[/]"):
        outcome = engine.process_submission(submission)

    summary = status_summary(outcome.classification, outcome.verdict)
    color = {"ok": "green", "warning": "yellow", "alert": "red"}[summary.severity.value]
    effective = outcome.effective
    verdict = outcome.verdict
    flags = outcome.classification
    late_text = format_duration(late_by(submission.server_received_at, submission.deadline))
    modified_text = format_duration(modified_after_by(effective, submission.deadline))

    console.print(
        Panel(
            f"[bold {color}]{summary.text}[/]\n\n"
            f"  File:          {path.name}\n"
            f"  Hash:          {digest.hex[:32]}...\n"
            f"  Deadline:      {_fmt(submission.deadline)}\n"
            f"  Received:      {_fmt(submission.server_received_at)}"
            f"{f'  (late by {late_text})' if late_text else ''}\n"
            f"  Client time:   {_fmt(submission.client_reported_at)}\n"
            f"  Effective:     {_fmt(effective.time)} ({effective.source.value})"
            f"{f'  (after deadline by {modified_text})' if modified_text else ''}\n"
            f"  TSA:           attempted={effective.verification_attempted} "
            f"verified={effective.verification_succeeded}"
            f"{f' ({effective.tsa_error_kind.value})' if effective.tsa_error_kind else ''}\n"
            f"  Comparison:    {verdict.comparison_mode.value}"
            f"{f', delta {verdict.delta_minutes:.2f} min' if verdict.delta_minutes is not None else ''}\n"
            f"  Flags:         late={flags.is_late} "
            f"modified_after={flags.is_modified_after_deadline} "
            f"modified_before_but_late={flags.is_modified_before_but_late} "
            f"locked={flags.locked}",
            title="SubSeal Check",
            border_style=color,
        )
    )

    if record:
        store = SubmissionStore(ctx.obj["data_dir"])
        try:
            store.save_submission(SubmissionRecord.build(submission, outcome))
        except SubmissionImmutableError as exc:
            console.print(f"[red]{exc}[/]")
            sys.exit(1)
        console.print(f"[dim]Recorded as {submission.submission_id}[/]")


# ---------------------------------------------------------------------------
# Submissions / audit
# ---------------------------------------------------------------------------


@main.command()
@click.option("--course", "course_id", default=None, help="Filter by course")
@click.option("--student", "student_id", default=None, help="Filter by student")
@click.pass_context
def submissions(ctx: click.Context, course_id: Optional[str], student_id: Optional[str]) -> None:
    """List recorded submissions."""
    store = SubmissionStore(ctx.obj["data_dir"])
    records = store.list_submissions(course_id=course_id, student_id=student_id)

    if not records:
        console.print("[dim]No submissions found.[/]")
        return

    table = Table(title="SubSeal Submissions")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("File", style="cyan")
    table.add_column("Received")
    table.add_column("Source")
    table.add_column("Arrival", justify="center")
    table.add_column("Integrity", justify="center")
    table.add_column("Lock", justify="center")

    for r in records:
        arrival_color = "red" if r.classification.is_late else "green"
        integrity_color = "red" if r.verdict.suspected_manipulation else "green"
        table.add_row(
            r.submission_id[:12],
            r.file_name or "—",
            r.server_received_at.strftime("%Y-%m-%d %H:%M"),
            r.effective.source.value,
            f"[{arrival_color}]{r.state.arrival.value}[/]",
            f"[{integrity_color}]{r.state.integrity.value}[/]",
            r.state.lock.value,
        )

    console.print(table)


@main.command()
@click.argument("submission_id")
@click.pass_context
def audit(ctx: click.Context, submission_id: str) -> None:
    """Show the audit trail for a submission."""
    store = SubmissionStore(ctx.obj["data_dir"])
    entries = store.get_audit_trail(submission_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.actor_id or (e.actor_role.value if e.actor_role else "—"),
            e.details,
        )

    console.print(table)
