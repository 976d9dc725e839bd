"""Tests for the SubSeal CLI (stamp, info, check, submissions, audit)."""

import hashlib
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from subseal.cli import main
from subseal.errors import TsaUnreachable

GEN_TIME = datetime(2026, 1, 15, 11, 50, 0, tzinfo=timezone.utc)


@pytest.fixture
def essay(tmp_path, sample_pdf):
    path = tmp_path / "essay.pdf"
    path.write_bytes(sample_pdf)
    return path


@pytest.fixture
def runner(monkeypatch):
    # Wide console so table cells are not truncated.
    monkeypatch.setattr("subseal.cli.console", Console(width=200))
    return CliRunner()


class TestStampCommand:
    """subseal stamp"""

    def test_stamp_verifies_and_saves(self, runner, essay, sample_pdf, tsa_pki, trust_files):
        ca_bundle, untrusted = trust_files
        response = tsa_pki.make_response(hashlib.sha256(sample_pdf).digest(), GEN_TIME)

        with patch("subseal.cli.submit_timestamp", return_value=response):
            result = runner.invoke(
                main,
                ["--ca-bundle", str(ca_bundle), "--untrusted", str(untrusted), "stamp", str(essay)],
            )

        assert result.exit_code == 0, result.output
        assert "VERIFIED" in result.output
        assert (essay.parent / "essay.pdf.tsr").read_bytes() == response

    def test_stamp_no_save(self, runner, essay, sample_pdf, tsa_pki, trust_files):
        ca_bundle, untrusted = trust_files
        response = tsa_pki.make_response(hashlib.sha256(sample_pdf).digest(), GEN_TIME)

        with patch("subseal.cli.submit_timestamp", return_value=response):
            result = runner.invoke(
                main, ["--ca-bundle", str(ca_bundle), "stamp", str(essay), "--no-save"]
            )

        assert result.exit_code == 0, result.output
        assert not (essay.parent / "essay.pdf.tsr").exists()

    def test_stamp_tsa_down(self, runner, essay, trust_files):
        ca_bundle, _ = trust_files
        with patch("subseal.cli.submit_timestamp", side_effect=TsaUnreachable("refused")):
            result = runner.invoke(main, ["--ca-bundle", str(ca_bundle), "stamp", str(essay)])

        assert result.exit_code == 1
        assert "unreachable" in result.output

    def test_stamp_requires_trust_store(self, runner, essay):
        result = runner.invoke(main, ["stamp", str(essay)])
        assert result.exit_code == 1
        assert "Trust store error" in result.output

    def test_invalid_timeout(self, runner, essay):
        result = runner.invoke(main, ["--timeout", "0", "stamp", str(essay)])
        assert result.exit_code != 0


class TestInfoCommand:
    """subseal info"""

    def test_info(self, runner, tmp_path, tsa_pki):
        tsr = tmp_path / "essay.pdf.tsr"
        tsr.write_bytes(tsa_pki.make_response(b"\x00" * 32, GEN_TIME))

        result = runner.invoke(main, ["info", str(tsr)])

        assert result.exit_code == 0, result.output
        assert "granted" in result.output
        assert "sha256" in result.output

    def test_info_garbage(self, runner, tmp_path):
        tsr = tmp_path / "bad.tsr"
        tsr.write_bytes(b"garbage")
        result = runner.invoke(main, ["info", str(tsr)])
        assert result.exit_code == 1


class TestCheckCommand:
    """subseal check"""

    def test_on_time_without_tsa(self, runner, essay):
        result = runner.invoke(
            main,
            [
                "check",
                str(essay),
                "--deadline", "2026-01-15T12:00:00Z",
                "--received", "2026-01-15T11:00:00Z",
                "--client-time", "2026-01-15T10:30:00Z",
                "--no-tsa",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "On time submission" in result.output
        assert "server_vs_client" in result.output

    def test_future_client_time_alerts(self, runner, essay):
        result = runner.invoke(
            main,
            [
                "check",
                str(essay),
                "--deadline", "2026-01-15T12:00:00Z",
                "--received", "2026-01-15T11:00:00Z",
                "--client-time", "2026-01-15T11:30:00Z",
                "--no-tsa",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Suspected manipulation" in result.output

    def test_with_verified_tsa(self, runner, essay, sample_pdf, tsa_pki, trust_files):
        ca_bundle, untrusted = trust_files
        response = tsa_pki.make_response(hashlib.sha256(sample_pdf).digest(), GEN_TIME)

        with patch("subseal.timestamp.submit_timestamp", return_value=response):
            result = runner.invoke(
                main,
                [
                    "--ca-bundle", str(ca_bundle),
                    "--untrusted", str(untrusted),
                    "check",
                    str(essay),
                    "--deadline", "2026-01-15T12:00:00Z",
                    "--received", "2026-01-15T12:10:00Z",
                    "--client-time", "2026-01-15T11:49:30Z",
                ],
            )

        assert result.exit_code == 0, result.output
        assert "tsa_verified" in result.output
        assert "Late submission" in result.output

    def test_bad_deadline(self, runner, essay):
        result = runner.invoke(main, ["check", str(essay), "--deadline", "tomorrow", "--no-tsa"])
        assert result.exit_code == 2
        assert "ISO 8601" in result.output


class TestRecordsCommands:
    """subseal check --record, submissions, audit"""

    def test_record_list_and_audit(self, runner, essay, tmp_path):
        data_dir = tmp_path / "data"
        result = runner.invoke(
            main,
            [
                "--data-dir", str(data_dir),
                "check",
                str(essay),
                "--deadline", "2026-01-15T12:00:00Z",
                "--received", "2026-01-15T12:30:00Z",
                "--no-tsa",
                "--record",
                "--course", "course-1",
                "--student", "student-1",
            ],
        )
        assert result.exit_code == 0, result.output

        listing = runner.invoke(main, ["--data-dir", str(data_dir), "submissions", "--course", "course-1"])
        assert listing.exit_code == 0, listing.output
        assert "essay.pdf" in listing.output
        assert "locked" in listing.output

        submission_id = next((data_dir / "submissions").glob("*.json")).stem
        trail = runner.invoke(main, ["--data-dir", str(data_dir), "audit", submission_id])
        assert trail.exit_code == 0, trail.output
        assert "received" in trail.output
        assert "classified" in trail.output

    def test_empty_listing(self, runner, tmp_path):
        result = runner.invoke(main, ["--data-dir", str(tmp_path / "data"), "submissions"])
        assert result.exit_code == 0
        assert "No submissions found" in result.output

    def test_empty_audit(self, runner, tmp_path):
        result = runner.invoke(main, ["--data-dir", str(tmp_path / "data"), "audit", "nope"])
        assert result.exit_code == 0
        assert "No audit entries found" in result.output
