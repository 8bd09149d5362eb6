from __future__ import annotations

import json

from click.testing import CliRunner

from coach_pipeline.api.deps import decode_token
from coach_pipeline.cli import cli
from coach_pipeline.server import open_stores
from tests._helpers.jobs import write_audio


def test_token_command_issues_valid_token() -> None:
    r = CliRunner().invoke(cli, ["token", "user-7"])
    assert r.exit_code == 0, r.output
    assert decode_token(r.output.strip())["sub"] == "user-7"


def test_config_command_hides_secret_values() -> None:
    r = CliRunner().invoke(cli, ["config"])
    assert r.exit_code == 0, r.output
    report = json.loads(r.output)
    assert report["secrets"]["gemini_api_key"] == "SET"
    assert report["secrets"]["session_secret"] == "SET"
    assert "test-gemini-key-not-real" not in r.output
    assert report["public"]["chunk_minutes"] == 45


def test_recordings_add_reads_size_from_storage() -> None:
    write_audio("calls/c.mp3", size=3 * 1024 * 1024)
    r = CliRunner().invoke(cli, ["recordings", "add", "user-1", "calls/c.mp3"])
    assert r.exit_code == 0, r.output
    rec = json.loads(r.output)
    assert rec["owner_id"] == "user-1"
    assert rec["file_size_bytes"] == 3 * 1024 * 1024


def test_submit_without_run_then_status() -> None:
    runner = CliRunner()
    added = json.loads(
        runner.invoke(cli, ["recordings", "add", "user-1", "calls/d.mp3", "--duration-s", "5400"]).output
    )
    r = runner.invoke(cli, ["submit", added["id"], "--owner", "user-1", "--no-run"])
    assert r.exit_code == 0, r.output
    out = json.loads(r.output)
    assert out["totalChunks"] == 2

    r = runner.invoke(cli, ["status", added["id"]])
    assert r.exit_code == 0, r.output
    st = json.loads(r.output)
    assert st["analysisId"] == out["analysisId"]
    assert st["stage"] == "transcribing"
    assert st["attempt"] == 1

    store, _ = open_stores()
    assert store.get(out["analysisId"]) is not None


def test_submit_unknown_recording_fails_cleanly() -> None:
    r = CliRunner().invoke(cli, ["submit", "nope", "--owner", "user-1", "--no-run"])
    assert r.exit_code != 0
    assert "nope" in r.output or "not found" in r.output.lower()


def test_status_for_unknown_recording() -> None:
    r = CliRunner().invoke(cli, ["status", "nope"])
    assert r.exit_code != 0
    assert "No analysis" in r.output
