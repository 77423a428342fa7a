from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from ai_queue.main import ai_queue

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Jobs, Worker, Usage, Credentials"),
]

_PAYLOAD = json.dumps({"document_id": "doc-1", "text": "Central bank holds rates steady."})


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    group, command, *rest = args
    return runner.invoke(ai_queue, [group, command, "--db-path", str(db_path), *rest])


def _job_id(output: str) -> str:
    match = re.search(r"job_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_cli_submit_worker_inspect_and_usage(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AI_QUEUE_WORKER_ID", "cli-worker")
    monkeypatch.setenv("AI_QUEUE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("AI_QUEUE_RETRY_ATTEMPTS", "3")
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    added = _invoke(
        runner,
        db_path,
        "credentials",
        "add",
        "--provider",
        "echo",
        "--api-key",
        "echo-secret-key-0001",
        "--model",
        "echo-1",
    )
    assert added.exit_code == 0, added.output
    assert "Credential stored" in added.output
    assert "echo-secret-key-0001" not in added.output

    submitted = _invoke(
        runner,
        db_path,
        "jobs",
        "submit",
        "--kind",
        "summarize",
        "--payload",
        _PAYLOAD,
        "--user-id",
        "alice",
    )
    assert submitted.exit_code == 0, submitted.output
    job_id = _job_id(submitted.output)

    worker = runner.invoke(ai_queue, ["worker", "--db-path", str(db_path), "--once"])
    assert worker.exit_code == 0, worker.output
    assert "processed=1 completed=1" in worker.output

    inspected = _invoke(runner, db_path, "jobs", "inspect", "--job-id", job_id)
    assert inspected.exit_code == 0, inspected.output
    assert "State: completed" in inspected.output
    assert "Result provider: echo model=echo-1" in inspected.output
    assert "Provider call ceiling: 9 (3 per attempt)" in inspected.output
    assert "In-lease retries: 0" in inspected.output
    assert "result_attached" in inspected.output

    usage = _invoke(runner, db_path, "usage", "show", "--user-id", "alice")
    assert usage.exit_code == 0, usage.output
    assert "entries=1" in usage.output
    assert "ceiling_cents=1000" in usage.output
    assert "echo entries=1" in usage.output

    stats = _invoke(runner, db_path, "jobs", "stats")
    assert "completed: 1" in stats.output


def test_cli_submit_rejects_bad_payload(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    not_json = _invoke(
        runner,
        db_path,
        "jobs",
        "submit",
        "--kind",
        "summarize",
        "--payload",
        "{oops",
    )
    assert not_json.exit_code != 0
    assert "not valid JSON" in not_json.output

    missing_field = _invoke(
        runner,
        db_path,
        "jobs",
        "submit",
        "--kind",
        "summarize",
        "--payload",
        '{"text": "body"}',
    )
    assert missing_field.exit_code != 0
    assert "document_id" in missing_field.output

    listed = _invoke(runner, db_path, "jobs", "list")
    assert "Jobs: 0" in listed.output


def test_cli_failed_job_management(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    job_ids = []
    for _ in range(2):
        submitted = _invoke(
            runner,
            db_path,
            "jobs",
            "submit",
            "--kind",
            "summarize",
            "--payload",
            _PAYLOAD,
        )
        job_ids.append(_job_id(submitted.output))

    worker = runner.invoke(
        ai_queue,
        ["worker", "--db-path", str(db_path), "--loop", "--concurrency", "1"],
    )
    assert worker.exit_code == 0, worker.output
    assert "failed=2" in worker.output

    failed = _invoke(runner, db_path, "jobs", "failed")
    assert "Failed jobs: 2" in failed.output
    assert "failure_class=no_eligible_provider" in failed.output

    both = _invoke(runner, db_path, "jobs", "dead-letter")
    assert both.exit_code != 0
    assert "exactly one" in both.output

    one = _invoke(runner, db_path, "jobs", "dead-letter", "--job-id", job_ids[0])
    assert f"Job dead-lettered: {job_ids[0]}" in one.output

    purged = _invoke(runner, db_path, "jobs", "purge-failed")
    assert "Failed jobs purged: 1" in purged.output

    removed = _invoke(runner, db_path, "jobs", "remove", "--job-id", job_ids[0])
    assert f"Job removed: {job_ids[0]}" in removed.output
    missing = _invoke(runner, db_path, "jobs", "remove", "--job-id", job_ids[0])
    assert "Job not found" in missing.output


def test_cli_credentials_list_masks_keys_and_remove(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    added = _invoke(
        runner,
        db_path,
        "credentials",
        "add",
        "--provider",
        "openai",
        "--api-key",
        "sk-live-abcdefghijkl",
        "--model",
        "gpt-4o-mini",
        "--user-id",
        "alice",
        "--task-kind",
        "summarize",
        "--default",
        "--skip-test",
    )
    assert added.exit_code == 0, added.output
    credential_id = re.search(r"credential_id=(\S+)", added.output).group(1)

    listed = _invoke(runner, db_path, "credentials", "list", "--user-id", "alice")
    assert "Credentials: 1" in listed.output
    assert "key=sk-...ijkl" in listed.output
    assert "tasks=summarize" in listed.output
    assert "default=yes" in listed.output
    assert "sk-live-abcdefghijkl" not in listed.output

    assert "Credentials: 0" in _invoke(runner, db_path, "credentials", "list").output

    removed = _invoke(
        runner,
        db_path,
        "credentials",
        "remove",
        "--credential-id",
        credential_id,
    )
    assert f"Credential removed: {credential_id}" in removed.output


def test_cli_credentials_test_failure_exits_non_zero(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        tmp_path / "cli.db",
        "credentials",
        "test",
        "--provider",
        "echo",
        "--api-key",
        " ",
        "--model",
        "echo-1",
    )

    assert result.exit_code != 0
    assert "Credential test failed" in result.output


def test_cli_set_budget(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    updated = _invoke(runner, db_path, "usage", "set-budget", "--user-id", "bob", "--cents", "250")
    assert "Monthly ceiling set: user=bob cents=250" in updated.output

    shown = _invoke(runner, db_path, "usage", "show", "--user-id", "bob", "--group-by", "model")
    assert "ceiling_cents=250 remaining_cents=250" in shown.output
