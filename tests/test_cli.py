"""
tests/test_cli.py -- Tests for the operator CLI in main.py.

The CLI opens and closes its own stores per command, so these tests point the
cached settings at a temporary on-disk SQLite file rather than a shared-memory
URI (which would vanish between commands).
"""

from __future__ import annotations

import json

import pytest

import main as cli
from core.config import get_settings


@pytest.fixture
def cli_settings(tmp_path, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(settings, "resource_root", tmp_path / "storage")
    monkeypatch.setattr(settings, "public_base_url", "https://files.example.com/")
    return settings


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 0
    assert "usage: filegate" in capsys.readouterr().out


def test_init_db_creates_root_and_secret(cli_settings, capsys):
    assert cli.main(["init-db"]) == 0
    assert cli_settings.resource_root.is_dir()
    assert "download_token_key" in capsys.readouterr().out


def test_create_user_rejects_duplicates(cli_settings, capsys):
    assert cli.main(["create-user", "acme", "--role", "client"]) == 0
    assert cli.main(["create-user", "acme"]) == 1
    assert "already exists" in capsys.readouterr().out


def test_issue_link_then_verify(cli_settings, capsys):
    from resources.store import ResourceStore

    store = ResourceStore()
    try:
        doc_id = store.add_plan_document(5, "plans/p.pdf", "p.pdf")
    finally:
        store.close()

    assert cli.main(["issue-link", "--type", "plan_document", "--id", str(doc_id)]) == 0
    url = capsys.readouterr().out.strip()
    assert url.startswith("https://files.example.com/api/v1/downloads?resource_type=plan_document")
    token = url.split("token=", 1)[1].replace("%7C", "|")

    assert cli.main(["verify-token", "--type", "plan_document", "--id", str(doc_id), "--token", token]) == 0
    assert capsys.readouterr().out.strip() == "valid"
    assert cli.main(["verify-token", "--type", "backup", "--id", str(doc_id), "--token", token]) == 1
    assert capsys.readouterr().out.strip() == "invalid"


def test_issue_link_for_missing_record(cli_settings, capsys):
    assert cli.main(["issue-link", "--type", "task_upload", "--id", "77"]) == 1
    assert "No task_upload record" in capsys.readouterr().out


def test_audit_tail_json(cli_settings, capsys):
    from audit.models import AuditEntry, utc_now_iso
    from audit.store import AuditLog

    log = AuditLog()
    try:
        for outcome in ("denied", "completed"):
            log.record(
                AuditEntry(
                    actor_id=2,
                    actor_role="client",
                    resource_type="task_upload",
                    resource_id=1,
                    outcome=outcome,
                    reason="r",
                    timestamp=utc_now_iso(),
                    source_ip="127.0.0.1",
                )
            )
    finally:
        log.close()

    assert cli.main(["audit-tail", "--json", "--limit", "5"]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [line["outcome"] for line in lines] == ["denied", "completed"]
