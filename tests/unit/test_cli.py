import asyncio

import pytest
from typer.testing import CliRunner

from modweave.bus import MessageBus
from modweave.cli import app
from modweave.contracts import Message, MessageStatus
from modweave.migrations import MigrationManager, MigrationRun, RunStatus
from modweave.module import DomainModule
from modweave.persistence import SQLiteStore
from modweave.registry import ModuleRegistry
from modweave.workflow import WorkflowEngine, permit_application_template


class Billing(DomainModule):
    name = "FinancialManagement"
    version = "2.1"


async def _populate(path) -> str:
    store = SQLiteStore(path)
    registry = ModuleRegistry(store)
    await registry.register(Billing())

    dead = Message(
        target="FinancialManagement",
        message_type="process_payment",
        status=MessageStatus.DEAD_LETTERED,
        attempts=5,
        last_error="gateway down",
    )
    await store.insert(MessageBus.COLLECTION, dead.message_id, dead.to_document())

    run = MigrationRun(
        module_name="FinancialManagement",
        from_version="2.1.0",
        to_version="3.0.0",
        status=RunStatus.FAILED,
        failed_unit="split_ledger",
    )
    await store.insert(MigrationManager.RUNS, run.id, run.to_document())

    engine = WorkflowEngine(store)
    await engine.register_template(permit_application_template())
    instance = await engine.create_instance("permit_application_process", {"site": "12 High St"})
    await store.close()
    return instance.id


@pytest.fixture
def populated(tmp_path, monkeypatch):
    db = tmp_path / "ops.db"
    monkeypatch.setenv("MODWEAVE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("MODWEAVE_DATABASE_URL", f"sqlite://{db}")
    monkeypatch.delenv("MODWEAVE_TRANSPORT", raising=False)
    return asyncio.run(_populate(db))


def test_modules_list(populated):
    result = CliRunner().invoke(app, ["modules", "list"])
    assert result.exit_code == 0, result.output
    assert "FinancialManagement\t2.1.0\tregistered" in result.stdout


def test_dead_letters(populated):
    result = CliRunner().invoke(app, ["messages", "dead-letters"])
    assert result.exit_code == 0, result.output
    assert "system->FinancialManagement" in result.stdout
    assert "attempts=5" in result.stdout
    assert "gateway down" in result.stdout


def test_migration_runs_filtered_by_status(populated):
    runner = CliRunner()
    failed = runner.invoke(app, ["migrations", "runs", "--status", "failed"])
    assert failed.exit_code == 0, failed.output
    assert "failed at split_ledger" in failed.stdout

    completed = runner.invoke(app, ["migrations", "runs", "--status", "completed"])
    assert "No migration runs found" in completed.stdout


def test_workflows_list_and_show(populated):
    runner = CliRunner()
    listed = runner.invoke(app, ["workflows", "list", "--status", "active"])
    assert listed.exit_code == 0, listed.output
    assert populated in listed.stdout
    assert "application_submitted" in listed.stdout

    shown = runner.invoke(app, ["workflows", "show", populated])
    assert shown.exit_code == 0, shown.output
    assert "permit_application_process" in shown.stdout
    assert "12 High St" in shown.stdout

    missing = runner.invoke(app, ["workflows", "show", "wf-missing"])
    assert missing.exit_code == 1
    assert "not found" in missing.stdout


def test_report_lists_problem_categories(populated):
    result = CliRunner().invoke(app, ["report"])
    assert result.exit_code == 0, result.output
    assert "Dead letters: 1" in result.stdout
    assert "Failed migrations: 1" in result.stdout
    assert "Overdue instances: 0" in result.stdout


def test_empty_store(tmp_path, monkeypatch):
    monkeypatch.setenv("MODWEAVE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("MODWEAVE_DATABASE_URL", f"sqlite://{tmp_path / 'empty.db'}")
    runner = CliRunner()
    assert "No modules registered" in runner.invoke(app, ["modules", "list"]).stdout
    assert "Nothing needs attention" in runner.invoke(app, ["report"]).stdout


def test_workflow_show_lists_next_steps_and_stats(populated):
    runner = CliRunner()
    shown = runner.invoke(app, ["workflows", "show", populated])
    assert "Next: valid -> payment_required" in shown.stdout
    assert "Next: invalid -> rejected" in shown.stdout

    stats = runner.invoke(app, ["workflows", "stats"])
    assert stats.exit_code == 0, stats.output
    assert "permit_application_process\ttotal=1\tactive=1" in stats.stdout
    assert "  application_submitted: 1" in stats.stdout

    missing = runner.invoke(app, ["workflows", "stats", "--template", "nope"])
    assert missing.exit_code == 1
