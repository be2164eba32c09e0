import asyncio

import pytest
from typer.testing import CliRunner

import rollkeeper.cli as cli
import rollkeeper.journal as journal_pkg
from rollkeeper import InMemoryCluster, RolloutEngine
from rollkeeper.cli import app
from rollkeeper.contracts import RolloutRequest, RolloutStatus
from rollkeeper.journal import InMemoryRolloutJournal

runner = CliRunner()


@pytest.fixture
def setup(monkeypatch):
    journal = InMemoryRolloutJournal()
    cluster = InMemoryCluster()
    cluster.add_workload("fe", "devrahul16/fe:41", replicas=3)
    engine = RolloutEngine(cluster, journal, poll_interval=0.01, deadline=0.3)
    monkeypatch.setattr(journal_pkg, "_journal_instance", journal)
    monkeypatch.setattr(cli, "_engine", lambda: engine)
    return cluster, journal


def test_submit_success(setup):
    cluster, _ = setup
    result = runner.invoke(
        app, ["rollout", "submit", "fe", "devrahul16/fe:42", "--request-id", "req-1"]
    )
    assert result.exit_code == 0, result.stdout
    assert "Rollout req-1: succeeded" in result.stdout
    assert "devrahul16/fe:41 -> devrahul16/fe:42" in result.stdout
    assert cluster.workload("fe").image() == "devrahul16/fe:42"


def test_submit_rolled_back_exits_nonzero(setup):
    cluster, _ = setup
    cluster.set_health("fe", [(1, 3)])
    result = runner.invoke(app, ["rollout", "submit", "fe", "devrahul16/fe:42"])
    assert result.exit_code == 1
    assert "rolled_back" in result.stdout
    assert "health_deadline_exceeded" in result.stdout


def test_submit_invalid_image(setup):
    result = runner.invoke(app, ["rollout", "submit", "fe", "repo:tag with space"])
    assert result.exit_code == 2
    assert "invalid image reference" in result.stdout


def test_status_and_list(setup):
    _, journal = setup
    req = RolloutRequest(workload_name="fe", target_image="fe:2", request_id="req-7")
    asyncio.run(journal.begin(req))
    asyncio.run(journal.start("req-7", "fe:1"))
    asyncio.run(journal.complete("req-7", RolloutStatus.SUCCEEDED))

    result = runner.invoke(app, ["rollout", "status", "req-7"])
    assert result.exit_code == 0
    assert "Rollout req-7: succeeded" in result.stdout
    assert "default/fe" in result.stdout

    result = runner.invoke(app, ["rollout", "list", "--namespace", "default"])
    assert result.exit_code == 0
    assert "req-7\tdefault/fe\tsucceeded\tfe:2" in result.stdout

    missing = runner.invoke(app, ["rollout", "status", "nope"])
    assert missing.exit_code == 1
    assert "Rollout not found" in missing.stdout


def test_list_empty(setup):
    result = runner.invoke(app, ["rollout", "list"])
    assert result.exit_code == 0
    assert "No rollouts found" in result.stdout


def test_recover_marks_pending_interrupted(setup):
    _, journal = setup
    asyncio.run(
        journal.begin(RolloutRequest(workload_name="fe", target_image="fe:2", request_id="req-3"))
    )
    result = runner.invoke(app, ["rollout", "recover"])
    assert result.exit_code == 0
    assert "req-3\tfailed (interrupted)" in result.stdout

    result = runner.invoke(app, ["rollout", "recover"])
    assert "Nothing to recover" in result.stdout


def test_image_resolve():
    result = runner.invoke(app, ["image", "resolve", "devrahul16/fe:42"])
    assert result.exit_code == 0
    assert "Canonical: docker.io/devrahul16/fe:42" in result.stdout
    assert "mutable tag" in result.stdout

    pinned = runner.invoke(app, ["image", "resolve", "devrahul16/fe@sha256:" + "c" * 64])
    assert pinned.exit_code == 0
    assert "mutable tag" not in pinned.stdout

    bad = runner.invoke(app, ["image", "resolve", "Bad Image"])
    assert bad.exit_code == 2


def test_status_shows_lease_holder_of_active_rollout(setup):
    _, journal = setup
    asyncio.run(
        journal.begin(
            RolloutRequest(workload_name="fe", target_image="fe:2", request_id="req-4"),
            owner="worker-a",
        )
    )
    result = runner.invoke(app, ["rollout", "status", "req-4"])
    assert result.exit_code == 0
    assert "Driven by: worker-a" in result.stdout
