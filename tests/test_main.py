"""CLI tests against the simulated cluster and an unreachable Docker engine."""

import functools
import json

import pytest
from click.testing import CliRunner

from scoutusage import main
from scoutusage.engine.watch import WatchLoop


@pytest.fixture
def runner():
    return CliRunner()


def test_one_shot_jsonl(runner):
    result = runner.invoke(main.cli, ["usage", "--mock", "--output", "jsonl"])

    assert result.exit_code == 0, result.output
    record = json.loads(result.output.strip().splitlines()[-1])
    assert record["unit_count"] > 0
    assert record["source"].startswith("Mock")


def test_one_shot_table(runner):
    result = runner.invoke(main.cli, ["usage", "--mock", "--namespace", "monitoring"])

    assert result.exit_code == 0, result.output
    assert "namespace=monitoring" in result.output


def test_unmatched_pod_is_not_an_error(runner):
    result = runner.invoke(main.cli, ["usage", "--mock", "--pod", "nope", "--output", "jsonl"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output.strip())["unit_count"] == 0


def test_spy_jsonl_emits_per_cycle(runner, monkeypatch):
    monkeypatch.setattr(main, "WatchLoop", functools.partial(WatchLoop, max_cycles=2))

    result = runner.invoke(main.cli, ["usage", "--mock", "--spy", "--interval", "0.1", "--output", "jsonl"])

    assert result.exit_code == 0, result.output
    lines = [json.loads(line) for line in result.output.strip().splitlines()]
    assert len(lines) == 2
    assert "added" not in lines[0]
    assert "added" in lines[1]


def test_unreachable_docker_exits_nonzero(runner, tmp_path):
    socket_path = tmp_path / "missing.sock"
    result = runner.invoke(main.cli, ["usage", "--docker", "--docker-host", f"unix://{socket_path}"])

    assert result.exit_code == 1
    assert "unavailable during list containers" in result.output


def test_unsupported_docker_host(runner):
    result = runner.invoke(main.cli, ["usage", "--docker", "--docker-host", "ssh://box"])
    assert result.exit_code == 1
    assert "unsupported docker host" in result.output


def test_docker_and_mock_conflict(runner):
    result = runner.invoke(main.cli, ["usage", "--docker", "--mock"])
    assert result.exit_code == 2


def test_missing_kubeconfig(runner, tmp_path):
    result = runner.invoke(main.cli, ["usage", "--kubeconfig", str(tmp_path / "nope")])
    assert result.exit_code == 1
    assert "failed to load kube config" in result.output


def test_container_help_points_docker_users_at_the_flag(runner):
    result = runner.invoke(main.cli, ["usage", "--help"])
    assert result.exit_code == 0
    assert "add --docker" in " ".join(result.output.split())
