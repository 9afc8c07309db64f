"""Tests for the kubenav CLI."""

import json

import pytest
import yaml
from click.testing import CliRunner

from kubenav.cli import cli


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def kubeconfig(tmp_path, monkeypatch):
    """A kubeconfig with two token-authenticated clusters; config lives in tmp."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    path = tmp_path / "kubeconfig"
    path.write_text(
        yaml.safe_dump(
            {
                "current-context": "prod",
                "clusters": [
                    {"name": "p", "cluster": {"server": "https://prod.invalid:6443"}},
                    {"name": "s", "cluster": {"server": "https://stage.invalid:6443"}},
                ],
                "users": [{"name": "u", "user": {"token": "secret-token"}}],
                "contexts": [
                    {"name": "prod", "context": {"cluster": "p", "user": "u"}},
                    {"name": "stage", "context": {"cluster": "s", "user": "u"}},
                ],
            }
        )
    )
    return str(path)


def test_cli_help(runner):
    """Test CLI help command."""
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "navigate many Kubernetes clusters" in result.output
    for command in ("repl", "clusters", "run", "config"):
        assert command in result.output


def test_clusters_lists_contexts_without_secrets(runner, kubeconfig):
    result = runner.invoke(cli, ["--kubeconfig", kubeconfig, "clusters"])
    assert result.exit_code == 0
    assert "prod" in result.output
    assert "stage" in result.output
    assert "secret-token" not in result.output


def test_run_without_target_fails_before_connecting(runner, kubeconfig):
    result = runner.invoke(cli, ["--kubeconfig", kubeconfig, "run", "describe"])
    assert result.exit_code == 1
    assert "needs a target" in result.output


def test_run_local_verb_succeeds(runner, kubeconfig):
    result = runner.invoke(cli, ["--kubeconfig", kubeconfig, "run", "context"])
    assert result.exit_code == 0
    assert "Current cluster: prod" in result.output


def test_run_with_unknown_context(runner, kubeconfig):
    result = runner.invoke(
        cli, ["--kubeconfig", kubeconfig, "run", "--context", "nowhere", "clear"]
    )
    assert result.exit_code == 1
    assert "nowhere" in result.output


def test_run_with_missing_kubeconfig(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    result = runner.invoke(
        cli, ["--kubeconfig", str(tmp_path / "absent"), "run", "clusters"]
    )
    assert result.exit_code == 1
    assert "cannot read kubeconfig" in result.output


def test_config_set_and_show(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    result = runner.invoke(cli, ["config", "set", "worker_budget", "6"])
    assert result.exit_code == 0

    result = runner.invoke(
        cli, ["config", "set-passphrase", "admin", "--passphrase", "hunter2"]
    )
    assert result.exit_code == 0

    result = runner.invoke(cli, ["config", "show"])
    assert result.exit_code == 0
    payload = json.loads(result.output.split("\n", 1)[1])
    assert payload["worker_budget"] == 6
    assert payload["pkcs12_passphrases"] == "<redacted>"
    assert "hunter2" not in result.output


def test_config_set_rejects_bad_values(runner, tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    result = runner.invoke(cli, ["config", "set", "stream_budget", "0"])
    assert result.exit_code == 2
    assert "must be positive" in result.output
