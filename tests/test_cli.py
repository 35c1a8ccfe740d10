"""Tests for the envkit CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import PEPPER
from envkit.cli import main
from envkit.envfile import load_env_file, write_env_file


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    return {
        "ENVKIT_HOME": str(tmp_path / "home"),
        "ENVKIT_ENCRYPTION_PEPPER": PEPPER,
        "ENVKIT_REMOTE_PATH": str(tmp_path / "shared" / "remote.db"),
    }


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def initialized(runner: CliRunner, env, workdir: Path) -> Path:
    result = runner.invoke(main, ["init", "--team", "acme", "--dir", str(workdir)], env=env)
    assert result.exit_code == 0, result.output
    return workdir


class TestCLI:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "envkit" in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])
        for command in ("init", "link", "unlink", "push", "pull", "sync", "status", "diff", "get", "set", "delete"):
            assert command in result.output

    def test_init(self, initialized: Path):
        assert load_env_file(initialized / ".env.local")["PROJECT_NAME"] == "my-app"
        assert (initialized / ".gitignore").exists()

    def test_push_then_status(self, runner, env, initialized: Path):
        result = runner.invoke(main, ["push", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output
        assert "PROJECT_NAME" in result.output

        result = runner.invoke(main, ["status", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output
        assert "In sync" in result.output

    def test_set_get_delete(self, runner, env, initialized: Path):
        runner.invoke(main, ["push", "--dir", str(initialized)], env=env)

        result = runner.invoke(main, ["set", "API_KEY", "k-1", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output

        result = runner.invoke(main, ["get", "API_KEY", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0
        assert result.output.strip() == "k-1"

        result = runner.invoke(main, ["delete", "API_KEY", "--yes", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output
        assert "API_KEY" not in load_env_file(initialized / ".env.local")

    def test_set_prompts_for_value(self, runner, env, initialized: Path):
        runner.invoke(main, ["push", "--dir", str(initialized)], env=env)
        result = runner.invoke(
            main, ["set", "TOKEN", "--dir", str(initialized)], env=env, input="hidden\n"
        )
        assert result.exit_code == 0, result.output
        assert load_env_file(initialized / ".env.local")["TOKEN"] == "hidden"

    def test_get_previous(self, runner, env, initialized: Path):
        runner.invoke(main, ["push", "--dir", str(initialized)], env=env)
        runner.invoke(main, ["set", "API_KEY", "k-1", "--dir", str(initialized)], env=env)

        result = runner.invoke(main, ["get", "API_KEY", "--previous", "--dir", str(initialized)], env=env)
        assert result.exit_code == 1

        runner.invoke(main, ["set", "API_KEY", "k-2", "--dir", str(initialized)], env=env)
        result = runner.invoke(main, ["get", "API_KEY", "--previous", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "k-1"

    def test_get_missing(self, runner, env, initialized: Path):
        result = runner.invoke(main, ["get", "NOPE", "--dir", str(initialized)], env=env)
        assert result.exit_code == 1

    def test_diff(self, runner, env, initialized: Path):
        runner.invoke(main, ["push", "--dir", str(initialized)], env=env)
        values = load_env_file(initialized / ".env.local")
        values["LOCAL_ONLY"] = "1"
        write_env_file(initialized / ".env.local", values)

        result = runner.invoke(main, ["diff", "--dir", str(initialized)], env=env)
        assert result.exit_code == 0, result.output
        assert "LOCAL_ONLY" in result.output
        assert "only local" in result.output

    def test_sync_conflict_abort_prompt(self, runner, env, tmp_path: Path, initialized: Path):
        runner.invoke(main, ["push", "--dir", str(initialized)], env=env)
        linked = (Path(env["ENVKIT_HOME"]) / "projects" / "my-app" / "development.json").read_text()

        bob_dir = tmp_path / "bob" / "my-app"
        bob_dir.mkdir(parents=True)
        bob_env = dict(env, ENVKIT_HOME=str(tmp_path / "bob-home"))
        project_id = json.loads(linked)["remote_project_id"]
        result = runner.invoke(main, ["link", project_id, "--dir", str(bob_dir)], env=bob_env)
        assert result.exit_code == 0, result.output

        runner.invoke(main, ["set", "FROM_ALICE", "1", "--dir", str(initialized)], env=env)
        write_env_file(bob_dir / ".env.local", {"FROM_BOB": "1"})

        result = runner.invoke(main, ["sync", "--dir", str(bob_dir)], env=bob_env, input="abort\n")
        assert result.exit_code == 0, result.output
        assert "Conflict" in result.output
        assert "Aborted" in result.output
        assert load_env_file(bob_dir / ".env.local") == {"FROM_BOB": "1"}

    def test_not_linked_is_error(self, runner, env, workdir: Path):
        result = runner.invoke(main, ["push", "--dir", str(workdir)], env=env)
        assert result.exit_code == 1
        assert "not linked" in result.output

    def test_missing_pepper(self, runner, env, workdir: Path):
        env = dict(env)
        env["ENVKIT_ENCRYPTION_PEPPER"] = ""
        result = runner.invoke(main, ["push", "--dir", str(workdir)], env=env)
        assert result.exit_code == 1
        assert "ENVKIT_ENCRYPTION_PEPPER" in result.output

    def test_history(self, runner, env, initialized: Path):
        result = runner.invoke(main, ["history"], env=env)
        assert result.exit_code == 0
        assert "INIT" in result.output
