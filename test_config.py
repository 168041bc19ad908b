"""Test script for settings and application wiring."""

import git as gitpython_module

from localpipeline.app.config import Settings
from localpipeline.app.main import build_orchestrator


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("LOCALPIPELINE_HOME_DIR", str(tmp_path / "home"))
    monkeypatch.setenv("LOCALPIPELINE_MAX_RETRIES", "5")
    monkeypatch.setenv("LOCALPIPELINE_AGENT_NAMES", '["ember", "tide"]')
    monkeypatch.setenv("LOCALPIPELINE_INSTALL_COMMAND", "[]")

    config = Settings(_env_file=None)

    assert config.max_retries == 5
    assert config.agent_names == ["ember", "tide"]
    assert config.install_command == []
    assert config.shutdown_timeout == 30.0
    assert config.agents_path == tmp_path / "home" / "agents.json"
    assert config.activity_path == tmp_path / "home" / "agent-activity.jsonl"
    assert config.logs_dir == tmp_path / "home" / "logs"


def test_build_orchestrator_from_settings(tmp_path):
    repo_root = tmp_path / "app"
    gitpython_module.Repo.init(repo_root)
    config = Settings(
        _env_file=None,
        home_dir=tmp_path / "home",
        repo_root=repo_root,
        agent_names=["ember", "tide"],
        max_retries=2,
    )

    orchestrator = build_orchestrator(config)

    assert orchestrator.registry.agent_names == ("ember", "tide")
    assert orchestrator.max_retries == 2
    assert orchestrator.queue.path == tmp_path / "home" / "queue.json"
    assert orchestrator.runner.repo_root == repo_root
    assert orchestrator.runner.workspace.trunk_branch == "main"
