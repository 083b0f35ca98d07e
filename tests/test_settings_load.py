#!filepath: tests/test_settings_load.py
from __future__ import annotations

from pathlib import Path

import pytest

from ontario_obits_app.settings import AppConfig, SettingsError, load_app_config
from ontario_obits_app.utils.project_paths import ProjectPaths


def test_load_app_config_smoke() -> None:
    """Load the shipped config and check the main sections."""
    paths = ProjectPaths.discover()
    cfg = load_app_config(paths)
    assert isinstance(cfg, AppConfig)
    assert cfg.rate_limiter.tpm_budget == 5500
    assert cfg.rewriter.model == "llama-3.1-8b-instant"
    assert "as an ai" in cfg.validation.artifact_phrases
    assert Path(cfg.paths.db).is_absolute()


def test_prompt_templates_exist() -> None:
    """Ensure every prompt the LLM stages load ships in configs."""
    paths = ProjectPaths.discover()
    for name in ("rewrite_system", "rewrite_user", "audit_system", "audit_user"):
        assert (paths.prompts_dir / f"{name}.md").exists()


def test_profile_overlay_is_deep_merged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs = tmp_path / "configs"
    configs.mkdir()
    (configs / "default.yaml").write_text(
        "paths:\n  db: data/x.db\nrewriter:\n  batch_size: 1\n  model: m1\n", encoding="utf-8"
    )
    (configs / "config.staging.yaml").write_text("rewriter:\n  batch_size: 3\n", encoding="utf-8")
    monkeypatch.setenv("APP_ENV", "staging")

    cfg = load_app_config(ProjectPaths(root=tmp_path))

    assert cfg.app_env == "staging"
    assert cfg.rewriter.batch_size == 3
    assert cfg.rewriter.model == "m1"
    assert cfg.paths.db == str((tmp_path / "data" / "x.db").resolve())


def test_missing_default_config_raises(tmp_path: Path) -> None:
    with pytest.raises(SettingsError):
        load_app_config(ProjectPaths(root=tmp_path))


def test_invalid_config_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs = tmp_path / "configs"
    configs.mkdir()
    (configs / "default.yaml").write_text("rate_limiter:\n  tpm_budget: lots\n", encoding="utf-8")
    monkeypatch.setenv("APP_ENV", "production")
    with pytest.raises(SettingsError):
        load_app_config(ProjectPaths(root=tmp_path))

    (configs / "default.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(SettingsError):
        load_app_config(ProjectPaths(root=tmp_path))
