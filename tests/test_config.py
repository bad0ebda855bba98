from __future__ import annotations

from pathlib import Path

import pytest

from depforge.config import load_settings, resolve_settings_file


def test_defaults_fill_sections_missing_from_yaml(config_path: Path):
    settings = load_settings(config_path)

    assert settings.project.name == "myapp"
    assert settings.images.targets == {"dev": "perl-dev", "runtime": "runtime"}
    assert settings.bundle.hash_length == 12
    assert settings.testing.executor == "container"
    assert settings.testing.workers == 1
    assert settings.image_tag("dev") == "myapp:dev"


def test_paths_resolve_against_project_root(config_path: Path, project_root: Path):
    settings = load_settings(config_path)

    assert settings.paths.manifest_file == (project_root / "cpanfile").resolve()
    assert settings.paths.bundles_root == (project_root / "bundles").resolve()
    assert settings.paths.policy_file == (project_root / "tests" / "test-config.conf").resolve()


def test_env_overrides_yaml(config_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DEPFORGE_TESTING__WORKERS", "4")
    monkeypatch.setenv("DEPFORGE_IMAGES__REPOSITORY", "registry.local/shop")

    settings = load_settings(config_path)

    assert settings.testing.workers == 4
    assert settings.image_tag("runtime") == "registry.local/shop:runtime"


def test_settings_file_env_var_is_used_when_no_override(config_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DEPFORGE_SETTINGS_FILE", str(config_path))

    assert resolve_settings_file() == config_path


@pytest.fixture
def config_path(project_root: Path) -> Path:
    return project_root / "configs" / "settings.yaml"
