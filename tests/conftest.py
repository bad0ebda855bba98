from __future__ import annotations

from pathlib import Path

import pytest

from depforge.bundle.cache import BundleCache
from depforge.config import AppSettings, load_settings

from fakes import LOCK_V1, MANIFEST_TEXT, FakeEngine

SETTINGS_TEXT = """\
project:
  name: myapp
images:
  repository: myapp
"""


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DEPFORGE_SETTINGS_FILE", raising=False)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "configs").mkdir(parents=True)
    (root / "configs" / "settings.yaml").write_text(SETTINGS_TEXT, encoding="utf-8")
    (root / "tests").mkdir()
    (root / "cpanfile").write_text(MANIFEST_TEXT, encoding="utf-8")
    (root / "cpanfile.snapshot").write_text(LOCK_V1, encoding="utf-8")
    return root


@pytest.fixture
def settings(project_root: Path) -> AppSettings:
    return load_settings(project_root / "configs" / "settings.yaml")


@pytest.fixture
def cache(settings: AppSettings) -> BundleCache:
    return BundleCache(settings.paths.bundles_root)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()

