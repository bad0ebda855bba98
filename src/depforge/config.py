"""Configuration models and loading logic."""

from __future__ import annotations

import os
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_SETTINGS_FILE = Path("configs/settings.yaml")
SETTINGS_FILE_ENV = "DEPFORGE_SETTINGS_FILE"


class ProjectConfig(BaseModel):
    """Project metadata settings."""

    name: str = "myapp"
    env: str = "dev"


class PathsConfig(BaseModel):
    """Filesystem locations consumed and produced by the harness."""

    manifest_file: Path = Path("cpanfile")
    lock_file: Path = Path("cpanfile.snapshot")
    policy_file: Path = Path("tests/test-config.conf")
    containerfile: Path = Path("Containerfile")
    build_context: Path = Path(".")
    bundles_root: Path = Path("bundles")
    reports_root: Path = Path("test-reports")
    logs_root: Path = Path("logs")

    def resolved(self, project_root: Path) -> "PathsConfig":
        """Return a copy with project-relative paths resolved to absolute paths."""

        updates: dict[str, Path] = {}
        for field_name in type(self).model_fields:
            value = getattr(self, field_name)
            updates[field_name] = value if value.is_absolute() else (project_root / value).resolve()
        return self.model_copy(update=updates)


class EngineConfig(BaseModel):
    """Container engine CLI settings."""

    executable: str = "podman"
    keepalive_command: list[str] = Field(default_factory=lambda: ["sleep", "infinity"], min_length=1)


class ImagesConfig(BaseModel):
    """Image naming and the stage each user-facing target builds."""

    repository: str = "myapp"
    label_key: str = "bundle.hash"
    bundle_build_arg: str = "BUNDLE_FILE"
    targets: dict[str, str] = Field(default_factory=lambda: {"dev": "perl-dev", "runtime": "runtime"})


class BundleConfig(BaseModel):
    """Bundle naming and the installer commands run inside the tooling stage."""

    hash_length: int = Field(default=12, ge=12, le=64)
    archive_extension: str = "tar.gz"
    tooling_stage: str = "carton-runner"
    tooling_tag: str = "carton-runner"
    workdir: str = "/app"
    install_command: list[str] = Field(
        default_factory=lambda: ["carton", "install", "--deployment"], min_length=1
    )
    mirror_command: list[str] = Field(default_factory=lambda: ["carton", "bundle"], min_length=1)
    package_command: list[str] = Field(
        default_factory=lambda: [
            "tar",
            "-czf",
            "/build/cpan-bundle.tar.gz",
            "-C",
            "/app",
            "vendor",
            "cpanfile",
            "cpanfile.snapshot",
        ],
        min_length=1,
    )
    archive_path: str = "/build/cpan-bundle.tar.gz"
    lock_update_all_command: list[str] = Field(default_factory=lambda: ["carton", "update"], min_length=1)
    lock_update_module_command: list[str] = Field(
        default_factory=lambda: ["carton", "install", "{name}"], min_length=1
    )
    lock_timeout_sec: float = Field(default=1800.0, gt=0.0)
    lock_poll_sec: float = Field(default=1.0, gt=0.0)


class DependencyTestConfig(BaseModel):
    """Load-check and full-suite execution settings."""

    default_target: str = "dev"
    executor: Literal["container", "local"] = "container"
    workers: int = Field(default=1, ge=0)
    load_command: list[str] = Field(
        default_factory=lambda: ["perl", "-e", 'my $m = shift; eval "require $m; 1" or die $@;', "{name}"],
        min_length=1,
    )
    test_command: list[str] = Field(
        default_factory=lambda: ["cpanm", "--test-only", "--verbose", "{name}"], min_length=1
    )
    success_markers: list[str] = Field(
        default_factory=lambda: ["All tests successful", "Result: PASS", "Successfully tested"],
        min_length=1,
    )
    up_to_date_markers: list[str] = Field(default_factory=lambda: ["is up to date", "already installed"])
    error_context_markers: list[str] = Field(
        default_factory=lambda: ["FAIL", "Error:", "not ok", "Failed test"]
    )
    error_context_lines: int = Field(default=3, ge=0)


class AppSettings(BaseSettings):
    """Top-level application settings."""

    _yaml_file_override: ClassVar[Path | None] = None

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    images: ImagesConfig = Field(default_factory=ImagesConfig)
    bundle: BundleConfig = Field(default_factory=BundleConfig)
    testing: DependencyTestConfig = Field(default_factory=DependencyTestConfig)

    model_config = SettingsConfigDict(
        env_prefix="DEPFORGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Use YAML defaults while allowing env vars to override values."""

        yaml_file = resolve_settings_file(cls._yaml_file_override)
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_settings,
            file_secret_settings,
        )

    def as_dict(self) -> dict[str, object]:
        """Return settings as a standard nested dictionary."""

        return self.model_dump(mode="json")

    def image_tag(self, alias: str) -> str:
        """Return the floating `<repository>:<alias>` tag."""

        return f"{self.images.repository}:{alias}"


def find_project_root(start: Path | None = None) -> Path:
    """Locate the project root by traversing upward for config markers."""

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / "configs/settings.yaml").exists():
            return candidate
    return current


def resolve_settings_file(override: Path | None = None) -> Path:
    """Resolve settings file from explicit override, env var, or default."""

    chosen = override
    if chosen is None:
        env_value = os.getenv(SETTINGS_FILE_ENV)
        if env_value:
            chosen = Path(env_value)
    if chosen is None:
        chosen = DEFAULT_SETTINGS_FILE

    if not chosen.is_absolute():
        chosen = (find_project_root() / chosen).resolve()
    return chosen


def load_settings(config_file: Path | None = None) -> AppSettings:
    """Load settings with YAML defaults and environment variable overrides."""

    settings_file = resolve_settings_file(config_file)
    project_root = settings_file.parent.parent.resolve()
    AppSettings._yaml_file_override = settings_file
    try:
        settings = AppSettings()
    finally:
        AppSettings._yaml_file_override = None
    resolved_paths = settings.paths.resolved(project_root=project_root)
    return settings.model_copy(update={"paths": resolved_paths})
