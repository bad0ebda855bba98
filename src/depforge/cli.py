"""Typer CLI entrypoint for depforge."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import typer
import yaml

from depforge.bundle.builder import BundleBuilder
from depforge.bundle.cache import BundleCache
from depforge.config import AppSettings, load_settings
from depforge.engine.podman import ContainerEngine, PodmanEngine
from depforge.errors import BuildError, EnvironmentPreconditionError, InputError
from depforge.images.builder import ALL_TARGETS, ImageBuilder, clean_images
from depforge.images.containerfile import compare_with_graph, load_containerfile
from depforge.images.graph import DEFAULT_IMAGE_GRAPH, render_graph, validate_graph
from depforge.logging_utils import configure_logging
from depforge.orchestrator.models import RunResult
from depforge.orchestrator.pipeline import execute_full_suite, execute_load_check
from depforge.status.reporter import build_status_report, render_status
from depforge.utils.paths import ensure_directories

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_ENVIRONMENT = 3
EXIT_BUILD = 4

app = typer.Typer(
    add_completion=False,
    help="depforge command line interface.",
    no_args_is_help=True,
)


def _load_and_optionally_configure_logger(
    config_file: Path | None,
    configure: bool,
) -> tuple[AppSettings, logging.Logger]:
    settings = load_settings(config_file=config_file)
    if configure:
        logger = configure_logging(settings.paths.logs_root / "depforge.log")
    else:
        logger = logging.getLogger("depforge")
    return settings, logger


def _build_engine(settings: AppSettings, logger: logging.Logger) -> ContainerEngine:
    return PodmanEngine(settings.engine.executable, logger=logger)


def _build_cache(settings: AppSettings, logger: logging.Logger) -> BundleCache:
    return BundleCache(
        settings.paths.bundles_root,
        hash_length=settings.bundle.hash_length,
        extension=settings.bundle.archive_extension,
        logger=logger,
    )


@contextmanager
def _exit_codes(logger: logging.Logger) -> Iterator[None]:
    """Map expected failures onto exit codes; anything else is logged and re-raised."""

    try:
        yield
    except InputError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc
    except EnvironmentPreconditionError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(code=EXIT_ENVIRONMENT) from exc
    except BuildError as exc:
        logger.error("cli.build_failed error=%s", exc)
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(code=EXIT_BUILD) from exc
    except Exception:
        logger.exception("cli.unexpected_error")
        raise


def _config_option() -> Any:
    return typer.Option(
        None,
        "--config-file",
        help="Optional settings YAML path.",
        exists=False,
        file_okay=True,
        dir_okay=False,
        readable=True,
    )


def _echo_run_result(result: RunResult) -> None:
    typer.echo(result.summary_text)
    typer.echo(f"run_id: {result.report.run_id}")
    typer.echo(f"summary_path: {result.paths.summary_path}")
    typer.echo(f"summary_json_path: {result.paths.json_path}")
    typer.echo(f"outcomes_path: {result.paths.outcomes_path}")
    typer.echo(f"details_dir: {result.paths.details_dir}")


@app.command("show-config")
def show_config(config_file: Path | None = _config_option()) -> None:
    """Print the effective configuration after env overrides."""

    settings, _ = _load_and_optionally_configure_logger(config_file, configure=False)
    rendered = yaml.safe_dump(settings.as_dict(), sort_keys=False)
    typer.echo(rendered)


@app.command("bundle")
def bundle(config_file: Path | None = _config_option()) -> None:
    """Reuse or build the bundle for the current lock file and repoint the latest alias."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    with _exit_codes(logger):
        ensure_directories([settings.paths.bundles_root])
        engine = _build_engine(settings, logger)
        cache = _build_cache(settings, logger)
        builder = BundleBuilder.from_settings(settings, engine, cache, logger=logger)
        resolution, artifact = cache.resolve_or_build(settings.paths.lock_file, settings.paths.manifest_file, builder)

    typer.echo(f"bundle_hash: {artifact.hash}")
    typer.echo(f"cache_hit: {resolution.hit}")
    typer.echo(f"bundle_path: {artifact.path}")
    typer.echo(f"latest_path: {cache.latest_path}")


@app.command("build")
def build(
    target: str = typer.Argument(ALL_TARGETS, help="Image to build: dev, runtime, or all."),
    config_file: Path | None = _config_option(),
) -> None:
    """Build dev and/or runtime images from the bundle the latest alias points at."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    allowed = [*settings.images.targets, ALL_TARGETS]
    if target not in allowed:
        raise typer.BadParameter(f"target must be one of: {', '.join(allowed)}")

    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        cache = _build_cache(settings, logger)
        builder = ImageBuilder.from_settings(settings, engine, cache, logger=logger)
        handles = builder.build_targets(target)

    for handle in handles:
        typer.echo(f"{handle.alias}: {handle.pinned_tag} (also tagged as {handle.floating_tag})")


@app.command("test-load")
def test_load(
    target: str | None = typer.Argument(None, help="Image to check: dev or runtime (default: testing.default_target)."),
    config_file: Path | None = _config_option(),
) -> None:
    """Verify every declared dependency loads inside the target image."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    effective_target = target or settings.testing.default_target
    if effective_target not in settings.images.targets:
        raise typer.BadParameter(f"target must be one of: {', '.join(settings.images.targets)}")

    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        result = execute_load_check(settings, engine, target=effective_target, logger=logger)

    _echo_run_result(result)
    if result.report.exit_code != 0:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("test-full")
def test_full(
    name: str | None = typer.Argument(None, help="Optional single dependency to test."),
    target: str | None = typer.Option(None, "--target", help="Image to test in (default: testing.default_target)."),
    config_file: Path | None = _config_option(),
) -> None:
    """Run full dependency test suites in the dev image (or one dependency's suite)."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    effective_target = target or settings.testing.default_target
    if effective_target not in settings.images.targets:
        raise typer.BadParameter(f"target must be one of: {', '.join(settings.images.targets)}")

    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        result = execute_full_suite(settings, engine, dependency=name, target=effective_target, logger=logger)

    _echo_run_result(result)
    if result.report.exit_code != 0:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("status")
def status(
    git_check: bool = typer.Option(True, "--git/--no-git", help="Check the lock file for uncommitted changes."),
    config_file: Path | None = _config_option(),
) -> None:
    """Report whether the bundle and images match the current lock file."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        cache = _build_cache(settings, logger)
        report = build_status_report(settings, engine, cache, git_check=git_check, logger=logger)

    typer.echo(render_status(report))
    if report.needs_update:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("lock-update")
def lock_update(
    update_all: bool = typer.Option(False, "--all", help="Re-resolve every dependency."),
    module: str | None = typer.Option(None, "--module", help="Add or update one dependency."),
    config_file: Path | None = _config_option(),
) -> None:
    """Refresh the lock file with the external resolver inside the tooling image."""

    if update_all == (module is not None):
        raise typer.BadParameter("Provide exactly one of --all or --module.")

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        cache = _build_cache(settings, logger)
        builder = BundleBuilder.from_settings(settings, engine, cache, logger=logger)
        result = builder.update_lock(settings.paths.manifest_file, settings.paths.lock_file, module=module)

    typer.echo(f"lock_file: {result.lock.path}")
    typer.echo(f"previous_hash: {result.previous_hash}")
    typer.echo(f"new_hash: {result.lock.short_hash}")
    typer.echo(f"changed: {result.changed}")
    if result.changed:
        typer.echo("next: depforge bundle")


@app.command("graph")
def graph(
    containerfile: bool = typer.Option(
        False,
        "--containerfile",
        help="Also diff the declared graph against the Containerfile.",
    ),
    config_file: Path | None = _config_option(),
) -> None:
    """Show the image stage graph and check its invariants."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=False)
    violations = validate_graph(DEFAULT_IMAGE_GRAPH)
    typer.echo(render_graph(DEFAULT_IMAGE_GRAPH, violations))

    drift: list[str] = []
    if containerfile:
        with _exit_codes(logger):
            parsed = load_containerfile(settings.paths.containerfile)
        drift = compare_with_graph(DEFAULT_IMAGE_GRAPH, parsed)
        if drift:
            typer.echo(f"Containerfile drift ({settings.paths.containerfile}):")
            for item in drift:
                typer.echo(f"  - {item}")
        else:
            typer.echo(f"Containerfile matches the declared graph: {settings.paths.containerfile}")

    if violations or drift:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("clean")
def clean(config_file: Path | None = _config_option()) -> None:
    """Remove tooling, dev and runtime images; bundles are preserved."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    with _exit_codes(logger):
        engine = _build_engine(settings, logger)
        removed = clean_images(engine, settings, logger=logger)

    typer.echo(f"removed: {', '.join(removed) if removed else '-'}")
    typer.echo("bundles preserved")


def main() -> None:
    """CLI script entrypoint."""

    app()


if __name__ == "__main__":
    main()
