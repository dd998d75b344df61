"""Command line front door for threadline checks."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import typer
import yaml

from .acquisition import DiffAcquisitionError, acquire_diff, collect_metadata
from .audit import CheckRequest, JsonAuditSink
from .config import (
    DEFAULT_CONFIG_NAME,
    CheckSettings,
    ConfigurationError,
    build_client,
    copy_config_template,
    load_config,
    resolve_api_key,
)
from .dispatcher import run_check
from .environment import DISPLAY_NAMES, resolve_environment
from .rules import NoRulesFoundError, init_rules_dir, load_rule_report
from .schema import CheckOutcome, RuleStatus
from .tools.vcs import GitError, GitRepository

APP_HELP = "Check code changes against your team's threadlines."

app = typer.Typer(help=APP_HELP)

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else repo_root / path


def _write_config(config_path: Path) -> None:
    """Persist the default configuration with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(copy_config_template(), handle, sort_keys=False)


def render_report(outcome: CheckOutcome, *, full: bool = False) -> List[str]:
    """Return the human-readable report lines for ``outcome``."""
    lines: List[str] = []
    if outcome.message:
        lines.append(outcome.message)

    attention = outcome.by_status(RuleStatus.ATTENTION)
    for item in attention:
        lines.append(f"[attention] {item.rule_id}")
        if item.reasoning:
            lines.append(f"  {item.reasoning}")
        for path in item.file_references:
            lines.append(f"  - {path}")

    if full:
        for status in (RuleStatus.COMPLIANT, RuleStatus.NOT_RELEVANT):
            for item in outcome.by_status(status):
                reason = f": {item.reasoning}" if item.reasoning else ""
                lines.append(f"[{status.value}] {item.rule_id}{reason}")

    for item in outcome.by_status(RuleStatus.ERROR):
        message = item.error.message if item.error else item.reasoning
        lines.append(f"[error] {item.rule_id}: {message}")

    summary = outcome.summary
    lines.append(
        f"Threadlines: {summary.total} | compliant {len(outcome.by_status(RuleStatus.COMPLIANT))}"
        f" | attention {len(attention)}"
        f" | not relevant {len(outcome.by_status(RuleStatus.NOT_RELEVANT))}"
        f" | timed out {summary.timed_out} | errors {summary.errors}"
    )
    lines.append(f"Model: {outcome.model}")
    return lines


@app.command()
def init(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository root."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Create the threadlines folder with an example rule."""
    repo_root = repo.resolve()
    target, created = init_rules_dir(repo_root)
    if created:
        typer.echo(f"Created {target.relative_to(repo_root).as_posix()}")
    else:
        typer.echo(f"{target.relative_to(repo_root).as_posix()} already exists; left unchanged.")

    config_path = _resolve_path(repo_root, config)
    if not config_path.exists():
        _write_config(config_path)
        typer.echo(f"Wrote default configuration to {config_path.name}")


@app.command()
def validate(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository root."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Validate every threadline file and report problems."""
    repo_root = repo.resolve()
    try:
        settings = CheckSettings.from_config(load_config(_resolve_path(repo_root, config)))
        report = load_rule_report(repo_root, settings.rules_dir)
    except (ConfigurationError, NoRulesFoundError) as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error

    for rule in report.rules:
        typer.echo(f"[valid] {rule.id} v{rule.version} ({rule.source_path})")
    for skipped in report.skipped:
        typer.echo(f"[invalid] {skipped.path.name}")
        for problem in skipped.errors:
            typer.echo(f"  - {problem}")
    typer.echo(f"{len(report.rules)} valid, {len(report.skipped)} invalid")
    if report.skipped:
        raise typer.Exit(code=1)


@app.command()
def check(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Repository root."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    full: bool = typer.Option(False, "--full", help="Show compliant and not relevant threadlines too."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    as_json: bool = typer.Option(False, "--json", help="Print the check outcome as JSON."),
) -> None:
    """Check the pending change against every threadline."""
    _configure_logging(verbose)
    repo_root = repo.resolve()

    try:
        settings = CheckSettings.from_config(load_config(_resolve_path(repo_root, config)))
        client = build_client(settings, resolve_api_key())
    except ConfigurationError as error:
        typer.echo(f"Configuration error: {error}", err=True)
        raise typer.Exit(code=1) from error

    try:
        environment = resolve_environment()
        LOGGER.info("Environment: %s", DISPLAY_NAMES[environment])
        try:
            report = load_rule_report(repo_root, settings.rules_dir)
        except NoRulesFoundError as error:
            typer.echo(str(error), err=True)
            raise typer.Exit(code=1) from error
        for skipped in report.skipped:
            typer.echo(f"Skipping {skipped.path.name}: {'; '.join(skipped.errors)}", err=True)
        if not report.rules:
            typer.echo("No valid threadlines found; nothing to check.")
            return

        try:
            bundle = acquire_diff(environment, repo_root)
            metadata = collect_metadata(environment, GitRepository(repo_root))
        except (DiffAcquisitionError, GitError) as error:
            typer.echo(f"Unable to read changes: {error}", err=True)
            raise typer.Exit(code=1) from error

        outcome = run_check(
            report.rules,
            bundle,
            client,
            timeout=settings.rule_timeout,
            context_lines=settings.context_lines,
            temperature=settings.temperature,
            max_workers=settings.max_workers,
            audit=JsonAuditSink(_resolve_path(repo_root, settings.logs_dir)),
            request=CheckRequest(
                rules=report.rules,
                bundle=bundle,
                environment=environment,
                metadata=metadata,
            ),
        )
    finally:
        client.close()

    if as_json:
        typer.echo(outcome.model_dump_json(indent=2))
    else:
        for line in render_report(outcome, full=full):
            typer.echo(line)

    if outcome.needs_attention:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
