"""CLI entrypoint for ledger-deploy."""

from __future__ import annotations

import asyncio
import importlib
from pathlib import Path
from typing import Optional

import typer

from ledger_deploy.core.config import DeploymentConfig, Settings
from ledger_deploy.core.errors import DeployError, DeploymentAborted
from ledger_deploy.core.logging import configure_logging
from ledger_deploy.core.progress import ProgressReporter
from ledger_deploy.ledger.signer import TransactionSigner
from ledger_deploy.orchestration.history import load_history
from ledger_deploy.orchestration.orchestrator import DeploymentOrchestrator
from ledger_deploy.versioning.store import LedgerVersionStore

app = typer.Typer(name="ldep", help="Publish static web builds to a content-addressed ledger")


def _settings(config: Optional[Path]) -> Settings:
    settings = Settings.from_yaml(config)
    configure_logging(settings.log_level, use_json=settings.log_json)
    return settings


def _load_signer(factory_path: Optional[str], funding_key: Optional[str]) -> Optional[TransactionSigner]:
    """Import ``module:factory`` and call it with the funding key."""
    if not factory_path:
        return None
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        typer.echo(f"Signer must look like 'module:factory', got {factory_path!r}", err=True)
        raise typer.Exit(code=1)
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(funding_key)


def _console_reporter() -> ProgressReporter:
    return ProgressReporter(
        on_analysis_complete=lambda count: typer.echo(f"Found {count} files"),
        on_cache_analysis=lambda cached, new, _paths: typer.echo(f"{cached} cached, {new} to publish"),
        on_cycle_detected=lambda members: typer.echo(f"Warning: reference cycle {' -> '.join(members)}", err=True),
        on_wave_start=lambda index, total, paths: typer.echo(f"Wave {index + 1}/{total}: {len(paths)} files"),
        on_publish_complete=lambda path, url: typer.echo(f"  {path} -> {url}"),
        on_publish_skipped=lambda path, url, _chunks: typer.echo(f"  {path} (cached) -> {url}"),
        on_retry=lambda label, attempt, delay, reason: typer.echo(
            f"  retrying {label} in {delay:.1f}s (attempt {attempt}): {reason}", err=True
        ),
        on_progress=typer.echo,
    )


@app.command()
def deploy(
    version: str = typer.Option(..., "--version", "-v", help="Version tag for this deployment"),
    build_dir: Optional[Path] = typer.Option(None, "--build-dir", "-b", help="Build output directory"),
    description: str = typer.Option("", "--description", "-d", help="Version description"),
    fee_rate: Optional[float] = typer.Option(None, "--fee-rate", help="Fee rate in sats per KB"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Simulate without broadcasting"),
    manifest: Optional[Path] = typer.Option(None, "--manifest", help="Deployment history file"),
    project: Optional[str] = typer.Option(None, "--project", help="Project name stored in the history"),
    content_url: Optional[str] = typer.Option(None, "--content-url", help="Content service base URL"),
    version_origin: Optional[str] = typer.Option(None, "--version-origin", help="Existing version-chain origin"),
    ledger_versioning: bool = typer.Option(False, "--ledger-versioning", help="Record versions on the ledger"),
    signer: Optional[str] = typer.Option(
        None, "--signer", help="Signer factory (module:factory) used instead of the funding-key signer"
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """Deploy a build directory."""
    settings = _settings(config)
    deployment = DeploymentConfig.from_settings(
        settings,
        build_dir=build_dir,
        fee_rate=fee_rate,
        dry_run=dry_run,
        version=version,
        version_description=description,
        version_origin=version_origin,
        manifest_path=manifest,
        project_name=project,
        content_url=content_url,
    )
    orchestrator = DeploymentOrchestrator(
        deployment,
        signer=_load_signer(signer, deployment.funding_key),
        reporter=_console_reporter(),
    )
    if ledger_versioning:
        orchestrator.version_store = LedgerVersionStore(orchestrator.publish_payload, deployment.content_url)
    try:
        record = asyncio.run(orchestrator.deploy())
    except DeploymentAborted as exc:
        typer.echo(str(exc), err=True)
        if exc.partial_record is not None:
            typer.echo(f"Partial record saved with {len(exc.partial_record.transactions)} transactions", err=True)
        raise typer.Exit(code=1)
    except DeployError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deployed {record.version}: {deployment.content_url.rstrip('/')}{record.entry_point}")
    typer.echo(f"{record.new_files} new, {record.cached_count} cached, {record.new_transactions} transactions")


@app.command()
def inscribe(
    path: Path = typer.Argument(..., help="File to publish"),
    content_type: Optional[str] = typer.Option(None, "--content-type", help="Override the MIME type"),
    fee_rate: Optional[float] = typer.Option(None, "--fee-rate", help="Fee rate in sats per KB"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Simulate without broadcasting"),
    signer: Optional[str] = typer.Option(
        None, "--signer", help="Signer factory (module:factory) used instead of the funding-key signer"
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """Publish a single file."""
    settings = _settings(config)
    deployment = DeploymentConfig.from_settings(
        settings,
        build_dir=path.parent,
        fee_rate=fee_rate,
        dry_run=dry_run,
        version="inscribe",
    )
    orchestrator = DeploymentOrchestrator(
        deployment,
        signer=_load_signer(signer, deployment.funding_key),
        reporter=_console_reporter(),
    )
    try:
        unit = asyncio.run(orchestrator.publish_single(path.expanduser(), content_type))
    except DeployError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{path.name} -> {deployment.content_url.rstrip('/')}{unit.url_path}")


@app.command()
def history(
    manifest: Optional[Path] = typer.Option(None, "--manifest", help="Deployment history file"),
    as_json: bool = typer.Option(False, "--json", help="Print the full history as JSON"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """Show previous deployments."""
    settings = _settings(config)
    path = manifest or settings.manifest_path
    try:
        loaded = load_history(path)
    except DeployError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    if loaded is None:
        typer.echo(f"No deployment history at {path}")
        return
    if as_json:
        typer.echo(loaded.to_json().decode("utf-8"))
        return
    if loaded.project_name:
        typer.echo(f"Project: {loaded.project_name}")
    for record in loaded.deployments:
        typer.echo(
            f"{record.timestamp}  {record.version or '-':<12} {record.status:<8} "
            f"{record.new_files} new / {record.cached_count} cached  {record.entry_point}"
        )


if __name__ == "__main__":
    app()
