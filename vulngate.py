#!/usr/bin/env python3
import logging
import os
import sys

import click

from vuln_pipeline import __version__
from vuln_pipeline.config import (
    ADVISORY_SOURCES, CONFIG_FILENAME, LOG_LEVEL_ENV_VAR, Settings, build_advisory_source, load_config,
)
from vuln_pipeline.exceptions import (
    AdvisorySourceUnavailableError, ConfigError, MalformedManifestError, ReportEmissionError,
    UnsupportedEcosystemError,
)
from vuln_pipeline.manifests import load_manifest
from vuln_pipeline.models import POLICY_THRESHOLDS
from vuln_pipeline.pipeline import resolve_sources, run_scan
from vuln_pipeline.report import emit, render_html, write_output
from vuln_pipeline.resolver import LAYER_SCOPES, default_registry
from vuln_pipeline import sbom
from vuln_pipeline.vulndb import LocalAdvisorySource

logger = logging.getLogger("vulngate")

# --- Exit codes ---
EXIT_OK = 0
EXIT_POLICY_BLOCKING = 1
EXIT_BAD_INPUT = 2
EXIT_SOURCE_UNAVAILABLE = 3
EXIT_EMISSION_FAILED = 4

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


# --- Helper Functions ---
def _setup_logging(level: str | None) -> None:
    level = (level or os.environ.get(LOG_LEVEL_ENV_VAR) or "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def _fail(message: str, code: int):
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(code)


def _load_settings(config_path: str, overrides: dict) -> Settings:
    return Settings.from_mapping(load_config(config_path), overrides=overrides)


def _load_sources(paths) -> list:
    sources = []
    for path in paths:
        sources.extend(load_manifest(path))
    return sources


# --- CLI Definition ---
@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.version_option(__version__, prog_name="vulngate")
def cli():
    """
    vulngate: scans dependency manifests and container images for known
    vulnerabilities and gates CI on a severity threshold.
    """


@cli.command("scan")
@click.argument("manifests", nargs=-1, required=True, type=click.Path(dir_okay=False))
@click.option("--config", "config_path", default=CONFIG_FILENAME, show_default=True, help="YAML configuration file.")
@click.option("--source", type=click.Choice(ADVISORY_SOURCES), help="Advisory source to query.")
@click.option("--feed", type=click.Path(dir_okay=False), help="Advisory feed file (implies --source file).")
@click.option("--endpoint", help="OSV-compatible API base URL.")
@click.option("--monitor-url", help="Endpoint used to register the project for continuous monitoring.")
@click.option("--fail-on", type=click.Choice(POLICY_THRESHOLDS, case_sensitive=False),
              help="Block when a finding is at or above this severity. Default: none.")
@click.option("--ignore", type=str, help="Comma-separated vulnerability IDs to ignore for the policy.")
@click.option("--json", "json_path", type=click.Path(dir_okay=False), help="Write the structured report here.")
@click.option("--text", "text_path", type=click.Path(dir_okay=False), help="Write the human-readable report here.")
@click.option("--html", "html_path", type=click.Path(dir_okay=False), help="Write an HTML report here.")
@click.option("--sbom", "sbom_path", type=click.Path(dir_okay=False), help="Write the component inventory here.")
@click.option("--sbom-format", type=click.Choice(sbom.FORMATS), default="inventory", show_default=True)
@click.option("--scope", type=click.Choice(LAYER_SCOPES), help="Which image layers' packages to scan.")
@click.option("--workers", type=int, help="Concurrent advisory lookups.")
@click.option("--timeout", type=float, help="Overall scan deadline in seconds.")
@click.option("--project", help="Project identifier for monitoring.")
@click.option("--monitor", is_flag=True, default=None, help="Register the project for continuous monitoring.")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False))
def scan(manifests, config_path, source, feed, endpoint, monitor_url, fail_on, ignore, json_path, text_path,
         html_path, sbom_path, sbom_format, scope, workers, timeout, project, monitor, log_level):
    """Scans manifest files (requirements.txt, package-lock.json, graph/layer JSON or YAML, image tarballs)."""
    _setup_logging(log_level)
    if feed and not source:
        source = "file"
    try:
        settings = _load_settings(config_path, {
            "advisory_source": source, "advisory_feed": feed, "osv_api_url": endpoint, "monitor_url": monitor_url,
            "fail_on": fail_on, "ignore_vulnerabilities": ignore, "max_workers": workers,
            "timeout_seconds": timeout, "project": project, "monitor": monitor, "scope": scope,
        })
        sources = _load_sources(manifests)
        advisory_source = build_advisory_source(settings)
    except (ConfigError, MalformedManifestError) as e:
        _fail(str(e), EXIT_BAD_INPUT)

    try:
        outcome = run_scan(sources, advisory_source, settings.policy, registry=default_registry(settings.scope),
                           max_workers=settings.max_workers, timeout=settings.timeout_seconds,
                           project=settings.project, monitor=settings.monitor)
    except (MalformedManifestError, UnsupportedEcosystemError) as e:
        _fail(str(e), EXIT_BAD_INPUT)
    except AdvisorySourceUnavailableError as e:
        _fail(str(e), EXIT_SOURCE_UNAVAILABLE)
    finally:
        if isinstance(advisory_source, LocalAdvisorySource):
            advisory_source.close()

    for skipped in outcome.skipped:
        click.secho(f"Warning: skipped {skipped}", fg="yellow", err=True)

    try:
        emitted = emit(outcome.report, outcome.decision)
        if json_path:
            write_output(json_path, emitted.structured)
        if text_path:
            write_output(text_path, emitted.human_readable)
        if html_path:
            write_output(html_path, render_html(outcome.report, outcome.decision))
        if sbom_path:
            write_output(sbom_path, sbom.render(outcome.inventory, sbom_format))
    except ReportEmissionError as e:
        _fail(str(e), EXIT_EMISSION_FAILED)

    click.echo(emitted.human_readable.decode("utf-8"), nl=False)
    if outcome.decision.blocking:
        click.secho(f"Policy check failed: {outcome.decision.reason}", fg="red", err=True)
        sys.exit(EXIT_POLICY_BLOCKING)
    sys.exit(EXIT_OK)


@cli.command("sbom")
@click.argument("manifests", nargs=-1, required=True, type=click.Path(dir_okay=False))
@click.option("--format", "sbom_format", type=click.Choice(sbom.FORMATS), default="inventory", show_default=True)
@click.option("--scope", type=click.Choice(LAYER_SCOPES), default=LAYER_SCOPES[0], show_default=True)
@click.option("-o", "--output", "output_path", type=click.Path(dir_okay=False), help="Write here instead of stdout.")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False))
def sbom_command(manifests, sbom_format, scope, output_path, log_level):
    """Prints the component inventory of the given manifests without any advisory lookup."""
    _setup_logging(log_level)
    try:
        passes, skipped = resolve_sources(_load_sources(manifests), default_registry(scope))
    except (MalformedManifestError, UnsupportedEcosystemError) as e:
        _fail(str(e), EXIT_BAD_INPUT)
    for error in skipped:
        click.secho(f"Warning: skipped {error}", fg="yellow", err=True)
    inventory = sbom.build_inventory(unit for _, units in passes for unit in units)
    data = sbom.render(inventory, sbom_format)
    if output_path:
        try:
            write_output(output_path, data)
        except ReportEmissionError as e:
            _fail(str(e), EXIT_EMISSION_FAILED)
        click.secho(f"Wrote {len(inventory.components)} components to {output_path}", fg="green")
    else:
        click.echo(data.decode("utf-8"), nl=False)


@cli.group("db")
def db():
    """Manages the local advisory database."""


def _open_database(config_path: str, database: str | None) -> LocalAdvisorySource:
    try:
        settings = _load_settings(config_path, {"database_path": database})
    except ConfigError as e:
        _fail(str(e), EXIT_BAD_INPUT)
    return LocalAdvisorySource(settings.database_path)


@db.command("import")
@click.argument("feed", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_path", default=CONFIG_FILENAME, show_default=True)
@click.option("--database", type=click.Path(dir_okay=False), help="SQLite database path.")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False))
def db_import(feed, config_path, database, log_level):
    """Imports a JSON/YAML advisory feed into the local database."""
    _setup_logging(log_level)
    try:
        with _open_database(config_path, database) as store:
            count = store.import_feed(feed)
    except ConfigError as e:
        _fail(str(e), EXIT_BAD_INPUT)
    except AdvisorySourceUnavailableError as e:
        _fail(str(e), EXIT_SOURCE_UNAVAILABLE)
    click.secho(f"Imported {count} advisories into {store.db_path}", fg="green")


@db.command("status")
@click.option("--config", "config_path", default=CONFIG_FILENAME, show_default=True)
@click.option("--database", type=click.Path(dir_okay=False), help="SQLite database path.")
def db_status(config_path, database):
    """Shows the advisory count and when each feed was last imported."""
    try:
        with _open_database(config_path, database) as store:
            status = store.status()
    except AdvisorySourceUnavailableError as e:
        _fail(str(e), EXIT_SOURCE_UNAVAILABLE)
    click.echo(f"Database:   {status['path']}")
    click.echo(f"Advisories: {status['advisories']}")
    if not status["feeds"]:
        click.echo("Feeds:      none imported")
    for name, updated in sorted(status["feeds"].items()):
        click.echo(f"Feed:       {name} (last updated {updated.isoformat()})")


if __name__ == "__main__":
    cli()
