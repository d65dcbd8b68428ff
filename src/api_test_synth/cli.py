"""CLI entry point for api-test-synth."""

import logging
import sys
from pathlib import Path

import click

from api_test_synth.config import load_config
from api_test_synth.errors import ConfigError, ConflictError, SourceTreeError, SynthError, UnboundVariableError
from api_test_synth.parser.detect import ADAPTERS
from api_test_synth.pipeline import Pipeline

EXIT_OK = 0
EXIT_REPORTED = 1
EXIT_INPUT = 2

ADAPTER_CHOICES = ["auto", *sorted(ADAPTERS)]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _report(issues) -> None:
    for issue in issues:
        kind = type(issue).__name__
        click.echo(f"  {kind}: {issue}", err=True)


@click.group()
def main():
    """API Test Synth: generate Postman test collections from web service sources."""
    pass


@main.command()
@click.option("--source", required=True, type=click.Path(path_type=Path), help="Root of the source tree to scan.")
@click.option("--adapter", default="auto", type=click.Choice(ADAPTER_CHOICES), help="Framework adapter.")
@click.option("--out", "output", required=True, type=click.Path(path_type=Path), help="Output collection JSON file.")
@click.option("--config", "config_path", default=None, type=click.Path(path_type=Path), help="YAML/JSON config file.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def generate(source: Path, adapter: str, output: Path, config_path: Path | None, verbose: bool):
    """Scan a source tree and write a Postman v2.1 test collection."""
    _setup_logging(verbose)
    pipeline = None
    try:
        pipeline = Pipeline(load_config(config_path))
        click.echo(f"Scanning {source} (adapter: {adapter})...")
        result = pipeline.run(source, adapter)
    except (SourceTreeError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INPUT)
    except (ConflictError, UnboundVariableError) as e:
        click.echo(f"Error: {e}", err=True)
        _report(pipeline.issues)
        sys.exit(EXIT_REPORTED)
    except SynthError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_REPORTED)

    click.echo(f"Found {len(result.descriptors)} endpoints, synthesized {len(result.cases)} test cases.")
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(result.document.to_json(), encoding="utf-8")
    click.echo(f"Collection saved to {output}")

    if result.issues:
        click.echo(f"{len(result.issues)} issues recorded:", err=True)
        _report(result.issues)
    if result.discovery_errors:
        sys.exit(EXIT_REPORTED)


@main.command("list-endpoints")
@click.option("--source", required=True, type=click.Path(path_type=Path), help="Root of the source tree to scan.")
@click.option("--adapter", default="auto", type=click.Choice(ADAPTER_CHOICES), help="Framework adapter.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def list_endpoints(source: Path, adapter: str, verbose: bool):
    """Print the endpoint descriptors found in a source tree."""
    _setup_logging(verbose)
    pipeline = Pipeline()
    try:
        result = pipeline.describe(source, adapter)
    except (SourceTreeError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INPUT)
    except SynthError as e:
        click.echo(f"Error: {e}", err=True)
        _report(pipeline.issues)
        sys.exit(EXIT_REPORTED)

    for d in result.descriptors:
        statuses = ",".join(str(s) for s in d.declared_status_codes)
        flags = " paginated" if d.paginated else ""
        click.echo(f"{d.method.value:<7} {d.path_template:<40} auth={d.auth} status={statuses}{flags}  ({d.site})")
    click.echo(f"Found {len(result.descriptors)} endpoints.")
    if result.issues:
        _report(result.issues)
    if result.discovery_errors:
        sys.exit(EXIT_REPORTED)
