"""Operator command-line interface for SearchGate."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, cast

import click
import structlog
from pydantic import ValidationError

from searchgate import __version__
from searchgate.config import Config, MonitoringConfig, settings
from searchgate.observability import configure_logging
from searchgate.recovery import classify_error

logger = structlog.get_logger(__name__)

# Console logs share stdout with the JSON output, so only warnings show by default.
_CLI_DEFAULT_LOG_LEVEL = "WARNING"


def _load_config(config_path: Optional[Path]) -> Config:
    if config_path is None:
        # searchgate.yaml / config.yaml in the working directory, else defaults
        return cast(Config, settings)
    return Config.from_yaml(config_path)


def _monitoring_for(config: Config, log_level: Optional[str]) -> MonitoringConfig:
    monitoring = config.monitoring
    if log_level is not None:
        return monitoring.model_copy(update={"log_level": log_level})
    if "log_level" not in monitoring.model_fields_set:
        return monitoring.model_copy(update={"log_level": _CLI_DEFAULT_LOG_LEVEL})
    return monitoring


def _resolve(ctx: click.Context) -> Config:
    """Load the configuration and apply its logging settings."""
    try:
        resolved = _load_config(ctx.obj["config_path"])
    except (ValidationError, FileNotFoundError) as e:
        click.echo(json.dumps({"error": str(e)}), err=True)
        sys.exit(1)
    configure_logging(_monitoring_for(resolved, ctx.obj["log_level"]))
    return resolved


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides monitoring.log_level)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """SearchGate - resilient paginated search client."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["log_level"] = log_level


@cli.group()
def config() -> None:
    """Inspect configuration."""


@config.command("show")
@click.option("--by-alias", is_flag=True, help="Print option names as the host passes them (camelCase)")
@click.pass_context
def show_config(ctx: click.Context, by_alias: bool) -> None:
    """Print the resolved configuration as JSON."""
    resolved = _resolve(ctx)
    logger.debug("Showing configuration", by_alias=by_alias)
    click.echo(json.dumps(resolved.model_dump(mode="json", by_alias=by_alias), indent=2))


@cli.command()
@click.option("--status", type=int, help="HTTP status code of the failure")
@click.option("--message", default="", help="Error message of the failure")
@click.option("--retry-after", type=float, help="Retry-After header value in seconds")
@click.option("--debug", is_flag=True, help="Include technical detail")
@click.pass_context
def classify(
    ctx: click.Context, status: Optional[int], message: str, retry_after: Optional[float], debug: bool
) -> None:
    """Classify a raw failure and print the result as JSON."""
    _resolve(ctx)
    raw: Dict[str, Any] = {"message": message}
    if status is not None:
        raw["status"] = status
    if retry_after is not None:
        raw["retry_after"] = retry_after

    error = classify_error(raw, debug=debug, operation="cli")
    logger.debug("Classified failure", kind=error.kind.value)
    click.echo(json.dumps(error.to_dict(), indent=2, default=str))


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
