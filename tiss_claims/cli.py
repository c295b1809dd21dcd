"""
Command-line interface for the TISS claims engine.

Provides commands for database setup, return processing and risk analysis.
"""

import json
import sys
from datetime import timedelta

import click
import structlog
import yaml

from tiss_claims.config import load_config, validate_config
from tiss_claims.utils.logging import configure_logging


logger = structlog.get_logger()


@click.group()
@click.option(
    "--config", "-c",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--json-logs",
    is_flag=True,
    help="Output logs as JSON",
)
@click.pass_context
def main(ctx, config, verbose, json_logs):
    """TISS claims lifecycle and glosa risk engine."""
    ctx.ensure_object(dict)

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(level=log_level, json_output=json_logs)

    ctx.obj["config_path"] = config
    ctx.obj["log_level"] = log_level


@main.command("init-db")
@click.option(
    "--drop-existing",
    is_flag=True,
    help="Drop existing tables before creating",
)
@click.pass_context
def init_db(ctx, drop_existing):
    """Initialize the database schema."""
    from tiss_claims.db.initialize import init_database

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)

        click.echo(f"Initializing database: {config.database.database}")
        click.echo(f"  Host: {config.database.host}:{config.database.port}")

        if drop_existing:
            if not click.confirm("This will drop ALL existing tables. Continue?"):
                click.echo("Aborted.")
                return

        init_database(config_path, drop_existing)

        click.echo("Database initialized successfully.")

    except Exception as e:
        logger.exception("init_db_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("validate-config")
@click.pass_context
def validate_config_cmd(ctx):
    """Validate the configuration file."""
    from tiss_claims.config.validation import ConfigurationError

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        warnings = validate_config(config)

        click.echo("Configuration is valid.")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Check configuration, database and lifecycle counts."""
    from tiss_claims.config.validation import validate_database_connection
    from tiss_claims.db.connection import create_engine_from_config
    from tiss_claims.db.repository import TissRepository

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)

        click.echo("Configuration:")
        click.echo(f"  Config file: {config_path or 'default'}")
        click.echo(f"  TISS version: {config.tiss_version}")
        click.echo(f"  Storage: {config.storage.backend}")
        click.echo(f"  Events: {config.events.backend}")
        click.echo(
            f"  Retries: {config.ingestion.max_retries} "
            f"(backoff {', '.join(str(s) for s in config.ingestion.backoff_seconds)}s)"
        )

        click.echo("\nDatabase:")
        click.echo(f"  URL: {config.database.url or f'{config.database.host}:{config.database.port}'}")

        try:
            validate_database_connection(config)
            click.echo("  Status: Connected")
        except Exception as e:
            click.echo(f"  Status: Not connected ({e})")
            return

        repo = TissRepository(create_engine_from_config(config.database))
        with repo.begin() as conn:
            counts = repo.count_by_status(conn)
        for name, by_status in counts.items():
            summary = ", ".join(f"{s}={n}" for s, n in sorted(by_status.items())) or "none"
            click.echo(f"  {name}: {summary}")

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("process-returns")
@click.option(
    "--limit",
    type=int,
    default=None,
    help="Maximum returns to process (default: from config)",
)
@click.pass_context
def process_returns(ctx, limit):
    """Process pending and due-for-retry return files.

    Examples:

    \b
    # Drain the queue once (suitable for a scheduled job)
    tiss process-returns

    \b
    # Process at most five returns
    tiss process-returns --limit 5
    """
    from tiss_claims.services import TissServices

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        services = TissServices.from_config(config)
        try:
            results = services.worker.process_pending(limit or config.ingestion.drain_batch_size)
        finally:
            services.close()

        if not results:
            click.echo("No returns to process.")
            return
        for ret in results:
            click.echo(
                f"  {ret.id} {ret.processing_status.value:<10} "
                f"approved={ret.total_approved} denied={ret.total_denied} "
                f"partial={ret.total_partial} retries={ret.retry_count}"
            )
        click.echo(f"\nProcessed {len(results)} return(s).")

    except Exception as e:
        logger.exception("process_returns_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("reclaim-stale")
@click.option(
    "--timeout-minutes",
    type=int,
    default=None,
    help="Age of a PROCESSING claim before it is released (default: from config)",
)
@click.pass_context
def reclaim_stale(ctx, timeout_minutes):
    """Release returns stuck in PROCESSING back to RETRY."""
    from tiss_claims.services import TissServices

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        services = TissServices.from_config(config)
        try:
            timeout = timedelta(minutes=timeout_minutes) if timeout_minutes else services.stale_timeout
            reclaimed = services.worker.reclaim_stale(timeout)
        finally:
            services.close()

        click.echo(f"Reclaimed {len(reclaimed)} return(s).")
        for return_id in reclaimed:
            click.echo(f"  {return_id}")

    except Exception as e:
        logger.exception("reclaim_stale_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command("analyze-risk")
@click.argument("guide_file", type=click.Path(exists=True))
@click.option(
    "--operator", "-o",
    required=True,
    help="Operator the guide will be billed to",
)
@click.option(
    "--auto-fix",
    is_flag=True,
    help="Apply formatting corrections and report the changes",
)
@click.pass_context
def analyze_risk(ctx, guide_file, operator, auto_fix):
    """Score glosa risk for guides in a JSON or YAML file.

    The file holds one guide object or a list of them.
    """
    from tiss_claims.domain import RiskCandidate
    from tiss_claims.risk import GlosaRiskPredictor

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        predictor = GlosaRiskPredictor(config.risk)

        with open(guide_file, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        items = raw if isinstance(raw, list) else [raw]

        output = []
        for item in items:
            candidate = RiskCandidate.model_validate(item)
            entry = {"risk": predictor.analyze_glosa_risk(candidate, operator).model_dump(mode="json")}
            if auto_fix:
                result = predictor.auto_fix_guide(candidate)
                entry["fixed_guide"] = result.fixed.model_dump(mode="json", exclude_none=True)
                entry["applied_fixes"] = [c.model_dump(mode="json") for c in result.changes]
            output.append(entry)

        click.echo(json.dumps(output if isinstance(raw, list) else output[0], indent=2, ensure_ascii=False))

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8000, help="Bind port")
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from tiss_claims.api import create_app
    from tiss_claims.services import TissServices

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        app = create_app(TissServices.from_config(config, worker_id="api"), close_on_shutdown=True)
        click.echo(f"Serving on http://{host}:{port}")
        uvicorn.run(app, host=host, port=port, log_config=None)

    except Exception as e:
        logger.exception("serve_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
