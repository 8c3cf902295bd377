"""idlewatch command line entry point."""

import asyncio
from typing import Optional

import structlog
import typer
from pydantic import ValidationError

from idlewatch.core.config import Settings
from idlewatch.core.exceptions import ClusterConnectionError, ConfigurationError
from idlewatch.core.logging import configure_logging
from idlewatch.providers.kubernetes import ClusterDirectory, load_config
from idlewatch.services.capacity import CapacityEstimator, format_report
from idlewatch.services.occupancy import (
    ingress_occupancy,
    ingress_path_occupancy,
    pod_occupancy,
    run_all_checks,
)

app = typer.Typer(
    name="idlewatch",
    help="Find pods and ingresses without traffic and the capacity they reserve.",
    no_args_is_help=True,
)

logger = structlog.get_logger()


def _load_settings(**overrides) -> Settings:
    """Environment settings with CLI flags layered on top."""
    overrides = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**overrides)
    except ValidationError as e:
        typer.echo(f"Invalid configuration:\n{e}\n\nRun 'idlewatch scan --help' for usage.", err=True)
        raise typer.Exit(1)


@app.command()
def scan(
    verbosity: Optional[int] = typer.Option(None, "-v", "--verbosity", help="Verbosity level."),
    profile: Optional[bool] = typer.Option(
        None, "--profile/--no-profile", help="Enable profiling on http://0.0.0.0:6060/debug/"
    ),
    period: Optional[int] = typer.Option(None, "--period", help="Observation period in hours."),
    prom_uri: Optional[str] = typer.Option(
        None, "--prom-uri", help="Prometheus URI (e.g. http://localhost:9090)."
    ),
    run_outside_cluster: Optional[bool] = typer.Option(
        None,
        "--run-outside-cluster/--run-in-cluster",
        help="Use ~/.kube/config when running outside of the cluster.",
    ),
    output: str = typer.Option("text", "--output", "-o", help="Report format: text or json."),
):
    """Detect idle pods and ingresses over the observation period."""
    if output not in ("text", "json"):
        typer.echo(f"Unknown output format '{output}' (expected text or json)", err=True)
        raise typer.Exit(1)

    settings = _load_settings(
        VERBOSITY=verbosity,
        PROFILE_ENABLED=profile,
        OBSERVATION_PERIOD_HOURS=period,
        PROMETHEUS_URL=prom_uri,
        RUN_OUTSIDE_CLUSTER=run_outside_cluster,
    )
    configure_logging(settings.VERBOSITY, settings.LOG_FORMAT)

    if not settings.PROMETHEUS_URL:
        typer.echo("Prometheus URI is required (--prom-uri or PROMETHEUS_URL)", err=True)
        raise typer.Exit(1)

    if settings.PROFILE_ENABLED:
        from idlewatch.api.debug import start_profiling_server

        start_profiling_server(settings.PROFILE_HOST, settings.PROFILE_PORT)

    logger.info("idlewatch.starting", prometheus=settings.PROMETHEUS_URL, period=settings.OBSERVATION_PERIOD_HOURS)

    try:
        api_client = load_config(settings.RUN_OUTSIDE_CLUSTER, settings.KUBECONFIG_PATH)
        directory = ClusterDirectory(api_client)
        directory.check_connection(
            retries=settings.K8S_CONNECT_RETRIES, delay=settings.K8S_RETRY_DELAY_SECONDS
        )
    except (ConfigurationError, ClusterConnectionError) as e:
        logger.error("idlewatch.fatal", error=str(e))
        raise typer.Exit(1)

    results = asyncio.run(run_all_checks(settings))
    report = CapacityEstimator(directory).build_report(results, settings.OBSERVATION_PERIOD_HOURS)

    if output == "json":
        typer.echo(report.model_dump_json(indent=2))
    else:
        typer.echo(format_report(report))

    if settings.PROFILE_ENABLED:
        typer.prompt("Program stopped. Press Enter to exit", default="", show_default=False)


@app.command()
def queries():
    """Show the PromQL query behind each check."""
    settings = _load_settings()
    for check in (pod_occupancy(settings), ingress_occupancy(settings), ingress_path_occupancy(settings)):
        typer.echo(f"{check.name} ({', '.join(check.components)}):\n  {check.query}")


if __name__ == "__main__":
    app()
