"""CLI entry point for the model switching server."""

import json
import logging
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="modelswitch",
    help="Zero-downtime model version switching with health-based rollback",
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:8000"

url_option = typer.Option(DEFAULT_URL, "--url", "-u", help="Server base URL")


def _request(method: str, url: str, **kwargs) -> dict | list | None:
    """Send a request to the server, exiting with a message on failure."""
    import httpx

    try:
        response = httpx.request(method, url, timeout=kwargs.pop("timeout", 30.0), **kwargs)
        response.raise_for_status()
    except httpx.ConnectError:
        typer.echo("Error: Could not connect to server. Is it running?", err=True)
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        typer.echo(f"Error: {e.response.text}", err=True)
        raise typer.Exit(1)

    if response.status_code == 204 or not response.content:
        return None
    return response.json()


def _print_operation(op: dict) -> None:
    typer.echo(f"Operation: {op['operation_id']}")
    typer.echo(f"  Model: {op['model_id']} ({op['from_version']} -> {op['to_version']})")
    typer.echo(f"  Strategy: {op['strategy_type']}")
    typer.echo(f"  Status: {op['status']}")
    typer.echo(f"  Progress: {op['progress'] * 100:.0f}%")
    weights = ", ".join(f"{v}={w:.1f}%" for v, w in op.get("weights", {}).items())
    typer.echo(f"  Weights: {weights or '-'}")
    if op.get("awaiting_promotion"):
        typer.echo("  Awaiting promotion")
    if op.get("error"):
        typer.echo(f"  Error: {op['error']}")


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Server port"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Server host"),
    watch: Optional[Path] = typer.Option(None, "--watch", "-w", help="Directory to watch for checkpoints"),
    model_class: Optional[str] = typer.Option(None, "--model-class", help="Default 'module:Class' for watched checkpoints"),
    max_cached_models: Optional[int] = typer.Option(None, "--max-cached-models", help="Cache capacity"),
) -> None:
    """Start the model switching server."""
    import uvicorn

    from .api.app import create_app
    from .utils.config import Config

    config = Config.from_env()
    config.host = host
    config.port = port
    if watch:
        config.watch_dir = watch
    if model_class:
        config.default_model_class = model_class
    if max_cached_models:
        config.max_cached_models = max_cached_models

    typer.echo(f"Starting server on {host}:{port}")
    if config.watch_dir:
        typer.echo(f"Watching {config.watch_dir} for checkpoints")

    uvicorn.run(create_app(config=config), host=host, port=port)


@app.command()
def register(
    version: str = typer.Option(..., "--version", "-v", help="Version label"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name"),
    model_arch: Optional[str] = typer.Option(None, "--arch", help="Model architecture"),
    model_stage: Optional[str] = typer.Option(None, "--stage", help="Deployment stage"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Loader config as JSON"),
    metadata: Optional[str] = typer.Option(None, "--metadata", help="Metadata as JSON"),
    url: str = url_option,
) -> None:
    """Register a model version."""
    body = {
        "model": model,
        "model_arch": model_arch,
        "model_stage": model_stage,
        "version": version,
        "config": json.loads(config) if config else {},
        "metadata": json.loads(metadata) if metadata else {},
    }
    data = _request("POST", f"{url}/models", json=body)
    typer.echo(f"Registered {data['model_id']}:{data['version']}")


@app.command()
def versions(
    model_id: str = typer.Argument(..., help="Model id"),
    url: str = url_option,
) -> None:
    """List registered versions of a model."""
    records = _request("GET", f"{url}/models/{model_id}/versions")
    assignment = _request("GET", f"{url}/models/{model_id}/assignment")
    weights = assignment["weights"] if assignment else {}

    typer.echo(f"{'Version':<16} {'Traffic':<10} {'Created':<28}")
    typer.echo("-" * 56)
    for record in records:
        traffic = f"{weights.get(record['version'], 0):.1f}%"
        typer.echo(f"{record['version']:<16} {traffic:<10} {record['created_at']:<28}")


@app.command()
def predict(
    model_id: str = typer.Option(..., "--model-id", "-m", help="Model id to serve"),
    data: str = typer.Option(..., "--data", "-d", help="Request payload as JSON"),
    routing_key: Optional[str] = typer.Option(None, "--routing-key", "-k", help="Sticky routing key"),
    url: str = url_option,
) -> None:
    """Send one request through the current traffic split."""
    body = {"request": json.loads(data), "routing_key": routing_key}
    result = _request("POST", f"{url}/models/{model_id}/serve", json=body)
    typer.echo(f"Version: {result['version']} ({result['latency_ms']:.2f}ms)")
    typer.echo(json.dumps(result["response"]))


@app.command()
def switch(
    model_id: str = typer.Option(..., "--model-id", "-m", help="Model id to switch"),
    target: str = typer.Option(..., "--to", "-t", help="Target version"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="immediate, gradual, canary or ab_test"),
    strategy_config: Optional[str] = typer.Option(None, "--strategy-config", help="Strategy parameters as JSON"),
    url: str = url_option,
) -> None:
    """Start switching a model to another version."""
    body = {
        "model_id": model_id,
        "target_version": target,
        "strategy": strategy,
        "strategy_config": json.loads(strategy_config) if strategy_config else {},
    }
    data = _request("POST", f"{url}/switch", json=body)
    typer.echo(f"Switch started: {data['operation_id']}")


@app.command()
def status(
    operation_id: Optional[str] = typer.Argument(None, help="Operation id; lists all if omitted"),
    url: str = url_option,
) -> None:
    """Show switch operation status."""
    if operation_id:
        _print_operation(_request("GET", f"{url}/switch/operations/{operation_id}"))
        return

    operations = _request("GET", f"{url}/switch/operations")
    if not operations:
        typer.echo("No switch operations.")
        return
    for op in operations:
        _print_operation(op)
        typer.echo("")


@app.command()
def abort(
    operation_id: str = typer.Argument(..., help="Operation id"),
    url: str = url_option,
) -> None:
    """Abort a running switch."""
    _print_operation(_request("POST", f"{url}/switch/operations/{operation_id}/abort", timeout=120.0))


@app.command()
def promote(
    operation_id: str = typer.Argument(..., help="Operation id"),
    url: str = url_option,
) -> None:
    """Promote a running switch (required to finish an A/B test)."""
    _print_operation(_request("POST", f"{url}/switch/operations/{operation_id}/promote", timeout=120.0))


@app.command()
def rollback(
    model_id: str = typer.Argument(..., help="Model id"),
    strategy: str = typer.Option("immediate", "--strategy", "-s", help="Rollback strategy"),
    url: str = url_option,
) -> None:
    """Roll a model back to its previous version."""
    data = _request("POST", f"{url}/models/{model_id}/rollback", json={"strategy": strategy})
    typer.echo(f"Rollback started: {data['operation_id']}")


@app.command()
def health(url: str = url_option) -> None:
    """Show per-version health."""
    data = _request("GET", f"{url}/health/models")
    if not data:
        typer.echo("No health data recorded.")
        return

    typer.echo(f"{'Model':<24} {'Version':<12} {'Requests':<10} {'Errors':<8} {'Err %':<8} {'p95 ms':<10}")
    typer.echo("-" * 76)
    for model_id, by_version in data.items():
        for version, s in by_version.items():
            typer.echo(
                f"{model_id:<24} {version:<12} {s['request_count']:<10} {s['error_count']:<8} "
                f"{s['error_rate'] * 100:<8.1f} {s['latency_p95_ms']:<10.2f}"
            )


@app.command()
def alerts(url: str = url_option) -> None:
    """Show active health alerts."""
    data = _request("GET", f"{url}/alerts")
    if not data:
        typer.echo("No active alerts.")
        return
    for alert in data:
        typer.echo(
            f"{alert['model_id']}:{alert['version']} {alert['metric']}="
            f"{alert['value']:.4f} (threshold {alert['threshold']})"
        )


if __name__ == "__main__":
    app()
