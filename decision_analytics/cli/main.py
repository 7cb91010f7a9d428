"""
CLI interface for Decision Analytics.

Replays decision telemetry into an in-memory engine and prints reports.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from decision_analytics.config.loader import (
    AnalyticsConfig,
    ConfigurationError,
    load_analytics_config,
)
from decision_analytics.core.engine import AnalyticsEngine
from decision_analytics.core.scheduler import ManualClock
from decision_analytics.demo.seed_demo_data import seed_engine
from decision_analytics.storage.models import (
    CampaignExecutionMetric,
    DeviceType,
    ExecutionStatus,
    Location,
    UserDecisionRequest,
)

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

RECORD_KINDS = ("atom", "campaign", "request", "session_end")


class TelemetryError(ValueError):
    """A telemetry line that cannot be replayed."""


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config(config_path: Optional[str]) -> AnalyticsConfig:
    if config_path:
        return load_analytics_config(config_path)
    return AnalyticsConfig.defaults()


def _parse_timestamp(value: Any, line_number: int) -> datetime:
    """Parse an ISO timestamp; offset-aware values become naive UTC."""
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise TelemetryError(f"line {line_number}: invalid timestamp {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _flag(record: Dict[str, Any], name: str) -> bool:
    value = record[name]
    if not isinstance(value, bool):
        raise ValueError(f"'{name}' must be true or false, got {value!r}")
    return value


def _string_list(record: Dict[str, Any], name: str) -> List[str]:
    value = record.get(name, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{name}' must be a list of strings, got {value!r}")
    return value


def read_telemetry(path: str) -> List[Dict[str, Any]]:
    """Parse a JSON-lines telemetry file; blank lines are skipped.

    Raises:
        FileNotFoundError: If the file does not exist
        TelemetryError: If a line is not a JSON object with a known kind
    """
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise TelemetryError(f"line {line_number}: invalid JSON ({e.msg})")
            if not isinstance(record, dict) or record.get("kind") not in RECORD_KINDS:
                raise TelemetryError(f"line {line_number}: 'kind' must be one of {list(RECORD_KINDS)}")
            if "timestamp" in record:
                record["timestamp"] = _parse_timestamp(record["timestamp"], line_number)
            if "end_time" in record:
                record["end_time"] = _parse_timestamp(record["end_time"], line_number)
            record["_line"] = line_number
            records.append(record)
    return records


def replay_telemetry(engine: AnalyticsEngine, records: List[Dict[str, Any]]) -> int:
    """Feed parsed telemetry records into the engine's analyzers.

    Returns:
        Number of records replayed

    Raises:
        TelemetryError: If a record misses a required field or has a bad value
    """
    for record in records:
        line_number = record["_line"]
        kind = record["kind"]
        timestamp = record.get("timestamp") or engine.clock.now()
        try:
            if kind == "atom":
                engine.atom_analyzer.record_atom_usage(
                    atom_id=record["atom_id"],
                    rule_id=record["rule_id"],
                    campaign_id=record["campaign_id"],
                    execution_time=float(record["execution_time"]),
                    success=_flag(record, "success"),
                    error_message=record.get("error_message"),
                    context=record.get("context"),
                    timestamp=timestamp,
                )
            elif kind == "campaign":
                engine.campaign_metrics.record_execution(CampaignExecutionMetric(
                    campaign_id=record["campaign_id"],
                    decision_id=record["decision_id"],
                    execution_time=float(record["execution_time"]),
                    status=ExecutionStatus(record.get("status", "success")),
                    rules_evaluated=int(record.get("rules_evaluated", 0)),
                    rules_triggered=int(record.get("rules_triggered", 0)),
                    timestamp=timestamp,
                    errors=list(_string_list(record, "errors")),
                    context=record.get("context", {}),
                ))
            elif kind == "request":
                device_type = record.get("device_type")
                country = record.get("country")
                engine.user_analyzer.record_user_request(UserDecisionRequest(
                    user_id=record["user_id"],
                    session_id=record["session_id"],
                    request_id=record.get("request_id", f"{record['session_id']}-{line_number}"),
                    timestamp=timestamp,
                    campaign_id=record["campaign_id"],
                    decision_made=_flag(record, "decision_made"),
                    response_time=float(record.get("response_time", 0.0)),
                    context_data=record.get("context_data", {}),
                    user_agent=record.get("user_agent"),
                    device_type=DeviceType(device_type) if device_type else None,
                    location=Location(country=country) if country else None,
                ))
            else:
                engine.user_analyzer.end_session(record["session_id"], record.get("end_time"))
        except KeyError as e:
            raise TelemetryError(f"line {line_number}: missing field {e.args[0]!r}")
        except (TypeError, ValueError) as e:
            raise TelemetryError(f"line {line_number}: {e}")
    return len(records)


def _display_report(engine: AnalyticsEngine, limit: int) -> None:
    """Print campaign, atom and recommendation tables."""
    campaigns = engine.campaign_metrics.get_top_performing_campaigns(limit)
    atoms = engine.atom_analyzer.get_atom_rankings(limit=limit)
    recommendations = engine.atom_analyzer.generate_optimization_recommendations()[:limit]

    if not campaigns and not atoms:
        console.print("\n[bold yellow]No decision telemetry found[/]")
        return

    campaign_table = Table(title="Top Campaigns")
    campaign_table.add_column("Campaign")
    campaign_table.add_column("Executions", justify="right")
    campaign_table.add_column("Success %", justify="right")
    campaign_table.add_column("Avg ms", justify="right")
    campaign_table.add_column("p95 ms", justify="right")
    campaign_table.add_column("Error %", justify="right")
    for stats in campaigns:
        percentiles = engine.campaign_metrics.get_execution_time_percentiles(stats.campaign_id)
        campaign_table.add_row(
            stats.campaign_id,
            str(stats.total_executions),
            f"{stats.success_rate:.1f}",
            f"{stats.average_execution_time:.1f}",
            f"{percentiles.p95:.1f}",
            f"{stats.error_rate:.1f}",
        )
    console.print(campaign_table)

    atom_table = Table(title="Atom Rankings (efficiency)")
    atom_table.add_column("#", justify="right")
    atom_table.add_column("Atom")
    atom_table.add_column("Executions", justify="right")
    atom_table.add_column("Success %", justify="right")
    atom_table.add_column("Median ms", justify="right")
    atom_table.add_column("Efficiency", justify="right")
    for stats in atoms:
        atom_table.add_row(
            str(stats.popularity_rank),
            stats.atom_id,
            str(stats.total_executions),
            f"{stats.success_rate:.1f}",
            f"{stats.median_execution_time:.1f}",
            f"{stats.efficiency_score:.1f}",
        )
    console.print(atom_table)

    if recommendations:
        rec_table = Table(title="Recommendations")
        rec_table.add_column("Priority")
        rec_table.add_column("Type")
        rec_table.add_column("Recommendation")
        for rec in recommendations:
            rec_table.add_row(rec.priority.value, rec.type.value, rec.recommendation)
        console.print(rec_table)

    health = engine.get_system_health()
    color = {"healthy": "green", "warning": "yellow", "critical": "red"}[health.status.value]
    console.print(
        f"\n[bold]System health:[/bold] [{color}]{health.status.value}[/] "
        f"(error rate {health.error_rate:.1f}%, avg response {health.average_response_time:.0f}ms)"
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Decision Analytics CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Decision Analytics - Use --help to see available commands")


@app.command()
def status(
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to an analytics YAML config"
    )
):
    """Show the effective analytics configuration."""
    try:
        config = _load_config(config_path)
    except (FileNotFoundError, ConfigurationError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] Decision Analytics configuration is valid")
    console.print(
        f"Retention (days): campaigns={config.retention.campaigns}, "
        f"atoms={config.retention.atoms}, users={config.retention.users}"
    )
    console.print(
        f"Janitor intervals (s): cleanup={config.scheduler.cleanup_interval}, "
        f"graph={config.scheduler.graph_rebuild_interval}, "
        f"segments={config.scheduler.segment_refresh_interval}"
    )
    console.print(f"Samples per record: {config.sampling.max_samples_per_record}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def report(
    telemetry_file: str = typer.Argument(..., help="JSON-lines telemetry file"),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to an analytics YAML config"
    ),
    limit: int = typer.Option(
        10,
        "--limit",
        "-n",
        help="Rows per table"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log every recorded event"
    )
):
    """
    Replay decision telemetry and print an analytics report.

    Each line is a JSON object whose "kind" is atom, campaign, request or
    session_end. The report is computed as of the latest timestamp in the
    file.
    """
    try:
        config = _load_config(config_path)
        _configure_logging("DEBUG" if verbose else config.log_level)

        records = read_telemetry(telemetry_file)
        timestamps = [r["timestamp"] for r in records if "timestamp" in r]
        clock = ManualClock(max(timestamps) if timestamps else datetime.now())
        engine = AnalyticsEngine(config=config, clock=clock)

        count = replay_telemetry(engine, records)
        console.print(f"[green]✓[/] Replayed {count} telemetry records")
        _display_report(engine, limit)
        sys.exit(EXIT_CODE_OK)

    except (FileNotFoundError, ConfigurationError, TelemetryError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def demo(
    seed: int = typer.Option(
        7,
        "--seed",
        "-s",
        help="Random seed for the synthetic workload"
    ),
    limit: int = typer.Option(
        10,
        "--limit",
        "-n",
        help="Rows per table"
    )
):
    """Seed a synthetic workload and print the analytics report."""
    engine = AnalyticsEngine(clock=ManualClock(datetime(2024, 6, 1)))
    count = seed_engine(engine, seed=seed)
    console.print(f"[green]✓[/] Seeded {count} synthetic decisions")
    _display_report(engine, limit)
    sys.exit(EXIT_CODE_OK)


if __name__ == "__main__":
    app()
