"""CLI entry point for the Collective Coordinator."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from collective import __version__
from collective.config import Settings
from collective.engine.coordinator import Coordinator
from collective.errors import CoordinationError
from collective.observability import configure_logging
from collective.storage.archive import SnapshotArchive

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="collective")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (default: $COLLECTIVE_DATA_DIR or ~/.collective)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log at the configured level instead of WARNING")
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """Collective Coordinator — trust-weighted multi-agent learning."""
    settings = Settings(data_dir=data_dir) if data_dir else Settings()
    configure_logging(settings.log_level if verbose else "WARNING", settings.log_json)
    ctx.obj = settings


# -- archive helpers ----------------------------------------------------------


async def _latest(path: Path) -> dict[str, Any] | None:
    async with SnapshotArchive(path) as archive:
        return await archive.latest()


async def _save(path: Path, document: dict[str, Any]) -> int:
    async with SnapshotArchive(path) as archive:
        return await archive.save(document)


async def _history(path: Path, limit: int) -> list[dict[str, Any]]:
    async with SnapshotArchive(path) as archive:
        return await archive.history(limit)


def _latest_or_exit(settings: Settings) -> dict[str, Any]:
    document = asyncio.run(_latest(settings.archive_path))
    if document is None:
        console.print("[dim]No snapshots yet. Run `collective init` first.[/dim]")
        raise SystemExit(0)
    return document


def _restore(settings: Settings) -> Coordinator:
    coordinator = Coordinator.from_settings(settings)
    coordinator.import_state(_latest_or_exit(settings))
    return coordinator


# -- commands -----------------------------------------------------------------


@main.command()
@click.pass_obj
def init(settings: Settings) -> None:
    """Create the data directory and an empty initial snapshot."""
    path = settings.archive_path
    if asyncio.run(_latest(path)) is None:
        asyncio.run(_save(path, Coordinator.from_settings(settings).export_state()))
    console.print(f"[green]Collective initialized at {settings.data_dir}[/green]")
    console.print(f"  Archive: {path}")


@main.command()
@click.option("--limit", default=10, help="Number of snapshots to list")
@click.pass_obj
def status(settings: Settings, limit: int) -> None:
    """Show the latest snapshot summary and snapshot history."""
    document = _latest_or_exit(settings)
    console.print(f"[bold]Schema version:[/bold] {document['schema_version']}")
    console.print(f"[bold]Generation:[/bold] {document['generation']}")
    console.print(f"[bold]Fitness:[/bold] {document['fitness_score']:.3f}")
    console.print(
        f"Trust edges: {len(document['trust_edges'])} | "
        f"Patterns: {len(document['patterns'])} | "
        f"Strategies: {len(document['strategies'])}"
    )

    table = Table(title="Snapshots")
    table.add_column("ID", style="cyan")
    table.add_column("Generation")
    table.add_column("Fitness", style="green")
    table.add_column("Edges")
    table.add_column("Patterns")
    table.add_column("Strategies")
    for row in asyncio.run(_history(settings.archive_path, limit)):
        table.add_row(
            str(row["id"]),
            str(row["generation"]),
            f"{row['fitness_score']:.3f}",
            str(row["trust_edges"]),
            str(row["patterns"]),
            str(row["strategies"]),
        )
    console.print(table)


@main.command()
@click.option("--agent", default=None, help="Only edges out of this agent")
@click.option("--limit", default=20, help="Number of edges to show")
@click.pass_obj
def trust(settings: Settings, agent: str | None, limit: int) -> None:
    """Show trust edges, strongest first, and mutual-trust clusters."""
    coordinator = _restore(settings)
    if agent:
        edges = coordinator.trust.top_partners(agent, limit)
    else:
        edges = sorted(coordinator.trust.edges(), key=lambda e: (-e.score, e.source, e.target))
        edges = edges[:limit]

    if not edges:
        console.print("[dim]No trust edges yet.[/dim]")
        return

    table = Table(title="Trust Edges")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Score", style="green")
    table.add_column("Successes")
    table.add_column("Failures")
    for edge in edges:
        table.add_row(
            edge.source,
            edge.target,
            f"{edge.score:.3f}",
            str(edge.successes),
            str(edge.failures),
        )
    console.print(table)

    for cluster in coordinator.trust.clusters():
        console.print(f"[bold]Cluster:[/bold] {', '.join(cluster)}")


@main.command()
@click.option("--task-type", default=None, help="Only patterns for this task type")
@click.option("--min-confidence", default=0.0, type=float, help="Minimum confidence")
@click.pass_obj
def patterns(settings: Settings, task_type: str | None, min_confidence: float) -> None:
    """List learned patterns."""
    coordinator = _restore(settings)
    if task_type:
        found = coordinator.query_patterns(task_type, min_confidence)
    else:
        found = [p for p in coordinator.recognizer.all() if p.confidence >= min_confidence]

    if not found:
        console.print("[dim]No patterns learned yet.[/dim]")
        return

    table = Table(title="Patterns")
    table.add_column("Task Type", style="cyan")
    table.add_column("Agents")
    table.add_column("Success", style="green")
    table.add_column("Confidence")
    table.add_column("Frequency")
    table.add_column("Samples")
    for p in found:
        table.add_row(
            p.task_type,
            "+".join(p.agent_combo),
            f"{p.success_rate:.0%}",
            f"{p.confidence:.0%}",
            str(p.frequency),
            str(p.sample_size),
        )
    console.print(table)


@main.command()
@click.argument("task")
@click.option("--max-team-size", default=None, type=int, help="Hard cap on team size")
@click.pass_obj
def predict(settings: Settings, task: str, max_team_size: int | None) -> None:
    """Recommend an agent team for TASK."""
    coordinator = _restore(settings)
    try:
        prediction = coordinator.predict_team(task, max_team_size)
    except CoordinationError as e:
        raise click.BadParameter(str(e)) from e

    console.print(f"[bold]Domain:[/bold] {prediction.features.domain}")
    console.print(f"[bold]Complexity:[/bold] {prediction.features.complexity:.2f}")
    if prediction.members:
        team = ", ".join(m.agent_id or m.agent_type for m in prediction.members)
        console.print(f"[bold]Team:[/bold] {team}")
    console.print(f"[bold]Confidence:[/bold] {prediction.confidence:.0%}")
    for line in prediction.justification:
        console.print(f"  - {line}")
    for option in prediction.alternatives:
        console.print(
            f"  [dim]alt[/dim] {'+'.join(option.agent_combo)} "
            f"({option.score:.0%}, {option.pattern_id})"
        )


@main.command()
@click.option("--rate", default=None, type=float, help="Decay rate (default from settings)")
@click.pass_obj
def decay(settings: Settings, rate: float | None) -> None:
    """Pull every trust edge toward neutral and archive the result."""
    coordinator = _restore(settings)
    try:
        count = coordinator.trust.decay_all(rate=rate)
    except CoordinationError as e:
        raise click.BadParameter(str(e), param_hint="--rate") from e
    snapshot_id = asyncio.run(_save(settings.archive_path, coordinator.export_state()))
    console.print(f"[green]Decayed {count} edge(s).[/green] Snapshot {snapshot_id} saved.")


@main.command("export")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def export_cmd(settings: Settings, path: Path) -> None:
    """Write the latest snapshot to PATH as JSON."""
    document = _latest_or_exit(settings)
    path.write_text(json.dumps(document, indent=2))
    console.print(f"[green]Exported generation {document['generation']} to {path}[/green]")


@main.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_cmd(settings: Settings, path: Path) -> None:
    """Apply a JSON state document from PATH on top of the latest snapshot."""
    try:
        document = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="PATH") from e

    coordinator = Coordinator.from_settings(settings)
    current = asyncio.run(_latest(settings.archive_path))
    try:
        if current is not None:
            coordinator.import_state(current)
        result = coordinator.import_state(document)
    except CoordinationError as e:
        raise click.BadParameter(str(e), param_hint="PATH") from e

    snapshot_id = asyncio.run(_save(settings.archive_path, coordinator.export_state()))
    console.print(
        f"[green]Imported {result.trust_edges} edge(s), "
        f"{result.patterns_added} new / {result.patterns_merged} merged pattern(s), "
        f"{result.strategies} strateg{'y' if result.strategies == 1 else 'ies'}.[/green]"
    )
    console.print(f"Generation {result.generation}. Snapshot {snapshot_id} saved.")
