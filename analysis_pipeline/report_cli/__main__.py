"""Command-line entry point for the analysis pipeline."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from analysis_pipeline.aggregator import ReportAggregator, fold_results
from analysis_pipeline.analyzer import TargetAnalyzer
from analysis_pipeline.config_utils import (
    CONFIG_PATH,
    ConfigError,
    load_settings,
)
from analysis_pipeline.inference import build_inference_client
from analysis_pipeline.logging_utils import configure_logging
from analysis_pipeline.result_sink import JsonFileResultSink
from analysis_pipeline.schema import (
    ConsolidatedReport,
    InputValidationError,
    PerTargetResult,
)

app = typer.Typer(help="Analyze record batches and build a consolidated report.")
console = Console()
error_console = Console(stderr=True)
logger = logging.getLogger(__name__)


def load_input(path: Path) -> tuple[list[dict[str, Any]], dict[str, list[Any]]]:
    """Split an input document into target definitions and record batches."""
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict) or not isinstance(data.get("targets"), list):
        raise InputValidationError("Input must be an object with a 'targets' list")

    targets: list[dict[str, Any]] = []
    batches: dict[str, list[Any]] = {}
    for entry in data["targets"]:
        if not isinstance(entry, dict):
            raise InputValidationError("Every target entry must be an object")
        definition = {key: value for key, value in entry.items() if key != "records"}
        targets.append(definition)
        name = str(definition.get("name", "")).strip()
        records = entry.get("records")
        if name and isinstance(records, list) and name not in batches:
            batches[name] = records
    return targets, batches


def render_results(results: list[PerTargetResult]) -> None:
    table = Table(title="Targets")
    table.add_column("Target", style="cyan")
    table.add_column("Findings", justify="right")
    table.add_column("Blocking", justify="right", style="red")
    table.add_column("Compliance", justify="right", style="magenta")
    table.add_column("Source")
    table.add_column("Failure")
    for result in results:
        table.add_row(
            result.target.name,
            str(len(result.findings)),
            str(len(result.blocking_findings())),
            str(result.compliance_score),
            "model" if result.fully_model_sourced else "fallback",
            result.failure or "-",
        )
    console.print(table)


def render_report(report: ConsolidatedReport) -> None:
    scores = report.compliance_scores
    score_table = Table(title="Compliance Scores")
    score_table.add_column("Dimension", style="cyan")
    score_table.add_column("Score", justify="right", style="magenta")
    for label, value in (
        ("Security", scores.security),
        ("Functionality", scores.functionality),
        ("Performance", scores.performance),
        ("User experience", scores.user_experience),
        ("Overall", scores.overall),
    ):
        score_table.add_row(label, str(value))
    console.print(score_table)

    if report.prioritized_action_plan:
        plan_table = Table(title="Action Plan")
        plan_table.add_column("Priority", style="bold")
        plan_table.add_column("Task")
        plan_table.add_column("Effort")
        for item in report.prioritized_action_plan:
            plan_table.add_row(item.priority.value, item.task, item.estimated_effort)
        console.print(plan_table)

    if report.legacy_system_cleanup:
        console.print(
            f"[bold]Legacy cleanup items:[/bold] {len(report.legacy_system_cleanup)}"
        )
    if report.failed_targets:
        console.print(
            f"[bold red]Failed targets:[/bold red] {', '.join(report.failed_targets)}"
        )


@app.command()
def analyze(
    input_path: Annotated[
        Path,
        typer.Argument(
            help="JSON file with a 'targets' list.",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    config: Annotated[
        Path, typer.Option("--config", help="Path to the YAML configuration file.")
    ] = CONFIG_PATH,
    output: Annotated[
        Optional[Path],
        typer.Option(
            "--output",
            help="Write the consolidated report JSON to this path.",
            rich_help_panel="Output",
        ),
    ] = None,
    results_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--results-dir",
            help="Directory for per-target result files (default from config).",
            rich_help_panel="Output",
        ),
    ] = None,
    no_inference: Annotated[
        bool,
        typer.Option(
            "--no-inference",
            help="Skip the model and use deterministic heuristics only.",
            rich_help_panel="Processing",
        ),
    ] = False,
    concurrency: Annotated[
        int,
        typer.Option(
            "--concurrency",
            help="Maximum number of targets analyzed at once (0 uses config).",
            rich_help_panel="Processing",
        ),
    ] = 0,
    debug: Annotated[bool, typer.Option(help="Enable debug logging.")] = False,
) -> None:
    """Analyze every target in INPUT_PATH and print the consolidated report."""
    configure_logging(level=logging.DEBUG if debug else logging.WARNING, force=True)

    try:
        settings = load_settings(config)
    except ConfigError as exc:
        error_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)

    if no_inference:
        settings.inference.provider = "disabled"
    if concurrency > 0:
        settings.pipeline.max_concurrency = concurrency

    try:
        targets, batches = load_input(input_path)
    except json.JSONDecodeError as exc:
        error_console.print(f"[bold red]Invalid JSON in {input_path}: {exc}[/bold red]")
        raise typer.Exit(code=1)
    except InputValidationError as exc:
        error_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)

    analyzer = TargetAnalyzer(build_inference_client(settings.inference), settings)
    sink = JsonFileResultSink(results_dir or settings.pipeline.results_dir)
    aggregator = ReportAggregator(
        analyzer,
        sink,
        max_concurrency=settings.pipeline.max_concurrency,
        run_timeout=settings.pipeline.run_timeout_seconds,
    )

    try:
        results = aggregator.analyze_targets(targets, batches)
    except InputValidationError as exc:
        error_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1)

    report = fold_results(results, targets_analyzed=len(results))
    logger.info("Analyzed %d target(s) from %s", len(results), input_path)
    render_results(results)
    render_report(report)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(
            json.dumps(report.to_json_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        console.print(f"Report written to {output}")


@app.command()
def show(
    target_name: Annotated[str, typer.Argument(help="Name of an analyzed target.")],
    config: Annotated[
        Path, typer.Option("--config", help="Path to the YAML configuration file.")
    ] = CONFIG_PATH,
    results_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--results-dir",
            help="Directory holding per-target results (default from config).",
        ),
    ] = None,
) -> None:
    """Print a stored per-target result."""
    if results_dir is None:
        try:
            results_dir = load_settings(config).pipeline.results_dir
        except ConfigError as exc:
            error_console.print(f"[bold red]{exc}[/bold red]")
            raise typer.Exit(code=1)

    sink = JsonFileResultSink(results_dir)
    result = sink.load(target_name)
    if result is None:
        error_console.print(f"[bold red]No stored analysis for {target_name}[/bold red]")
        raise typer.Exit(code=1)

    render_results([result])
    if result.findings:
        findings_table = Table(title="Findings")
        findings_table.add_column("Severity", style="bold")
        findings_table.add_column("Category")
        findings_table.add_column("Description")
        findings_table.add_column("Location")
        for finding in result.findings:
            findings_table.add_row(
                finding.severity.value,
                finding.category.value,
                finding.description,
                finding.location,
            )
        console.print(findings_table)

    metrics = result.performance_metrics
    console.print(
        f"Quality {metrics.quality_score} | resolution {metrics.resolution_rate}% | "
        f"avg response {metrics.average_response_time} min | "
        f"satisfaction {metrics.satisfaction_index}"
    )
    behavior = result.behavioral_insights
    technical = result.technical_proficiency
    console.print(
        f"Empathy {behavior.empathy_score} | adaptability {behavior.adaptability_index} | "
        f"troubleshooting {technical.troubleshooting_efficiency} | "
        f"resolution speed {technical.problem_resolution_speed}"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
