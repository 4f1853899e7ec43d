"""Command-line interface for validating and running pipelines."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from choreo_pipeline.config import ENV_VARS, EngineSettings, PipelineType, load_settings, system_environment
from choreo_pipeline.engine import PipelineEngine, PipelineOutcome, PipelineResult, StepState
from choreo_pipeline.errors import PipelineError, PolicyError, SettingsError, StructuralError
from choreo_pipeline.expressions import MappingAccessor
from choreo_pipeline.io import write_output
from choreo_pipeline.loader import build_registry, load_pipeline
from choreo_pipeline.models import ContainerSet, InlineScript, PipelineDefinition, Step
from choreo_pipeline.policy import PolicyEnforcer, policy_for
from choreo_pipeline.runners import HttpRunner, LocalRunner
from choreo_pipeline.units import format_cpu, format_duration, format_memory

app = typer.Typer(
    name="choreo-pipeline",
    help="Validate, plan and run Choreo pipelines.",
    no_args_is_help=True,
)

console = Console()

REMOTE_WORKSPACE = "/workspace"
REMOTE_REPOSITORY_DIR = "/workspace/repository"

_STATE_STYLES = {
    StepState.SUCCEEDED: "green",
    StepState.TOLERATED: "yellow",
    StepState.SKIPPED: "dim",
    StepState.FAILED: "red",
    StepState.CANCELLED: "magenta",
    StepState.PENDING: "dim",
}


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for CLI runs."""
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_checked(pipeline_path: Path, pipeline_type: PipelineType) -> tuple[PipelineDefinition, EngineSettings]:
    """Load settings and pipeline and enforce policy; exit 2 on any error."""
    try:
        settings = load_settings()
        pipeline = load_pipeline(pipeline_path)
        PolicyEnforcer(policy_for(pipeline_type, settings), build_registry(pipeline)).enforce(pipeline)
    except SettingsError as e:
        console.print(f"[red]Settings Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=2) from None
    except (StructuralError, PolicyError) as e:
        console.print(f"[red]Validation Error:[/red] {e.kind}: {escape(str(e))}")
        raise typer.Exit(code=2) from None
    return pipeline, settings


@app.command("validate")
def validate_cmd(
    pipeline_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline YAML file"),
    pipeline_type: PipelineType = typer.Option(
        PipelineType.AUTOMATION,
        "--type",
        "-t",
        help="Pipeline type: 'build' or 'automation'",
    ),
) -> None:
    """Validate a pipeline document and its pipeline-type policy without running it."""
    pipeline, _ = _load_checked(pipeline_path, pipeline_type)
    steps = len(pipeline.step_names)
    console.print(
        f"[green]✓ Pipeline '{pipeline_path.name}' is valid[/green] "
        f"({pipeline_type.value}, {len(pipeline.stages)} stage(s), {steps} step(s))"
    )


@app.command("plan")
def plan_cmd(
    pipeline_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline YAML file"),
) -> None:
    """Print the stages a pipeline would execute."""
    try:
        pipeline = load_pipeline(pipeline_path)
    except StructuralError as e:
        console.print(f"[red]Validation Error:[/red] {e.kind}: {escape(str(e))}")
        raise typer.Exit(code=2) from None

    table = Table(title=f"Execution Plan: {pipeline_path.name}")
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Step", style="bold")
    table.add_column("Runs", style="green")
    table.add_column("Timeout")
    table.add_column("Retries")
    table.add_column("When", style="dim")
    table.add_column("Continue On", style="yellow")

    for index, stage in enumerate(pipeline.stages):
        label = f"{index} (parallel)" if stage.parallel else str(index)
        for step in stage.steps:
            table.add_row(
                label,
                step.name,
                escape(_describe_directive(step)),
                step.timeout or "-",
                str(step.retry_strategy.limit) if step.retry_strategy else "0",
                escape(step.when or "-"),
                _describe_continue_on(step),
            )

    console.print(table)


@app.command("run")
def run_cmd(
    pipeline_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Pipeline YAML file"),
    pipeline_type: PipelineType = typer.Option(
        PipelineType.AUTOMATION,
        "--type",
        "-t",
        help="Pipeline type: 'build' or 'automation'",
    ),
    workdir: Path | None = typer.Option(
        None,
        "--workdir",
        help="Working directory for local execution (default: auto-generated)",
    ),
    vars_path: Path | None = typer.Option(
        None,
        "--vars",
        exists=True,
        dir_okay=False,
        help="YAML file of variables keyed by scope (ORG, PROJECT, COMPONENT, DT)",
    ),
    secrets_path: Path | None = typer.Option(
        None,
        "--secrets",
        exists=True,
        dir_okay=False,
        help="YAML file of secrets keyed by scope (ORG, PROJECT, COMPONENT, DT)",
    ),
    runner_url: str | None = typer.Option(
        None,
        "--runner-url",
        help="Dispatch steps to a remote runner service (default: CHOREO_RUNNER_URL, else local)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging",
    ),
) -> None:
    """Run a pipeline.

    Steps run as local subprocesses unless a runner URL is configured.

    Example:
        choreo-pipeline run pipeline.yaml --type automation --vars vars.yaml --workdir ./run
    """
    configure_logging(verbose)
    pipeline, settings = _load_checked(pipeline_path, pipeline_type)

    try:
        variables = MappingAccessor.from_yaml(vars_path) if vars_path else None
        secrets = MappingAccessor.from_yaml(secrets_path) if secrets_path else None
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=2) from None

    url = runner_url or settings.runner_url
    workflow_name = pipeline_path.stem

    console.print(f"[cyan]Pipeline:[/cyan] {pipeline_path.name} ({pipeline_type.value})")

    try:
        if url:
            console.print(f"[cyan]Runner:[/cyan] {url}")
            result = _run_remote(
                pipeline,
                url,
                pipeline_type=pipeline_type,
                settings=settings,
                variables=variables,
                secrets=secrets,
                workflow_name=workflow_name,
            )
            result_path = Path(workdir or ".") / "execution-result.json"
        else:
            runner = LocalRunner(workdir)
            console.print(f"[cyan]Workdir:[/cyan] {runner.workdir}")
            engine = PipelineEngine(
                pipeline,
                runner,
                pipeline_type=pipeline_type,
                settings=settings,
                variables=variables,
                secrets=secrets,
                system_env=runner.system_env(pipeline_type, image_name=settings.image_name),
                workflow_name=workflow_name,
            )
            result = engine.run()
            result_path = runner.workdir / "execution-result.json"
    except PipelineError as e:
        console.print(f"[red]Error:[/red] {e.kind}: {escape(str(e))}")
        raise typer.Exit(code=2) from None
    except KeyboardInterrupt:
        console.print("\n[magenta]✗ Pipeline cancelled[/magenta]")
        raise typer.Exit(code=130) from None

    console.print()
    _print_result(result)
    write_output(result_path, result.to_dict())
    console.print(f"[dim]Result written to {result_path}[/dim]")

    if result.outcome == PipelineOutcome.SUCCEEDED:
        console.print(f"\n[green]✓ Pipeline {result.outcome.value}[/green]")
        raise typer.Exit(code=0)
    if result.outcome == PipelineOutcome.SUCCEEDED_WITH_TOLERANCES:
        console.print(f"\n[yellow]✓ Pipeline {result.outcome.value}[/yellow]")
        raise typer.Exit(code=0)
    console.print(f"\n[red]✗ Pipeline {result.outcome.value}[/red]")
    if result.error:
        console.print(f"  {result.error_kind}: {escape(result.error)}")
    raise typer.Exit(code=1)


@app.command("settings")
def settings_cmd() -> None:
    """Show the CHOREO_* environment variables and effective settings."""
    try:
        settings = load_settings()
    except SettingsError as e:
        console.print(f"[red]Settings Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=2) from None

    table = Table(title="CHOREO Environment Variables")
    table.add_column("Variable", style="cyan", no_wrap=True)
    table.add_column("Current Value", style="green")
    table.add_column("Effective", style="yellow")

    effective = settings.model_dump()
    for field_name, env_var in sorted(ENV_VARS.items(), key=lambda x: x[1]):
        value = os.environ.get(env_var)
        if value is None:
            shown = "[dim]not set[/dim]"
        else:
            shown = escape(value if len(value) <= 50 else value[:47] + "...")
        current = effective[field_name]
        if isinstance(current, list):
            current = ", ".join(current)
        table.add_row(env_var, shown, "unbounded" if current is None else str(current))

    console.print(table)

    for pipeline_type in PipelineType:
        policy = policy_for(pipeline_type, settings)
        console.print(
            f"[cyan]{pipeline_type.value}:[/cyan] timeout {format_duration(policy.max_timeout)}, "
            f"memory {format_memory(policy.max_memory)}, cpu {format_cpu(policy.max_cpu)}"
        )


def _run_remote(
    pipeline: PipelineDefinition,
    url: str,
    *,
    pipeline_type: PipelineType,
    settings: EngineSettings,
    variables: MappingAccessor | None,
    secrets: MappingAccessor | None,
    workflow_name: str,
) -> PipelineResult:
    async def execute() -> PipelineResult:
        async with HttpRunner(url, poll_interval=settings.poll_interval) as runner:
            engine = PipelineEngine(
                pipeline,
                runner,
                pipeline_type=pipeline_type,
                settings=settings,
                variables=variables,
                secrets=secrets,
                system_env=system_environment(
                    pipeline_type,
                    workspace=REMOTE_WORKSPACE,
                    repository_dir=REMOTE_REPOSITORY_DIR,
                    image_name=settings.image_name,
                ),
                workflow_name=workflow_name,
            )
            return await engine.run_async()

    return asyncio.run(execute())


def _print_result(result: PipelineResult) -> None:
    table = Table(title=f"Pipeline Run {result.workflow_uid}")
    table.add_column("Stage", style="cyan", no_wrap=True)
    table.add_column("Step", style="bold")
    table.add_column("State")
    table.add_column("Attempts")
    table.add_column("Error", style="dim")

    for record in result.steps.values():
        style = _STATE_STYLES.get(record.state, "white")
        table.add_row(
            str(record.stage),
            record.name,
            f"[{style}]{record.state.value}[/{style}]",
            str(record.attempts),
            f"{record.error_kind}: {escape(record.error)}" if record.error else "",
        )

    console.print(table)


def _describe_directive(step: Step) -> str:
    directive = step.directive
    if isinstance(directive, InlineScript):
        first_line = directive.text.strip().splitlines()[0] if directive.text.strip() else ""
        return f"inlineScript: {first_line[:40]}"
    if isinstance(directive, ContainerSet):
        return f"containerSet: {', '.join(c.name for c in directive.containers)}"
    return f"template: {step.template}"


def _describe_continue_on(step: Step) -> str:
    if step.continue_on is None:
        return "-"
    flags = [name for name in ("error", "failed") if getattr(step.continue_on, name)]
    return ", ".join(flags) or "-"


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
