"""
Command Line Interface for NeuroLogg analysis.

Runs behavioral analyses over exported log files, validates existing
analyses against their source records, and shows configuration and
backend status.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, TypeVar

import click
import keyring
import keyring.errors
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from neurologg import __version__
from neurologg.ai.analyzer import AnalysisOptions, AnalysisService, NoDataError
from neurologg.ai.client import StreamCallbacks
from neurologg.ai.errors import AIClientError
from neurologg.config import (
    KEYRING_SERVICE,
    KEYRING_USERNAME,
    AppConfig,
    ConfigFileError,
    load_config,
)
from neurologg.core.models import AnalysisResult, ChildProfile, CrisisRecord, LogRecord
from neurologg.validation.statistics import compute_statistics
from neurologg.validation.validator import add_citations, create_validated_result

logger = logging.getLogger(__name__)

console = Console()

M = TypeVar("M")

_LOGS = TypeAdapter(list[LogRecord])
_CRISIS = TypeAdapter(list[CrisisRecord])


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def print_header(text: str) -> None:
    console.print(f"\n[bold cyan]{text}[/bold cyan]\n")


def print_success(text: str) -> None:
    console.print(f"[bold green]✓[/bold green] {text}")


def print_warning(text: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {text}")


def print_error(text: str) -> None:
    console.print(f"[bold red]✗[/bold red] {text}")


def _load_json(path: str | Path, adapter: TypeAdapter[M], what: str) -> M:
    """Read and validate a JSON file, exiting with a message on failure."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
        return adapter.validate_json(raw)
    except OSError as e:
        print_error(f"Cannot read {what} file {path}: {type(e).__name__}")
    except ValidationError as e:
        print_error(f"Invalid {what} file {path}: {e.error_count()} validation error(s)")
        logger.debug(str(e))
    sys.exit(1)


def _load_crisis(path: str | None) -> list[CrisisRecord]:
    return _load_json(path, _CRISIS, "crisis") if path else []


def _get_config(ctx: click.Context) -> AppConfig:
    config_path = ctx.obj.get("config_path")
    try:
        return load_config(Path(config_path) if config_path else None)
    except ConfigFileError as e:
        print_error(str(e))
        sys.exit(1)


def _build_service(config: AppConfig) -> AnalysisService:
    return AnalysisService(config)


def _dump(model: Any) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)


def print_analysis(result: AnalysisResult) -> None:
    """Render an analysis as panels."""
    kind = "Deep analysis" if result.is_deep_analysis else "Analysis"
    console.print(f"[dim]{kind} by {result.model_used or 'unknown model'}[/dim]")

    for title, body in (
        ("Triggers", result.trigger_analysis),
        ("Strategies", result.strategy_evaluation),
        ("Interoception", result.interoception_patterns),
        ("Summary", result.summary),
    ):
        if body:
            console.print(Panel(body, title=title, border_style="blue"))

    if result.correlations:
        table = Table(title="Correlations")
        table.add_column("Factor 1", style="cyan")
        table.add_column("Factor 2", style="cyan")
        table.add_column("Strength")
        table.add_column("Description")
        for c in result.correlations:
            table.add_row(c.factor1, c.factor2, c.strength.value, c.description)
        console.print(table)

    if result.recommendations:
        console.print("\n[bold]Recommendations[/bold]")
        for rec in result.recommendations:
            console.print(f"  • {rec}")


def print_validation(validated: Any) -> None:
    validation = validated.validation
    verdict = "[green]trustworthy[/green]" if validated.trustworthy else "[red]not trustworthy[/red]"
    console.print(
        f"\nValidation: {validation.valid_claims}/{validation.total_claims} claims "
        f"within tolerance, {verdict}"
    )
    for warning in validation.warnings:
        print_warning(warning)
    console.print(f"[dim]{validated.citation}[/dim]")


# =============================================================================
# MAIN CLI GROUP
# =============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--config", type=click.Path(), help="Custom config file")
@click.version_option(__version__, prog_name="neurologg")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool, config: str | None) -> None:
    """
    NeuroLogg - AI analysis of behavioral logs with hallucination checks.

    Every numeric claim the model makes is checked against statistics
    computed directly from your logs.
    """
    if debug:
        logging.basicConfig(level=logging.DEBUG)
    elif verbose:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config


# =============================================================================
# ANALYZE COMMAND
# =============================================================================


@cli.command()
@click.argument("logs_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--crisis", "crisis_file", type=click.Path(exists=True, dir_okay=False),
              help="Crisis events JSON file")
@click.option("--profile", "profile_file", type=click.Path(exists=True, dir_okay=False),
              help="Child profile JSON file")
@click.option("--deep", is_flag=True, help="Use the premium model tier")
@click.option("--stream", is_flag=True, help="Print the response as it arrives")
@click.option("--force-refresh", is_flag=True, help="Ignore cached results")
@click.option("--validate/--no-validate", default=True, help="Check numeric claims against the data")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the result as JSON")
@click.pass_context
def analyze(
    ctx: click.Context,
    logs_file: str,
    crisis_file: str | None,
    profile_file: str | None,
    deep: bool,
    stream: bool,
    force_refresh: bool,
    validate: bool,
    output: str | None,
) -> None:
    """
    Analyze a JSON array of logs.

    Example:
        neurologg analyze logs.json --crisis crisis.json --deep -o analysis.json
    """
    if deep and stream:
        print_error("--deep and --stream cannot be combined")
        sys.exit(2)

    config = _get_config(ctx)
    logs = _load_json(logs_file, _LOGS, "logs")
    crisis = _load_crisis(crisis_file)
    profile = (
        _load_json(profile_file, TypeAdapter(ChildProfile), "profile") if profile_file else None
    )

    print_header("🧠 NeuroLogg analysis")
    console.print(f"{len(logs)} logs, {len(crisis)} crisis events")

    def on_retry(attempt: int, max_attempts: int, reason: str) -> None:
        print_warning(f"Attempt {attempt}/{max_attempts}: {reason}")

    options = AnalysisOptions(
        force_refresh=force_refresh,
        profile=profile,
        callbacks=StreamCallbacks(on_retry=on_retry),
    )

    async def run() -> AnalysisResult:
        service = _build_service(config)
        try:
            if stream:
                callbacks = StreamCallbacks(
                    on_chunk=lambda text: console.print(text, end="", markup=False, highlight=False),
                    on_retry=on_retry,
                )
                result = await service.analyze_streaming(logs, crisis, callbacks, options)
                console.print()
                return result
            if deep:
                return await service.analyze_deep(logs, crisis, options)
            return await service.analyze(logs, crisis, options)
        finally:
            await service.aclose()

    try:
        result = asyncio.run(run())
    except NoDataError:
        print_error("The logs file contains no logs")
        sys.exit(1)
    except AIClientError as e:
        print_error(f"Analysis failed: {e}")
        sys.exit(1)

    print_success("Analysis complete")
    if validate:
        validated = create_validated_result(result, logs, crisis, config.validation)
        print_analysis(add_citations(result, logs, crisis))
        print_validation(validated)
        payload: Any = validated
    else:
        print_analysis(result)
        payload = result

    if output:
        Path(output).write_text(_dump(payload), encoding="utf-8")
        print_success(f"Saved to {output}")


# =============================================================================
# VALIDATE COMMAND
# =============================================================================


@cli.command()
@click.argument("analysis_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("logs_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--crisis", "crisis_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def validate(
    ctx: click.Context,
    analysis_file: str,
    logs_file: str,
    crisis_file: str | None,
    output_json: bool,
) -> None:
    """Check the numeric claims of a saved analysis against its logs."""
    config = _get_config(ctx)
    result = _load_json(analysis_file, TypeAdapter(AnalysisResult), "analysis")
    logs = _load_json(logs_file, _LOGS, "logs")
    crisis = _load_crisis(crisis_file)

    validated = create_validated_result(result, logs, crisis, config.validation)

    if output_json:
        click.echo(_dump(validated.validation))
    else:
        table = Table(title="Claims")
        table.add_column("Claim", style="cyan")
        table.add_column("Statistic")
        table.add_column("Claimed", justify="right")
        table.add_column("Actual", justify="right")
        table.add_column("Result")
        for v in validated.validation.claim_validations:
            table.add_row(
                v.claim,
                v.statistic,
                f"{v.claimed_value:g}",
                f"{v.actual_value:g}",
                "[green]ok[/green]" if v.is_valid else f"[red]{v.discrepancy_percent}% off[/red]",
            )
        console.print(table)
        print_validation(validated)

    if not validated.trustworthy:
        sys.exit(3)


# =============================================================================
# STATS COMMAND
# =============================================================================


@cli.command()
@click.argument("logs_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--crisis", "crisis_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def stats(logs_file: str, crisis_file: str | None, output_json: bool) -> None:
    """Show the statistics claims are validated against."""
    logs = _load_json(logs_file, _LOGS, "logs")
    crisis = _load_crisis(crisis_file)
    computed = compute_statistics(logs, crisis)

    if output_json:
        click.echo(_dump(computed))
        return

    table = Table(title="Statistics")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Logs", str(computed.log_count))
    table.add_row("Crisis events", str(computed.crisis_count))
    table.add_row("Average arousal", f"{computed.avg_arousal:g}")
    table.add_row("Average energy", f"{computed.avg_energy:g}")
    table.add_row("Average valence", f"{computed.avg_valence:g}")
    table.add_row("High arousal", f"{computed.high_arousal_percentage}%")
    table.add_row("Low energy", f"{computed.low_energy_percentage}%")
    for setting, pct in sorted(computed.context_percentages.items()):
        table.add_row(f"Setting: {setting}", f"{pct}%")
    for trigger, pct in sorted(computed.trigger_percentages.items(), key=lambda kv: -kv[1]):
        table.add_row(f"Trigger: {trigger}", f"{pct}%")
    for strategy, s in sorted(computed.strategy_effectiveness.items()):
        table.add_row(f"Strategy: {strategy}", f"{s.success_rate}% of {s.usage_count}")
    if computed.avg_crisis_duration is not None:
        table.add_row("Average crisis duration", f"{computed.avg_crisis_duration} min")
    if computed.avg_recovery_time is not None:
        table.add_row("Average recovery", f"{computed.avg_recovery_time} min")
    console.print(table)


# =============================================================================
# STATUS COMMAND
# =============================================================================


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show backend configuration and readiness."""
    config = _get_config(ctx)

    async def run() -> Any:
        service = _build_service(config)
        try:
            return await service.get_backend_status()
        finally:
            await service.aclose()

    backend_status = asyncio.run(run())

    table = Table(title="Backends")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Active backend", backend_status.active_backend)
    table.add_row("Remote configured", "yes" if backend_status.remote_configured else "no")
    table.add_row("Free model", backend_status.free_model)
    table.add_row("Premium models", ", ".join(backend_status.premium_models) or "-")
    table.add_row("Local enabled", "yes" if backend_status.local_enabled else "no")
    table.add_row("Local ready", "yes" if backend_status.local_ready else "no")
    console.print(table)

    if backend_status.active_backend == "none":
        print_warning("No backend available. Set NEUROLOGG_API_KEY or start the local server.")


# =============================================================================
# CONFIG COMMANDS
# =============================================================================


@cli.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command()
@click.pass_context
def show(ctx: click.Context) -> None:
    """Show current configuration."""
    app_config = _get_config(ctx)
    console.print_json(app_config.model_dump_json())


@config.command("set-key")
def set_key() -> None:
    """Store the remote API key in the system keyring."""
    api_key = click.prompt("API key", hide_input=True).strip()
    if not api_key:
        print_error("No key entered")
        sys.exit(1)
    try:
        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, api_key)
    except keyring.errors.KeyringError as e:
        print_error(f"Could not store key: {type(e).__name__}")
        sys.exit(1)
    print_success("API key stored in keyring")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
