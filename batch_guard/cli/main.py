"""
CLI interface for batch-guard.

Runs a checkpointed batch job over a CSV column and inspects or resets its checkpoint.
"""

import csv
import json
import logging
import math
import re
import sys
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from batch_guard.config.loader import RunnerConfig, load_runner_config
from batch_guard.core.cancellation import CancelToken
from batch_guard.core.credentials import Credential, CredentialPool
from batch_guard.core.driver import BatchJobDriver, JobResult, WorkUnit
from batch_guard.core.errors import CallFailed, FatalError, JobCancelled
from batch_guard.core.orchestrator import RetryingCaller
from batch_guard.core.pricing import calculate_cost
from batch_guard.core.stats import JobStats
from batch_guard.core.token_counter import TokenUsage, estimate_tokens
from batch_guard.providers.openai_adapters import build_adapter
from batch_guard.storage.checkpoint import CheckpointStore
from batch_guard.storage.sinks import JsonlSink, MarkdownSink

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1      # Fatal error or aborted job
EXIT_CODE_PARTIAL = 2   # Completed, but some units failed
EXIT_CODE_CANCELLED = 130

DEFAULT_CONFIG = "batch_guard.yaml"

# Survey answers that carry no content
EMPTY_INDICATORS = frozenset({
    "na", "n/a", "-", "--", "---", "none", "nothing", "nil", ".",
})

# Answers made only of punctuation, or null-like words
NON_RESPONSE_PATTERNS = (
    re.compile(r"^\.+$"),
    re.compile(r"^-+$"),
    re.compile(r"^\?+$"),
    re.compile(r"^n/?a$", re.IGNORECASE),
    re.compile(r"^(nil|null)$", re.IGNORECASE),
)
MIN_RESPONSE_LENGTH = 3


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """batch-guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("batch-guard - Use --help to see available commands")


@app.command()
def run(
    input_csv: Path = typer.Argument(..., help="CSV file with one response per row"),
    column: str = typer.Option(..., "--column", "-k", help="Column holding the free-text responses"),
    template: Path = typer.Option(..., "--template", "-t", help="Prompt template file"),
    config_path: str = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Runner YAML config"),
    group_column: Optional[str] = typer.Option(
        None, "--group-column", "-g", help="Process responses separately per value of this column"
    ),
    schema_path: Optional[Path] = typer.Option(None, "--schema", "-s", help="JSON schema for structured output"),
    output: Path = typer.Option(Path("output.jsonl"), "--output", "-o", help="JSONL file, or directory for markdown"),
    output_format: str = typer.Option("jsonl", "--format", "-f", help="jsonl or markdown"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Abort the job after this many seconds"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Abort on the first failed unit"),
    min_length: int = typer.Option(
        MIN_RESPONSE_LENGTH, "--min-length", help="Drop answers shorter than this many characters"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Also write logs to a dated file here"),
):
    """
    Send batches of responses to the configured provider.

    Completed batches are checkpointed; re-running the same command resumes
    where the previous run stopped.
    """
    configure_logging(log_level, log_dir)
    try:
        config = load_runner_config(config_path)
        groups = read_groups(input_csv, column, group_column, min_length)
        prompt_template = template.read_text(encoding='utf-8')
        schema = json.loads(schema_path.read_text(encoding='utf-8')) if schema_path else None
        sink = build_sink(output_format, output)
        cancel_token = CancelToken(timeout=timeout)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    store = CheckpointStore(config.job.checkpoint_path)
    store.load()
    driver = BatchJobDriver(
        store,
        sink,
        flush_every=config.job.flush_every_n_units,
        tolerate_failures=config.job.tolerate_unit_failures and not fail_fast,
        clear_on_success=config.job.clear_on_success,
        cancel_token=cancel_token,
        cached_result=sink.lookup,
    )

    try:
        caller = RetryingCaller(
            build_pool(config),
            build_adapter(config.provider),
            config.retry,
            stats=driver.stats,
            cancel_token=cancel_token,
        )
        total_batches = {
            group: math.ceil(len(items) / config.job.chunk_size) for group, items in groups.items()
        }

        def work(unit: WorkUnit):
            group = unit.key.parts[:-1]
            prompt = render_prompt(prompt_template, unit, total_batches[group])
            return caller.call(prompt, schema, cost_estimate=estimate_tokens(prompt))

        result = driver.run_groups(groups, config.job.chunk_size, work)
    except (JobCancelled, KeyboardInterrupt):
        console.print("[yellow]Job cancelled.[/] Completed batches are checkpointed; re-run to resume.")
        sys.exit(EXIT_CODE_CANCELLED)
    except (FatalError, CallFailed) as e:
        console.print(f"[red]Job aborted:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except OSError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_job_result(result, driver.stats, config)
    if result.has_failures or result.units_skipped:
        sys.exit(EXIT_CODE_PARTIAL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(
    config_path: str = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Runner YAML config"),
):
    """Show the checkpoint of the configured job."""
    try:
        config = load_runner_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    store = CheckpointStore(config.job.checkpoint_path)
    if not store.load():
        console.print("\n[bold yellow]No checkpoint found[/]")
        console.print(f"Nothing to resume at {store.path}\n")
        sys.exit(EXIT_CODE_PASS)

    stats = JobStats.from_dict(store.stats)
    table = Table(title=f"Checkpoint {store.path}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Completed units", str(len(store.completed_keys())))
    table.add_row("Failed units", str(len(store.failed_keys())))
    table.add_row("API calls", f"{stats.calls_made:,}")
    table.add_row("Failed calls", f"{stats.failed_calls:,}")
    table.add_row("Tokens spent", f"{stats.tokens_spent:,}")
    table.add_row("Retries", f"{stats.retries:,}")
    table.add_row("Rotations", f"{stats.rotations:,}")
    console.print(table)

    failed = store.failed_keys()
    if failed:
        console.print("\n[bold]Failed units:[/]")
        for key in failed[:10]:
            console.print(f"  {key}")
        if len(failed) > 10:
            console.print(f"  ... and {len(failed) - 10} more")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def clear(
    config_path: str = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Runner YAML config"),
    failed_only: bool = typer.Option(
        False, "--failed-only", help="Only forget failed units so the next run retries them"
    ),
):
    """Reset the checkpoint of the configured job."""
    try:
        config = load_runner_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    store = CheckpointStore(config.job.checkpoint_path)
    if failed_only:
        store.load()
        count = store.clear_failed()
        store.flush()
        console.print(f"[green]✓[/] Cleared {count} failed unit(s); they will be retried on the next run")
    else:
        store.clear()
        console.print("[green]✓[/] Checkpoint cleared")
    sys.exit(EXIT_CODE_PASS)


def configure_logging(level: str, log_dir: Optional[Path] = None) -> None:
    """Send library logs to stderr through rich, and optionally to a dated file."""
    handlers: List[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False)
    ]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{date.today().isoformat()}.log", encoding='utf-8')
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(level=level.upper(), format="%(message)s", handlers=handlers, force=True)


def build_pool(config: RunnerConfig) -> CredentialPool:
    """Create the credential pool for the configured provider.

    Raises:
        FatalError: If no credentials match the provider
    """
    credentials = [
        Credential(id=c.id, provider=c.provider, api_key=c.api_key)
        for c in config.provider_credentials()
    ]
    if not credentials:
        raise FatalError(
            f"No API credentials configured for provider '{config.provider.name}'. "
            "Add a credentials section or set the API_KEYS environment variable."
        )
    return CredentialPool(
        credentials,
        tokens_per_window=config.rate_limit.tokens_per_window,
        window_length=config.rate_limit.window_length,
        safety_fraction=config.rate_limit.safety_fraction,
    )


def build_sink(output_format: str, output: Path):
    """Create the output sink for ``--format``.

    Markdown output goes to a directory with one file per batch and a
    combined report.md.
    """
    if output_format == "jsonl":
        return JsonlSink(str(output))
    if output_format == "markdown":
        return MarkdownSink(str(output), report_path=str(output / "report.md"))
    raise ValueError(f"Unsupported output format: {output_format}")


def is_empty_response(text: Optional[str], min_length: int = MIN_RESPONSE_LENGTH) -> bool:
    """True for blank, too-short or placeholder answers like 'N/A', 'none' or '...'."""
    if text is None:
        return True
    stripped = text.strip()
    if not stripped or stripped.lower() in EMPTY_INDICATORS:
        return True
    if len(stripped) < min_length:
        return True
    return any(pattern.match(stripped) for pattern in NON_RESPONSE_PATTERNS)


def read_groups(
    path: Path,
    column: str,
    group_column: Optional[str] = None,
    min_length: int = MIN_RESPONSE_LENGTH,
) -> Dict[Tuple[str, ...], List[str]]:
    """Read non-empty responses from a CSV, grouped in first-seen order.

    Returns:
        Mapping of group key parts to responses; the key is
        ``(group_value, column)`` or ``(column,)`` without a group column

    Raises:
        ValueError: If a named column is missing
    """
    groups: Dict[Tuple[str, ...], List[str]] = {}
    with open(path, 'r', encoding='utf-8-sig', newline='') as f:
        reader = csv.DictReader(f)
        fieldnames = reader.fieldnames or []
        for name in filter(None, (column, group_column)):
            if name not in fieldnames:
                raise ValueError(f"Column '{name}' not found in {path}")
        for row in reader:
            text = row.get(column)
            if is_empty_response(text, min_length):
                continue
            if group_column:
                group = ((row.get(group_column) or "").strip() or "Unknown", column)
            else:
                group = (column,)
            groups.setdefault(group, []).append(text.strip())
    return groups


def render_prompt(template: str, unit: WorkUnit, total_batches: int) -> str:
    """Fill ``{group}``, ``{batch}``, ``{total_batches}`` and ``{responses}`` in a template."""
    responses = "\n".join(f"{i}. {text}" for i, text in enumerate(unit.items, start=1))
    replacements = {
        "{group}": " / ".join(str(p) for p in unit.key.parts[:-1]),
        "{batch}": str(unit.key.parts[-1] + 1),
        "{total_batches}": str(total_batches),
        "{responses}": responses,
    }
    prompt = template
    for placeholder, value in replacements.items():
        prompt = prompt.replace(placeholder, value)
    return prompt


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


def _display_job_result(result: JobResult, stats: JobStats, config: RunnerConfig) -> None:
    """Display the job summary, calling out failed units explicitly."""
    console.print("\n[bold]Batch Job Result[/bold]")
    console.print("-" * 40)

    table = Table()
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Units completed", str(result.units_completed))
    table.add_row("Units failed", str(result.units_failed))
    table.add_row("Units skipped (previously failed)", str(result.units_skipped))
    table.add_row("Units already done", str(result.units_cached))
    table.add_row("Tokens spent", f"{result.total_cost:,}")
    table.add_row("Retries", str(result.retries))
    table.add_row("Rotations", str(result.rotations))
    try:
        spend = calculate_cost(
            config.provider.model, TokenUsage(stats.prompt_tokens, stats.completion_tokens)
        )
        table.add_row("Estimated spend", _format_currency(spend))
    except ValueError:
        table.add_row("Estimated spend", "n/a")
    console.print(table)

    if result.has_failures:
        console.print(f"\n[bold red]{result.summary()}[/]")
        console.print("Checkpoint retained; run `batch-guard clear --failed-only` to retry failed units.")
    elif result.units_skipped:
        console.print(f"\n[bold yellow]{result.summary()}[/]")
    else:
        console.print(f"\n[bold green]{result.summary()}[/]")


if __name__ == "__main__":
    app()
