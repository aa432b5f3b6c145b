"""Console reporter with environment detection for benchmark output."""

import json
import os
import sys
from typing import Optional, Sequence

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text

from .metrics import MetricSummary
from .models import BenchmarkSummary, RunResult, RunSpec
from .output_config import OutputFormat


def failure_lines(summary: BenchmarkSummary) -> list[str]:
    """``app + scenario (rep N): error`` for every failed run, in run order."""
    return [
        f"{result.app} + {result.scenario} (rep {result.repetition}): {result.error or 'unknown error'}"
        for result in summary.results
        if not result.success
    ]


class ConsoleReporter:
    """
    Console reporter that adapts to the environment.

    Interactive terminals get a live progress bar and results table; CI,
    pipes and redirects get plain lines; JSON mode prints one summary object.
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO):
        self.output_format = output_format
        self._detect_environment()
        self.console: Optional[Console] = Console() if self.use_rich else None
        self.progress: Optional[Progress] = None
        self.progress_task: Optional[TaskID] = None
        self.live: Optional[Live] = None
        self.results_table: Optional[Table] = None
        self._total = 0

    def _detect_environment(self) -> None:
        if self.output_format == OutputFormat.RICH:
            self.use_rich = True
        elif self.output_format in (OutputFormat.PLAIN, OutputFormat.JSON):
            self.use_rich = False
        else:  # AUTO
            is_terminal = sys.stdout.isatty()
            is_ci = any(name in os.environ for name in ("CI", "JENKINS_HOME", "GITLAB_CI", "TRAVIS", "GITHUB_ACTIONS"))
            self.use_rich = is_terminal and not is_ci

    @property
    def quiet(self) -> bool:
        return self.output_format == OutputFormat.JSON

    def start_benchmark(self, total_runs: int, concurrency: int, applications: Sequence[str], scenarios: Sequence[str]) -> None:
        self._total = total_runs
        if self.quiet:
            return
        if self.use_rich:
            self.console.print(
                f"[bold cyan]Benchmark[/] {len(applications)} application(s) x {len(scenarios)} scenario(s) "
                f"= {total_runs} run(s), concurrency {concurrency}"
            )
            self.results_table = Table(show_header=True, header_style="bold cyan")
            self.results_table.add_column("Run", style="dim", width=6)
            self.results_table.add_column("Application + scenario", width=60)
            self.results_table.add_column("Status", width=10)
            self.results_table.add_column("Duration", justify="right", width=12)
            self.progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                TimeElapsedColumn(),
                console=self.console,
            )
            self.progress_task = self.progress.add_task("[cyan]Running benchmark", total=total_runs)
            self.live = Live(Group(self.progress, self.results_table), console=self.console, refresh_per_second=4)
            self.live.start()
        else:
            print(f"Applications: {', '.join(applications)}")
            print(f"Scenarios: {', '.join(scenarios)}")
            print(f"Total runs: {total_runs} | Concurrency: {concurrency}")
            print("-" * 80)

    def run_started(self, spec: RunSpec) -> None:
        if not self.use_rich and not self.quiet:
            print(f"[{spec.run_number}/{self._total}] {spec.label} started", flush=True)

    def run_finished(self, result: RunResult) -> None:
        label = f"{result.app} + {result.scenario} (rep {result.repetition})"
        duration = f"{result.duration_ms / 1000:.1f}s"
        if self.quiet:
            return
        if self.use_rich:
            status = Text("✓ PASS", style="green") if result.success else Text("✗ FAIL", style="red")
            self.results_table.add_row(str(result.run_number), label, status, duration)
            if not result.success and result.error:
                self.results_table.add_row("", Text(f"Error: {result.error}", style="red"), "", "")
            self.progress.update(self.progress_task, advance=1)
        else:
            outcome = "✓ PASS" if result.success else "✗ FAIL"
            print(f"[{result.run_number}/{self._total}] {label} {outcome} ({duration})", flush=True)
            if not result.success and result.error:
                print(f"  Error: {result.error}")

    def close(self) -> None:
        """Stop the live display; safe to call more than once."""
        if self.live:
            self.live.stop()
            self.live = None

    def finish_benchmark(self, summary: BenchmarkSummary, *, debug: bool = False) -> None:
        self.close()

        if self.quiet:
            print(json.dumps(summary.model_dump(mode="json")))
            return

        failures = failure_lines(summary)
        if self.use_rich:
            summary_text = Text()
            summary_text.append(f"Total: {summary.total_runs}  ", style="bold")
            summary_text.append(f"Passed: {summary.successful}  ", style="bold green")
            summary_text.append(f"Failed: {summary.failed}", style="bold red" if summary.failed else "bold green")
            for line in failures:
                summary_text.append(f"\n  {line}", style="red")
            if failures and not debug:
                summary_text.append("\nRerun with --debug for detailed diagnostics.", style="dim")

            status = "✓ ALL RUNS PASSED" if not summary.failed else "✗ SOME RUNS FAILED"
            self.console.print()
            self.console.print(
                Panel(
                    summary_text,
                    title=Text(status, style="bold green" if not summary.failed else "bold red"),
                    border_style="green" if not summary.failed else "red",
                )
            )
        else:
            print("-" * 80)
            print(f"Total: {summary.total_runs} | Passed: {summary.successful} | Failed: {summary.failed}")
            for line in failures:
                print(f"  {line}")
            if failures and not debug:
                print("Rerun with --debug for detailed diagnostics.")
            print("✓ ALL RUNS PASSED" if not summary.failed else "✗ SOME RUNS FAILED")

    def print_metrics(self, rows: Sequence[MetricSummary]) -> None:
        if not rows or self.quiet:
            return
        if self.use_rich:
            table = Table(title="Step metrics (successful runs)", header_style="bold cyan")
            for column in ("Application", "Scenario", "Step", "Metric", "n", "Mean", "Median", "P95", "Min", "Max"):
                table.add_column(column, justify="right" if column in ("n", "Mean", "Median", "P95", "Min", "Max") else "left")
            for row in rows:
                table.add_row(
                    row.app,
                    row.scenario,
                    f"{row.step_index + 1} {row.action}",
                    row.metric,
                    str(row.count),
                    f"{row.mean:.3f}",
                    f"{row.median:.3f}",
                    f"{row.p95:.3f}",
                    f"{row.minimum:.3f}",
                    f"{row.maximum:.3f}",
                )
            self.console.print(table)
        else:
            print("Step metrics (successful runs):")
            for row in rows:
                print(
                    f"  {row.app} + {row.scenario} step {row.step_index + 1} {row.action} {row.metric}: "
                    f"n={row.count} mean={row.mean:.3f} median={row.median:.3f} p95={row.p95:.3f} "
                    f"min={row.minimum:.3f} max={row.maximum:.3f}"
                )

    def print_error(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}", file=sys.stderr)

    def print_warning(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[yellow]Warning:[/] {message}")
        elif not self.quiet:
            print(f"Warning: {message}")

    def print_info(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[cyan]{message}[/]")
        elif not self.quiet:
            print(message)
