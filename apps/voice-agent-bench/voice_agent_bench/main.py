"""CLI entrypoint for voice agent benchmarks."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional

import httpx
import structlog
import typer
import yaml

from .console_reporter import ConsoleReporter
from .controller import RunController, playwright_session_factory
from .errors import BenchError, SetupError, short_message
from .evaluation import OpenAIEvaluator
from .loader import filter_by_tags, load_application, load_scenario, parse_params, parse_tags, resolve_config_paths
from .logging_utils import configure_logging
from .metrics import MetricsSink
from .models import ApplicationConfig, BenchmarkSummary, RunSettings, ScenarioConfig
from .output_config import get_log_format, get_output_format
from .provisioning import SUPPORTED_PROVIDERS, ProvisioningClient, ProvisioningWorkflow
from .scheduler import BenchmarkScheduler

app = typer.Typer(help="Benchmark browser-hosted voice agents against scripted scenarios.")

LOGGER = structlog.get_logger("voice_agent_bench")


def default_assets_server() -> str:
    port = os.environ.get("HTTP_PORT") or os.environ.get("PORT") or "3333"
    return f"http://localhost:{port}"


def _load_matrix(
    applications: str,
    scenarios: str,
    params: dict[str, str],
    application_tags: Optional[str],
    scenario_tags: Optional[str],
) -> tuple[list[ApplicationConfig], list[ScenarioConfig]]:
    application_paths = resolve_config_paths(applications)
    scenario_paths = resolve_config_paths(scenarios)
    if not application_paths:
        raise SetupError("No application config files found")
    if not scenario_paths:
        raise SetupError("No scenario config files found")

    apps = [load_application(path, params) for path in application_paths]
    scens = [load_scenario(path) for path in scenario_paths]

    app_filter = parse_tags(application_tags)
    apps = filter_by_tags(apps, app_filter)
    if not apps:
        raise SetupError(f"No applications found with tags: {', '.join(app_filter)}")
    scenario_filter = parse_tags(scenario_tags)
    scens = filter_by_tags(scens, scenario_filter)
    if not scens:
        raise SetupError(f"No scenarios found with tags: {', '.join(scenario_filter)}")
    return apps, scens


async def _provision(
    reporter: ConsoleReporter,
    *,
    provider: str,
    api_key: str,
    provider_api_key: str,
    import_id: str,
    debug: bool,
) -> str:
    client = ProvisioningClient(api_key, debug=debug)
    try:
        result = await ProvisioningWorkflow(client).import_resource(provider, provider_api_key, import_id)
    finally:
        await client.aclose()
    if result.warning:
        reporter.print_warning(f"{result.warning}. This may require manual configuration in the Telnyx portal.")
    reporter.print_info(f"Imported {provider} assistant {import_id} as {result.resource_id}")
    return result.resource_id or ""


async def _ensure_web_calls(reporter: ConsoleReporter, *, api_key: str, assistant_id: str, debug: bool) -> None:
    client = ProvisioningClient(api_key, debug=debug)
    try:
        if await ProvisioningWorkflow(client).ensure_web_calls(assistant_id):
            reporter.print_info(f"Enabled unauthenticated web calls for {assistant_id}")
    finally:
        await client.aclose()


async def _run_benchmark(
    reporter: ConsoleReporter,
    *,
    apps: list[ApplicationConfig],
    scens: list[ScenarioConfig],
    repeat: int,
    concurrency: int,
    settings: RunSettings,
    metrics: MetricsSink,
    openai_api_key: Optional[str],
) -> BenchmarkSummary:
    needs_evaluator = any(step.action == "listen" for config in (*apps, *scens) for step in config.steps)
    evaluator = OpenAIEvaluator(openai_api_key) if needs_evaluator else None
    session_factory = playwright_session_factory(settings)

    def controller_factory(spec):
        return RunController(
            spec,
            settings=settings,
            session_factory=session_factory,
            metrics=metrics,
            evaluator=evaluator,
        )

    scheduler = BenchmarkScheduler(concurrency=concurrency, controller_factory=controller_factory, reporter=reporter)
    specs = scheduler.plan(apps, scens, repeat)
    reporter.start_benchmark(
        len(specs),
        min(concurrency, len(specs)),
        [config.name for config in apps],
        [config.name for config in scens],
    )
    try:
        return await scheduler.run(specs)
    finally:
        if evaluator is not None:
            await evaluator.aclose()


@app.command()
def benchmark(
    applications: str = typer.Option(
        ...,
        "--applications",
        "-a",
        help="Comma-separated application YAML files or directories.",
    ),
    scenarios: str = typer.Option(
        ...,
        "--scenarios",
        "-s",
        help="Comma-separated scenario YAML files or directories.",
    ),
    repeat: int = typer.Option(1, min=1, help="Repetitions per application + scenario combination."),
    concurrency: int = typer.Option(1, "--concurrency", "-c", min=1, help="Number of runs executed in parallel."),
    application_tags: Optional[str] = typer.Option(None, help="Comma-separated application tags to filter by."),
    scenario_tags: Optional[str] = typer.Option(None, help="Comma-separated scenario tags to filter by."),
    params: Optional[str] = typer.Option(
        None,
        help="Comma-separated key=value pairs substituted into {{key}} placeholders of application URLs.",
    ),
    assistant_id: Optional[str] = typer.Option(None, help="Assistant id injected as the assistantId URL parameter."),
    api_key: Optional[str] = typer.Option(None, envvar="TELNYX_API_KEY", help="Telnyx API key."),
    provider: Optional[str] = typer.Option(
        None,
        help=f"Import the assistant from an external provider ({', '.join(SUPPORTED_PROVIDERS)}).",
    ),
    provider_api_key: Optional[str] = typer.Option(None, help="Private API key of the external provider."),
    provider_import_id: Optional[str] = typer.Option(None, help="Assistant/agent id to import from the provider."),
    openai_api_key: Optional[str] = typer.Option(None, envvar="OPENAI_API_KEY", help="Key used by listen steps."),
    headless: bool = typer.Option(True, "--headless/--no-headless", help="Run the browser headless."),
    record: bool = typer.Option(False, help="Record a video of every run."),
    audio_url: Optional[str] = typer.Option(None, help="Audio played into the page microphone for the whole run."),
    audio_volume: float = typer.Option(1.0, min=0.0, max=1.0, help="Volume of --audio-url between 0 and 1."),
    assets_server: Optional[str] = typer.Option(
        None,
        help="Base URL serving instrumentation scripts (defaults to localhost:$HTTP_PORT or $PORT or 3333).",
    ),
    instrumentation_dir: Optional[Path] = typer.Option(None, help="Directory holding the in-page instrumentation scripts."),
    assets_dir: Path = typer.Option(Path("assets"), help="Directory holding audio files used by speak steps."),
    output_dir: Path = typer.Option(Path("output"), help="Directory receiving screenshots, recordings and videos."),
    event_timeout: int = typer.Option(30000, min=1, help="Milliseconds to wait for a page event."),
    report: Optional[Path] = typer.Option(None, help="Write per-run step metrics to this CSV file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Forward browser console output to the log."),
    debug: bool = typer.Option(False, help="Log API traffic and periodic diagnostics while waiting for events."),
    output_format: Optional[str] = typer.Option(
        None,
        help="Output format: auto, rich, plain or json (overrides CONSOLE_OUTPUT_FORMAT).",
    ),
    log_level: str = typer.Option("WARNING", help="Log level (DEBUG, INFO, WARNING, ERROR)."),
) -> None:
    """Run every application against every scenario and report failures and step metrics."""

    fmt = get_output_format(output_format)
    level = "DEBUG" if debug else ("INFO" if verbose else log_level)
    configure_logging(level, get_log_format(fmt))
    reporter = ConsoleReporter(output_format=fmt)

    if provider and provider not in SUPPORTED_PROVIDERS:
        raise typer.BadParameter(
            f"Unsupported provider: {provider}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
            param_hint="--provider",
        )

    settings = RunSettings(
        headless=headless,
        verbose=verbose,
        debug=debug,
        record=record,
        assets_server_url=assets_server or default_assets_server(),
        instrumentation_dir=str(instrumentation_dir) if instrumentation_dir else None,
        assets_dir=str(assets_dir),
        output_dir=str(output_dir),
        audio_url=audio_url,
        audio_volume=audio_volume,
        event_timeout_ms=event_timeout,
    )
    metrics = MetricsSink()

    try:
        url_params = parse_params(params)
        if provider:
            missing = [
                flag
                for flag, value in (
                    ("--api-key", api_key),
                    ("--provider-api-key", provider_api_key),
                    ("--provider-import-id", provider_import_id),
                )
                if not value
            ]
            if missing:
                raise SetupError(f"Provider import from {provider} requires {', '.join(missing)}")
            url_params["assistantId"] = asyncio.run(
                _provision(
                    reporter,
                    provider=provider,
                    api_key=api_key or "",
                    provider_api_key=provider_api_key or "",
                    import_id=provider_import_id or "",
                    debug=debug,
                )
            )
        elif assistant_id:
            url_params["assistantId"] = assistant_id
            if api_key:
                try:
                    asyncio.run(_ensure_web_calls(reporter, api_key=api_key, assistant_id=assistant_id, debug=debug))
                except (BenchError, httpx.HTTPError) as exc:
                    LOGGER.warning("web_calls_check_failed", assistant_id=assistant_id, error=str(exc))
                    reporter.print_warning(f"Could not check assistant: {short_message(exc)}")

        apps, scens = _load_matrix(applications, scenarios, url_params, application_tags, scenario_tags)
        summary = asyncio.run(
            _run_benchmark(
                reporter,
                apps=apps,
                scens=scens,
                repeat=repeat,
                concurrency=concurrency,
                settings=settings,
                metrics=metrics,
                openai_api_key=openai_api_key,
            )
        )
    except (BenchError, FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        reporter.close()
        LOGGER.error("benchmark_setup_failed", error=str(exc))
        reporter.print_error(short_message(exc))
        if not debug:
            reporter.print_info("Rerun with --debug for detailed diagnostics.")
        raise typer.Exit(code=1) from exc
    finally:
        reporter.close()

    reporter.finish_benchmark(summary, debug=debug)
    reporter.print_metrics(metrics.summary())
    if report is not None:
        destination = metrics.write_csv(report)
        reporter.print_info(f"Report written -> {destination}")

    if summary.failed:
        raise typer.Exit(code=1)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
