from __future__ import annotations

import csv
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from fakes import FakeSession
from voice_agent_bench import main
from voice_agent_bench.console_reporter import ConsoleReporter
from voice_agent_bench.main import app
from voice_agent_bench.provisioning import ProvisioningClient

runner = CliRunner()


def _write(path: Path, payload: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def _configs(tmp_path: Path, scenario_steps: list[dict]) -> tuple[Path, Path]:
    apps = tmp_path / "applications"
    _write(apps / "widget.yaml", {"url": "https://example.test/{{assistantId}}", "tags": ["web"]})
    scenarios = tmp_path / "scenarios"
    _write(scenarios / "greeting.yaml", {"steps": scenario_steps, "tags": ["smoke"]})
    return apps, scenarios


class SessionPool:
    def __init__(self) -> None:
        self.created: list[FakeSession] = []
        self.failures: dict[str, BaseException] = {}

    def factory(self, settings):
        def _make(spec):
            session = FakeSession(failures=dict(self.failures))
            self.created.append(session)
            return session

        return _make


@pytest.fixture
def sessions(monkeypatch: pytest.MonkeyPatch) -> SessionPool:
    pool = SessionPool()
    monkeypatch.setattr(main, "playwright_session_factory", pool.factory)
    return pool


def _invoke(args: list[str]):
    return runner.invoke(
        app,
        [*args, "--output-format", "plain"],
        env={"TELNYX_API_KEY": None, "OPENAI_API_KEY": None, "CONSOLE_OUTPUT_FORMAT": None},
    )


def test_benchmark_runs_matrix_and_writes_report(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [{"action": "sleep", "time": 5, "metrics": ["elapsed_time"]}])
    report = tmp_path / "report.csv"

    result = _invoke(
        [
            "--applications",
            str(apps),
            "--scenarios",
            str(scenarios),
            "--repeat",
            "2",
            "--concurrency",
            "2",
            "--assistant-id",
            "assistant-7",
            "--report",
            str(report),
            "--output-dir",
            str(tmp_path / "out"),
        ]
    )

    assert result.exit_code == 0, result.output
    assert "ALL RUNS PASSED" in result.output
    assert len(sessions.created) == 2
    assert all(session.closed for session in sessions.created)
    assert ("navigate", "https://example.test/assistant-7") in sessions.created[0].calls

    with report.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["repetition"] for row in rows] == ["0", "1"]
    assert all(row["step1_sleep_elapsed_time"] for row in rows)


def test_failed_runs_are_listed_and_exit_non_zero(tmp_path: Path, sessions: SessionPool) -> None:
    sessions.failures["click"] = RuntimeError("button not found")
    apps, scenarios = _configs(tmp_path, [{"action": "click", "selector": "#start"}])

    result = _invoke(["-a", str(apps), "-s", str(scenarios)])

    assert result.exit_code == 1
    assert "widget + greeting (rep 0): Step 1 (click) failed: button not found" in result.output
    assert "Rerun with --debug" in result.output


def test_missing_path_is_a_setup_error(tmp_path: Path, sessions: SessionPool) -> None:
    _, scenarios = _configs(tmp_path, [])

    result = _invoke(["-a", str(tmp_path / "missing"), "-s", str(scenarios)])

    assert result.exit_code == 1
    assert "Path not found" in result.output
    assert sessions.created == []


def test_tag_filter_without_matches_fails(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [])

    result = _invoke(["-a", str(apps), "-s", str(scenarios), "--scenario-tags", "nightly"])

    assert result.exit_code == 1
    assert "No scenarios found with tags: nightly" in result.output


def test_unsupported_provider_is_rejected(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [])

    result = _invoke(["-a", str(apps), "-s", str(scenarios), "--provider", "acme"])

    assert result.exit_code == 2
    assert sessions.created == []


def test_provider_import_requires_credentials(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [])

    result = _invoke(["-a", str(apps), "-s", str(scenarios), "--provider", "vapi"])

    assert result.exit_code == 1
    assert "requires --api-key, --provider-api-key, --provider-import-id" in result.output


def test_listen_steps_require_openai_key(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [{"action": "listen", "evaluation": "says hello"}])

    result = _invoke(["-a", str(apps), "-s", str(scenarios)])

    assert result.exit_code == 1
    assert "OPENAI_API_KEY is required" in result.output
    assert sessions.created == []


def test_assistant_check_failure_warns_and_benchmark_continues(
    tmp_path: Path, sessions: SessionPool, monkeypatch: pytest.MonkeyPatch
) -> None:
    requests: list[tuple[str, str]] = []

    def api(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        return httpx.Response(404, json={"errors": [{"detail": "not found"}]})

    def client_factory(api_key: str, **kwargs) -> ProvisioningClient:
        return ProvisioningClient(api_key, client=httpx.AsyncClient(transport=httpx.MockTransport(api)), **kwargs)

    monkeypatch.setattr(main, "ProvisioningClient", client_factory)
    apps, scenarios = _configs(tmp_path, [{"action": "sleep", "time": 1}])

    result = _invoke(["-a", str(apps), "-s", str(scenarios), "--assistant-id", "asst-1", "--api-key", "KEY"])

    assert result.exit_code == 0, result.output
    assert requests == [("GET", "/v2/ai/assistants/asst-1")]
    assert "Warning: Could not check assistant:" in result.output
    assert len(sessions.created) == 1
    assert "ALL RUNS PASSED" in result.output


def test_malformed_yaml_is_reported_without_traceback(tmp_path: Path, sessions: SessionPool) -> None:
    apps, scenarios = _configs(tmp_path, [])
    (scenarios / "broken.yaml").write_text("steps: [\n  - action: click\n", encoding="utf-8")

    result = _invoke(["-a", str(apps), "-s", str(scenarios)])

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert not isinstance(result.exception, yaml.YAMLError)
    assert sessions.created == []


def test_live_display_is_stopped_when_benchmark_crashes(
    tmp_path: Path, sessions: SessionPool, monkeypatch: pytest.MonkeyPatch
) -> None:
    reporters: list[ConsoleReporter] = []

    async def crashing(reporter: ConsoleReporter, **kwargs):
        reporters.append(reporter)
        reporter.start_benchmark(1, 1, ["widget"], ["greeting"])
        raise RuntimeError("browser crashed")

    monkeypatch.setattr(main, "_run_benchmark", crashing)
    apps, scenarios = _configs(tmp_path, [])

    result = runner.invoke(
        app,
        ["-a", str(apps), "-s", str(scenarios), "--output-format", "rich"],
        env={"TELNYX_API_KEY": None, "OPENAI_API_KEY": None, "CONSOLE_OUTPUT_FORMAT": None},
    )

    assert isinstance(result.exception, RuntimeError)
    (reporter,) = reporters
    assert reporter.use_rich
    assert reporter.live is None
