"""Error taxonomy shared by the broker, executor and provisioning workflow."""

from __future__ import annotations

from typing import Any, Optional


class BenchError(Exception):
    """Base class for benchmark failures.

    ``short`` is the first line of the message. Verbose diagnostics live on the
    following lines and are printed once at the failure point only.
    """

    @property
    def short(self) -> str:
        return short_message(self)


class EventTimeout(BenchError):
    """A named page event never arrived before the deadline."""

    def __init__(self, event_type: str, timeout_ms: float, diagnostics: Optional[str] = None) -> None:
        message = f"Timeout waiting for '{event_type}' event after {timeout_ms:g}ms"
        if diagnostics:
            message = f"{message}\n{diagnostics}"
        super().__init__(message)
        self.event_type = event_type
        self.timeout_ms = timeout_ms
        self.diagnostics = diagnostics


class EventCancelled(BenchError):
    """The broker was torn down while a waiter was outstanding."""

    def __init__(self, event_type: str, reason: str = "broker closed") -> None:
        super().__init__(f"Stopped waiting for '{event_type}': {reason}")
        self.event_type = event_type
        self.reason = reason


class StepFailure(BenchError):
    """A step handler raised; the rest of the run is aborted."""

    def __init__(self, step_index: int, action: str, cause: BaseException) -> None:
        super().__init__(f"Step {step_index + 1} ({action}) failed: {cause}")
        self.step_index = step_index
        self.action = action
        self.cause = cause


class RemoteApiError(BenchError):
    """Non-success HTTP response from the remote API."""

    def __init__(self, method: str, url: str, status_code: int, body: str) -> None:
        super().__init__(f"{method} {url} failed with status {status_code}: {body}")
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body


class SetupError(BenchError):
    """Invalid invocation detected before any run starts."""


class ProvisioningFailure(BenchError):
    """Secret creation or import failed; no usable identifier exists."""


class ConfigurationWarning(UserWarning):
    """Post-import configuration failed; the imported identifier is still usable."""

    def __init__(self, resource_id: str, reason: str, attempts: int) -> None:
        super().__init__(f"Could not configure {resource_id} after {attempts} attempt(s): {reason}")
        self.resource_id = resource_id
        self.reason = reason
        self.attempts = attempts


def short_message(exc: Any) -> str:
    text = str(exc)
    return text.split("\n", 1)[0] if text else type(exc).__name__
