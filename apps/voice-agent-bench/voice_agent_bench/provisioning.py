"""Import an externally hosted voice agent into the Telnyx assistants API."""

from __future__ import annotations

import asyncio
import copy
import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationWarning, ProvisioningFailure, RemoteApiError, short_message

LOGGER = structlog.get_logger("voice_agent_bench")

TELNYX_API_URL = "https://api.telnyx.com/v2"
SUPPORTED_PROVIDERS = ("vapi", "elevenlabs", "retell")
DEFAULT_MODEL = "Qwen/Qwen3-235B-A22"
REUSE_AFTER_SECONDS = 60.0
REDACTED = "***REDACTED***"

DEFAULT_WIDGET_SETTINGS: dict[str, Any] = {
    "theme": "dark",
    "audio_visualizer_config": {"color": "verdant", "preset": "roundBars"},
    "start_call_text": "",
    "default_state": "expanded",
    "position": "fixed",
    "view_history_url": None,
    "report_issue_url": None,
    "give_feedback_url": None,
    "agent_thinking_text": "",
    "speak_to_interrupt_text": "",
    "logo_icon_url": None,
}


class ProvisioningState(str, Enum):
    PENDING = "pending"
    SECRET_CREATED = "secret_created"
    IMPORTED = "imported"
    CONFIGURING = "configuring"
    READY = "ready"
    READY_WITH_WARNING = "ready_with_warning"
    FAILED = "failed"


class SecretRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    id: Optional[str] = None


class RetryPolicy(BaseModel):
    """Exponential backoff for post-import configuration."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    factor: float = Field(default=2.0, ge=1)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based failed attempt."""
        return self.initial_delay * self.factor ** (attempt - 1)


class ProvisioningResult(BaseModel):
    provider: str
    import_id: str
    resource_id: Optional[str] = None
    name: Optional[str] = None
    state: ProvisioningState = ProvisioningState.PENDING
    reused: bool = False
    configured_name: Optional[str] = None
    attempts: int = 0
    warning: Optional[str] = None
    history: list[ProvisioningState] = Field(default_factory=lambda: [ProvisioningState.PENDING])

    def transition(self, state: ProvisioningState) -> None:
        self.state = state
        self.history.append(state)
        LOGGER.debug("provisioning_state", provider=self.provider, state=state.value)


class ProvisioningClient:
    """Thin JSON client over the remote assistants API.

    Every secret handed to the client is redacted from logs and error bodies.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = TELNYX_API_URL,
        client: Optional[httpx.AsyncClient] = None,
        debug: bool = False,
        timeout: float = 30.0,
    ) -> None:
        if not api_key:
            raise ValueError("TELNYX_API_KEY is required for provider import")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._debug = debug
        self._secrets: set[str] = {api_key}

    async def aclose(self) -> None:
        await self._client.aclose()

    def add_secret(self, value: str) -> None:
        if value:
            self._secrets.add(value)

    def redact(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return text

    async def create_secret(self, identifier: str, token: str) -> SecretRef:
        self.add_secret(token)
        payload = {"identifier": identifier, "type": "bearer", "token": token}
        body = await self._request("POST", "/integration_secrets", payload)
        data = body.get("data") or {}
        return SecretRef(identifier=data.get("identifier") or identifier, id=data.get("id"))

    async def import_resources(self, provider: str, secret: SecretRef, import_ids: list[str]) -> list[dict[str, Any]]:
        payload = {"provider": provider, "api_key_ref": secret.identifier, "import_ids": list(import_ids)}
        body = await self._request("POST", "/ai/assistants/import", payload)
        return list(body.get("data") or [])

    async def update_resource(self, resource_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/ai/assistants/{resource_id}", patch)

    async def get_resource(self, resource_id: str) -> dict[str, Any]:
        body = await self._request("GET", f"/ai/assistants/{resource_id}")
        # single-resource reads return the object at the root
        if not body.get("id"):
            raise ProvisioningFailure(f"Assistant not found: {resource_id}")
        return body

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        request_body = self.redact(json.dumps(payload)) if payload is not None else None
        response = await self._client.request(
            method,
            url,
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            json=payload,
        )
        response_body = self.redact(response.text)
        if response.is_error:
            LOGGER.error(
                "api_error",
                method=method,
                url=url,
                status=response.status_code,
                request_body=request_body,
                response_body=response_body or "(empty)",
            )
            raise RemoteApiError(method, url, response.status_code, response_body)
        if self._debug:
            LOGGER.debug(
                "api_call",
                method=method,
                url=url,
                status=response.status_code,
                request_body=request_body,
                response_body=response_body or "(empty)",
            )
        return response.json() if response.content else {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def configured_name(name: Optional[str], provider: str, now: datetime) -> str:
    """``<name>_<provider>_<YYYY-MM-DDTHH-MM-SS>`` in UTC."""
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{name or 'Imported'}_{provider}_{stamp}"


class ProvisioningWorkflow:
    """Secret creation, import and best-effort configuration of one resource."""

    def __init__(
        self,
        client: ProvisioningClient,
        *,
        retry: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.retry = retry or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    async def import_resource(self, provider: str, provider_api_key: str, import_id: str) -> ProvisioningResult:
        if provider not in SUPPORTED_PROVIDERS:
            raise ProvisioningFailure(
                f"Unsupported provider: {provider}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if not import_id:
            raise ProvisioningFailure("An import id is required")

        result = ProvisioningResult(provider=provider, import_id=import_id)
        LOGGER.info("import_started", provider=provider, import_id=import_id)
        try:
            await self._import(result, provider_api_key)
        except Exception as exc:
            result.transition(ProvisioningState.FAILED)
            LOGGER.error("import_failed", provider=provider, error=short_message(exc))
            if isinstance(exc, ProvisioningFailure):
                raise
            raise ProvisioningFailure(f"Failed to import from {provider}: {short_message(exc)}") from exc

        if result.reused:
            result.transition(ProvisioningState.READY)
            return result

        result.transition(ProvisioningState.CONFIGURING)
        warning = await self._configure(result)
        if warning is None:
            result.transition(ProvisioningState.READY)
        else:
            result.warning = str(warning)
            result.transition(ProvisioningState.READY_WITH_WARNING)
            LOGGER.warning("configuration_skipped", resource_id=result.resource_id, reason=str(warning))
        return result

    async def _import(self, result: ProvisioningResult, provider_api_key: str) -> None:
        provider = result.provider
        identifier = f"{provider}_import_{int(time.time() * 1000)}"
        secret = await self.client.create_secret(identifier, provider_api_key)
        result.transition(ProvisioningState.SECRET_CREATED)
        LOGGER.info("secret_created", identifier=secret.identifier)

        imported = await self.client.import_resources(provider, secret, [result.import_id])
        if not imported:
            raise ProvisioningFailure(f'No assistant was imported for ID "{result.import_id}"')
        resource = imported[0]
        metadata = resource.get("import_metadata") or {}
        if metadata.get("import_id") != result.import_id:
            raise ProvisioningFailure(
                f'Import mismatch: requested "{result.import_id}" but got "{metadata.get("import_id")}"'
            )

        result.resource_id = resource.get("id")
        result.name = resource.get("name")
        result.transition(ProvisioningState.IMPORTED)

        imported_at = _parse_timestamp(str(metadata.get("imported_at") or ""))
        if imported_at is not None:
            age = (self._clock() - imported_at).total_seconds()
            result.reused = age > REUSE_AFTER_SECONDS
        if result.reused:
            LOGGER.info("import_reused", resource_id=result.resource_id, imported_at=metadata.get("imported_at"))
        else:
            LOGGER.info("import_completed", resource_id=result.resource_id, name=result.name)

    async def _configure(self, result: ProvisioningResult) -> Optional[ConfigurationWarning]:
        resource_id = result.resource_id or ""
        name = configured_name(result.name, result.provider, self._clock())
        patch = {
            "name": name,
            "model": DEFAULT_MODEL,
            "telephony_settings": {"supports_unauthenticated_web_calls": True},
            "widget_settings": copy.deepcopy(DEFAULT_WIDGET_SETTINGS),
        }

        attempt = 0
        while attempt < self.retry.max_attempts:
            attempt += 1
            result.attempts = attempt
            try:
                await self.client.update_resource(resource_id, patch)
            except RemoteApiError as exc:
                if exc.status_code != 404:
                    return ConfigurationWarning(resource_id, f"status {exc.status_code}", attempt)
                reason = "not yet available (404)"
            except httpx.TransportError as exc:
                reason = f"network error: {exc}"
            except Exception as exc:
                return ConfigurationWarning(resource_id, short_message(exc), attempt)
            else:
                result.configured_name = name
                LOGGER.info("resource_configured", resource_id=resource_id, name=name)
                return None

            if attempt < self.retry.max_attempts:
                delay = self.retry.delay(attempt)
                LOGGER.info("configure_retry", resource_id=resource_id, reason=reason, delay_s=delay, attempt=attempt)
                await self._sleep(delay)
        return ConfigurationWarning(resource_id, reason, attempt)

    async def ensure_web_calls(self, resource_id: str) -> bool:
        """Enable unauthenticated web calls on an existing resource; ``True`` when a change was made."""

        resource = await self.client.get_resource(resource_id)
        telephony = dict(resource.get("telephony_settings") or {})
        if telephony.get("supports_unauthenticated_web_calls"):
            LOGGER.info("web_calls_already_enabled", resource_id=resource_id)
            return False

        telephony["supports_unauthenticated_web_calls"] = True
        widget = resource.get("widget_settings") or copy.deepcopy(DEFAULT_WIDGET_SETTINGS)
        await self.client.update_resource(resource_id, {"telephony_settings": telephony, "widget_settings": widget})
        LOGGER.info("web_calls_enabled", resource_id=resource_id)
        return True
