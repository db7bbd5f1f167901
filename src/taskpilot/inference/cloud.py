"""Cloud inference backend — Gemini ``generateContent`` over HTTPS."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable

import httpx

from taskpilot.config import CloudConfig
from taskpilot.errors import AIError
from taskpilot.inference.engine import (
    TOOL_CALLING,
    Generation,
    GenerationOptions,
    ModelInfo,
    ProviderState,
    ProviderStatus,
    check_prompt,
)

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60.0
_MAX_RETRY_AFTER = 30.0
_TRANSIENT_STATUSES = (429, 500, 502, 503, 504)
_AUTH_STATUSES = (401, 403)


def _retry_after(response: httpx.Response) -> float | None:
    """Seconds requested by a ``Retry-After`` header, capped; None if absent or a date."""
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return min(max(float(value), 0.0), _MAX_RETRY_AFTER)
    except ValueError:
        return None


class CloudProvider:
    """LLM inference via the Gemini REST API."""

    kind = "cloud"

    def __init__(
        self,
        config: CloudConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.api_key = config.api_key
        self.model = config.model
        self.base_url = config.base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._state = ProviderState.UNINITIALIZED
        self._message = ""
        self._failures: deque[float] = deque()

    # ── lifecycle ─────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._state in (ProviderState.READY, ProviderState.DEGRADED):
            return
        self._state = ProviderState.INITIALIZING
        if not self.api_key:
            self._set_state(ProviderState.UNAVAILABLE, "API key not configured")
            raise AIError.provider_unavailable(
                "Cloud API key not configured",
                user_message="Add a cloud API key in settings to use the cloud model.",
                code="API_KEY_MISSING",
            )
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=30.0, read=_DEFAULT_TIMEOUT, write=30.0, pool=30.0),
            )
            self._owns_client = True
        self._failures.clear()
        self._set_state(ProviderState.READY)
        logger.info("Cloud provider ready: %s model=%s", self.base_url, self.model)

    async def cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._set_state(ProviderState.UNINITIALIZED)

    def set_api_key(self, api_key: str) -> None:
        """Replace the credentials; a provider without a key becomes unavailable."""
        self.api_key = api_key
        if not api_key:
            self._set_state(ProviderState.UNAVAILABLE, "API key not configured")
        elif self._state == ProviderState.UNAVAILABLE:
            self._set_state(ProviderState.UNINITIALIZED)

    # ── status ────────────────────────────────────────────────────────

    def is_ready(self) -> bool:
        return bool(self.api_key) and self._state in (ProviderState.READY, ProviderState.DEGRADED)

    def get_status(self) -> ProviderStatus:
        return ProviderStatus(self._state, self._message)

    def get_capabilities(self) -> set[str]:
        return {"text_generation", "conversation", "code_generation", "analysis", TOOL_CALLING}

    @property
    def max_prompt_chars(self) -> int:
        return self.config.max_prompt_chars

    def validate_prompt(self, prompt: str) -> None:
        check_prompt(prompt, self.config.max_prompt_chars, self.kind)

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            id=self.model,
            name=f"Google {self.model}",
            provider="gemini",
            version="v1beta",
            max_context_length=1_048_576,
            metadata={"provider_type": "cloud", "api_version": "v1beta"},
        )

    # ── generation ────────────────────────────────────────────────────

    async def generate(self, prompt: str, options: GenerationOptions) -> Generation:
        if not self.is_ready() or self._client is None:
            raise AIError.provider_unavailable("Cloud provider not initialized")
        self.validate_prompt(prompt)

        timeout = options.timeout or _DEFAULT_TIMEOUT
        try:
            return await asyncio.wait_for(self._generate_with_retry(prompt, options, timeout), timeout)
        except TimeoutError as e:
            raise AIError.timeout(f"Cloud generation exceeded {timeout:.1f}s") from e

    def _build_payload(self, prompt: str, options: GenerationOptions) -> dict[str, Any]:
        generation_config: dict[str, Any] = {}
        if options.max_tokens is not None:
            generation_config["maxOutputTokens"] = options.max_tokens
        if options.temperature is not None:
            generation_config["temperature"] = options.temperature
        if options.top_p is not None:
            generation_config["topP"] = options.top_p
        if options.stop_sequences:
            generation_config["stopSequences"] = options.stop_sequences

        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if options.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
        return payload

    async def _generate_with_retry(
        self, prompt: str, options: GenerationOptions, timeout: float,
    ) -> Generation:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self._build_payload(prompt, options)
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}
        attempts = max(1, self.config.max_attempts)
        # Each attempt gets a share of the overall deadline so a hung request can be retried
        attempt_timeout = timeout / attempts

        # Retry only transient failures (timeouts, 5xx, 429) with exponential backoff
        last_exc: AIError | None = None
        for attempt in range(attempts):
            delay = self.config.retry_backoff * (2 ** attempt)
            try:
                response = await asyncio.wait_for(
                    self._client.post(
                        url, json=payload, headers=headers,
                        timeout=httpx.Timeout(attempt_timeout),
                    ),
                    attempt_timeout,
                )
            except (httpx.TimeoutException, TimeoutError) as e:
                last_exc = AIError.timeout(
                    f"Request to {self.base_url} timed out after {attempt_timeout:.1f}s "
                    f"({type(e).__name__})"
                )
                last_exc.__cause__ = e
            except httpx.TransportError as e:
                last_exc = AIError.provider_unavailable(
                    f"Cannot connect to {self.base_url}: {e}",
                    user_message="Cannot reach the cloud AI service. Check your internet connection.",
                    code="CONNECTION_FAILED",
                )
                last_exc.__cause__ = e
            else:
                status = response.status_code
                if status == 200:
                    self._note_success()
                    return self._parse_response(response)
                body = response.text[:200]
                if status in _AUTH_STATUSES:
                    self._set_state(ProviderState.UNAVAILABLE, f"Authentication failed (HTTP {status})")
                    raise AIError.provider_unavailable(
                        f"Cloud API rejected credentials (HTTP {status}): {body}",
                        user_message="The cloud API key was rejected. Update it in settings.",
                        code="AUTH_FAILED",
                    )
                if status not in _TRANSIENT_STATUSES:
                    raise AIError.invalid_request(
                        f"Cloud API error {status}: {body}", code=f"HTTP_{status}",
                    )
                last_exc = AIError.provider_unavailable(
                    f"Cloud API error {status}: {body}", code=f"HTTP_{status}",
                )
                retry_after = _retry_after(response)
                if retry_after is not None:
                    delay = retry_after

            self._note_transient_failure()
            if attempt < attempts - 1:
                logger.warning(
                    "Cloud request failed (attempt %d/%d): %s — retrying in %.1fs",
                    attempt + 1, attempts, last_exc, delay,
                )
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    def _parse_response(self, response: httpx.Response) -> Generation:
        try:
            data = response.json()
        except ValueError as e:
            raise AIError.internal("Cloud API returned invalid JSON", code="BAD_RESPONSE") from e

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        candidates = data.get("candidates") or []
        if not candidates:
            if block_reason:
                raise AIError.invalid_request(
                    f"Prompt blocked by cloud provider: {block_reason}",
                    user_message="The request was blocked by the AI provider's safety filters.",
                    code="PROMPT_BLOCKED",
                )
            raise AIError.internal("Invalid response format from cloud API", code="BAD_RESPONSE")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise AIError.internal("Cloud API returned no text", code="BAD_RESPONSE")

        usage = data.get("usageMetadata") or {}
        return Generation(text=text, token_count=usage.get("totalTokenCount"))

    # ── health tracking ───────────────────────────────────────────────

    def _note_transient_failure(self) -> None:
        now = self._clock()
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.config.degraded_window:
            self._failures.popleft()
        if (
            self._state == ProviderState.READY
            and len(self._failures) >= self.config.degraded_threshold
        ):
            self._set_state(
                ProviderState.DEGRADED,
                f"{len(self._failures)} transient failures in the last "
                f"{self.config.degraded_window:.0f}s",
            )
            logger.warning("Cloud provider degraded: %s", self._message)

    def _note_success(self) -> None:
        self._failures.clear()
        if self._state == ProviderState.DEGRADED:
            self._set_state(ProviderState.READY)

    def _set_state(self, state: ProviderState, message: str = "") -> None:
        self._state = state
        self._message = message
