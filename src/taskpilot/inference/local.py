"""Local inference backend using llama-cpp-python."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

import psutil

from taskpilot.config import LocalConfig
from taskpilot.errors import AIError, ErrorKind
from taskpilot.inference.engine import (
    TOOL_CALLING,
    Generation,
    GenerationOptions,
    ModelInfo,
    ProviderState,
    ProviderStatus,
    check_prompt,
)
from taskpilot.inference.model_store import ModelStore, ProgressCallback

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 300.0
# Regex to match <think>...</think> blocks (including empty ones)
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
# Regex to match unclosed <think> blocks (truncated responses)
_THINK_UNCLOSED_RE = re.compile(r"<think>(?:(?!</think>).)*$", re.DOTALL)

EngineFactory = Callable[..., Any]


def _infer_context_size(model_path: str) -> int:
    """Infer an appropriate context size from the model filename.

    Looks for a parameter-count pattern like '4B', '8B', '1.7B' in the
    filename and maps it to a reasonable context size.
    Falls back to 4096 if no pattern is found.
    """
    name = Path(model_path).name.lower()
    match = re.search(r"(\d+(?:\.\d+)?)b", name)
    if match:
        param_billions = float(match.group(1))
        if param_billions <= 1:
            return 2048
        elif param_billions <= 4:
            return 4096
        elif param_billions <= 8:
            return 8192
        elif param_billions <= 14:
            return 16384
        else:
            return 32768
    return 4096


def _load_llama(**kwargs: Any) -> Any:
    from llama_cpp import Llama

    return Llama(verbose=False, **kwargs)


def available_memory_bytes() -> int:
    return psutil.virtual_memory().available


class LocalProvider:
    """LLM inference via an embedded llama.cpp engine.

    The engine handle is only ever touched from a single worker thread, so
    inference calls are serialized. At most ``max_queue_depth`` requests may
    wait behind the running one; further requests fail with ``Busy``.
    """

    kind = "local"

    def __init__(
        self,
        config: LocalConfig,
        store: ModelStore,
        engine_factory: EngineFactory = _load_llama,
        memory_probe: Callable[[], int] = available_memory_bytes,
        progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store
        self._engine_factory = engine_factory
        self._memory_probe = memory_probe
        self._progress = progress
        self._clock = clock

        self.model_path: Path | None = None
        self.n_ctx = config.n_ctx
        self.n_threads = config.n_threads or os.cpu_count() or 4

        self._engine: Any = None
        self._executor: ThreadPoolExecutor | None = None
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._last_used = clock()
        self._idle_task: asyncio.Task | None = None
        self._state = ProviderState.UNINITIALIZED
        self._message = ""

    # ── lifecycle ─────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self._state in (ProviderState.READY, ProviderState.IDLE_RELEASED):
            return
        self._set_state(ProviderState.INITIALIZING)
        try:
            self._check_memory()
            model_path = await self._resolve_model_path()
            if self.config.n_ctx <= 0:
                self.n_ctx = _infer_context_size(str(model_path))
            self.model_path = model_path
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="taskpilot-llm")
            loop = asyncio.get_running_loop()
            self._engine = await loop.run_in_executor(self._executor, self._create_engine)
        except AIError as e:
            self._set_state(ProviderState.UNAVAILABLE, e.message)
            raise
        except Exception as e:
            self._set_state(ProviderState.UNAVAILABLE, f"Model failed to load: {e}")
            raise AIError.provider_unavailable(
                f"Local model initialization failed: {type(e).__name__}: {e}",
                user_message=(
                    "The local model could not be loaded. Check that llama-cpp-python "
                    "is installed, or use the cloud model instead."
                ),
                code="MODEL_LOAD_FAILED",
            ) from e

        self._last_used = self._clock()
        self._set_state(ProviderState.READY)
        if self.config.idle_release_seconds > 0 and self._idle_task is None:
            self._idle_task = asyncio.create_task(self._idle_monitor())
        logger.info(
            "Loaded model: %s (ctx=%d, threads=%d)", model_path, self.n_ctx, self.n_threads,
        )

    async def cleanup(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        if self._executor is not None:
            # Queued behind any running inference so the handle has one writer
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self._close_engine)
            self._executor.shutdown(wait=False)
            self._executor = None
        self._set_state(ProviderState.UNINITIALIZED)

    def _check_memory(self) -> None:
        available_mb = self._memory_probe() // (1024 * 1024)
        if available_mb < self.config.min_memory_mb:
            raise AIError(
                ErrorKind.INSUFFICIENT_RESOURCES,
                f"Insufficient memory for local model: {available_mb} MB available, "
                f"{self.config.min_memory_mb} MB required",
                details={"available_mb": available_mb, "required_mb": self.config.min_memory_mb},
            )

    async def _resolve_model_path(self) -> Path:
        if self.config.model_path and self.config.model_path != "auto":
            path = Path(self.config.model_path).expanduser()
            if not path.is_file():
                raise AIError.provider_unavailable(
                    f"Model file not found: {path}",
                    user_message="The configured local model file does not exist.",
                    code="MODEL_NOT_FOUND",
                )
            return path
        return await self.store.ensure_model(self._progress)

    def _create_engine(self) -> Any:
        return self._engine_factory(
            model_path=str(self.model_path),
            n_ctx=self.n_ctx,
            n_threads=self.n_threads,
            n_gpu_layers=self.config.n_gpu_layers,
        )

    def _close_engine(self) -> None:
        engine, self._engine = self._engine, None
        close = getattr(engine, "close", None)
        if callable(close):
            close()

    # ── idle release ──────────────────────────────────────────────────

    def release_if_idle(self, now: float | None = None) -> bool:
        """Unload the weights when nothing is queued and the idle period has passed.

        The next ``generate`` reloads them on the worker thread.
        """
        idle_after = self.config.idle_release_seconds
        if idle_after <= 0 or self._state != ProviderState.READY:
            return False
        now = self._clock() if now is None else now
        with self._pending_lock:
            if self._pending or now - self._last_used < idle_after:
                return False
            engine, self._engine = self._engine, None
            self._set_state(ProviderState.IDLE_RELEASED, "Model weights released after idle period")
        close = getattr(engine, "close", None)
        if callable(close):
            close()
        logger.info("Released local model after %.0fs idle", now - self._last_used)
        return True

    async def _idle_monitor(self) -> None:
        interval = min(self.config.idle_release_seconds, 30.0)
        while True:
            await asyncio.sleep(interval)
            self.release_if_idle()

    # ── status ────────────────────────────────────────────────────────

    def is_ready(self) -> bool:
        return self._state in (ProviderState.READY, ProviderState.IDLE_RELEASED)

    def get_status(self) -> ProviderStatus:
        return ProviderStatus(self._state, self._message)

    def get_capabilities(self) -> set[str]:
        return {"text_generation", "conversation", "offline_processing", TOOL_CALLING}

    @property
    def max_prompt_chars(self) -> int:
        return self.config.max_prompt_chars

    def validate_prompt(self, prompt: str) -> None:
        check_prompt(prompt, self.config.max_prompt_chars, self.kind)

    def model_info(self) -> ModelInfo:
        name = self.model_path.name if self.model_path else self.config.hf_file
        return ModelInfo(
            id=name,
            name=Path(name).stem,
            provider="local",
            max_context_length=self.n_ctx or None,
            metadata={
                "provider_type": "local",
                "model_path": str(self.model_path) if self.model_path else "",
                "n_threads": self.n_threads,
            },
        )

    @property
    def pending_requests(self) -> int:
        return self._pending

    # ── generation ────────────────────────────────────────────────────

    async def generate(self, prompt: str, options: GenerationOptions) -> Generation:
        if not self.is_ready() or self._executor is None:
            raise AIError.provider_unavailable("Local provider not initialized")
        self.validate_prompt(prompt)

        with self._pending_lock:
            if self._pending > self.config.max_queue_depth:
                raise AIError(
                    ErrorKind.BUSY,
                    f"Local inference queue full ({self._pending} pending, "
                    f"max queue depth {self.config.max_queue_depth})",
                )
            self._pending += 1

        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        kwargs: dict[str, Any] = {"messages": messages}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p
        if options.stop_sequences:
            kwargs["stop"] = options.stop_sequences

        try:
            future = self._executor.submit(self._run_inference, kwargs)
        except RuntimeError as e:
            self._release_slot()
            raise AIError.provider_unavailable("Local provider is shutting down") from e
        # Released only when the worker is done (or the queued call was cancelled)
        future.add_done_callback(self._release_slot)

        timeout = options.timeout or _DEFAULT_TIMEOUT
        try:
            response = await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        except TimeoutError as e:
            raise AIError.timeout(f"Local generation exceeded {timeout:.1f}s") from e
        except AIError:
            raise
        except Exception as e:
            logger.exception("Local inference error")
            raise AIError.internal(f"Local inference failed: {type(e).__name__}: {e}") from e
        return self._parse_response(response)

    def _release_slot(self, _future: Future | None = None) -> None:
        with self._pending_lock:
            self._pending -= 1

    def _run_inference(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Runs on the worker thread; reloads weights released while idle."""
        if self._engine is None:
            logger.info("Reloading local model after idle release")
            self._engine = self._create_engine()
            self._set_state(ProviderState.READY)
        try:
            return self._engine.create_chat_completion(**kwargs)
        finally:
            self._last_used = self._clock()

    def _parse_response(self, response: dict[str, Any]) -> Generation:
        try:
            choice = response["choices"][0]
            content = choice["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AIError.internal("Local engine returned an unexpected response") from e

        content = _THINK_RE.sub("", content)
        content = _THINK_UNCLOSED_RE.sub("", content)  # handle truncated think blocks
        usage = response.get("usage") or {}
        return Generation(text=content.strip(), token_count=usage.get("total_tokens"))

    def _set_state(self, state: ProviderState, message: str = "") -> None:
        self._state = state
        self._message = message
