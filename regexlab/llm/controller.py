"""
regexlab/llm/controller.py: inference engine lifecycle controller.

Owns at most one loaded engine and drives it through the
:class:`~regexlab.core.fsm.EngineStateMachine`::

    UNINITIALIZED → PROBING_BACKEND → LOADING(PRIMARY) → READY
                          │                 │              │ device lost
                          ▼                 ▼              ▼
                   FAILED (terminal)   FAILED (no retry)  FAILED → RETRYING → LOADING

Device loss recovery:
    - retries left on the active variant: reload after ``BASE * 2**retry_count``
      with ``retry_count + 1``
    - PRIMARY out of retries: switch to FALLBACK (``retry_count = 0``) after ``BASE``
    - FALLBACK out of retries: stay FAILED for good

Every load gets a new generation number. Load completions, device
notifications and retry timers carrying an older generation are ignored
(engines from stale loads are disposed). Blocking backend calls run in worker
threads via :func:`asyncio.to_thread`; everything else runs on the event loop
that called :meth:`InferenceEngineController.start`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from regexlab.core.config import EngineConfig
from regexlab.core.constants import C, EngineStatus, ModelVariant
from regexlab.core.errors import BackendUnavailableError, DeviceLostError, EngineUnavailableError
from regexlab.core.fsm import EngineState, EngineStateMachine
from regexlab.core.logger import get_logger
from regexlab.llm.backend import (
    ChatMessage,
    CompletionOptions,
    EngineCallbacks,
    EngineHandle,
    InferenceBackend,
)

logger = logging.getLogger(__name__)

StateSubscriber = Callable[[EngineState], None]


class InferenceEngineController:
    """
    Load, supervise and recover one inference engine.

    Args:
        backend: Engine factory (:class:`~regexlab.llm.backend.InferenceBackend`).
        config: Model ids and retry policy; defaults when ``None``.

    Example::

        controller = InferenceEngineController(TransformersBackend(cfg.engine), cfg.engine)
        await controller.start()
        state = await controller.wait_until_settled(timeout=300)
        if state.is_ready:
            reply = await controller.request(messages)
        await controller.shutdown()
    """

    def __init__(self, backend: InferenceBackend, config: Optional[EngineConfig] = None) -> None:
        self._backend = backend
        self._cfg = config or EngineConfig()
        self._fsm = EngineStateMachine(
            max_retries=self._cfg.max_retries,
            on_transition=self._on_transition,
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._engine: Optional[EngineHandle] = None
        self._generation = 0
        self._failure_handled_for: Optional[int] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        # Held from release through create so engines never overlap.
        self._load_lock = asyncio.Lock()
        self._subscribers: list[StateSubscriber] = []
        self._progress: tuple[float, str] = (0.0, "")
        self._disposed = False

    # ──────────────────────────────────────────
    # Read access
    # ──────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._fsm.state

    @property
    def status(self) -> EngineStatus:
        return self._fsm.status

    @property
    def progress(self) -> tuple[float, str]:
        """Last ``(fraction, text)`` reported by the loading engine."""
        return self._progress

    @property
    def has_pending_retry(self) -> bool:
        return self._retry_handle is not None

    @property
    def is_shut_down(self) -> bool:
        return self._disposed

    def get_history(self) -> list[dict]:
        return self._fsm.get_history()

    def subscribe(self, callback: StateSubscriber) -> Callable[[], None]:
        """
        Call *callback* with the new state after every status change.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    async def wait_for(self, *statuses: EngineStatus, timeout: Optional[float] = None) -> EngineState:
        """
        Wait until the status is one of *statuses* and return that state.

        Raises:
            asyncio.TimeoutError: If *timeout* elapses first.
        """
        return await self._wait(lambda s: s.status in statuses, timeout)

    async def wait_until_settled(self, timeout: Optional[float] = None) -> EngineState:
        """Wait until READY or a FAILED state with no recovery pending."""
        return await self._wait(
            lambda s: s.is_ready or (s.status is EngineStatus.FAILED and s.terminal),
            timeout,
        )

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    async def start(self) -> EngineState:
        """
        Probe the backend and load the PRIMARY variant.

        Returns once the first load attempt has finished (READY or FAILED).
        A missing backend ends in a terminal FAILED state with no retry.
        """
        if self._disposed:
            return self.state
        self._loop = asyncio.get_running_loop()
        self._fsm.transition(EngineStatus.PROBING_BACKEND, "start")
        log = get_logger()
        gen = self._generation

        reason = "No GPU acceleration backend available"
        try:
            available = await asyncio.to_thread(self._backend.probe)
        except BackendUnavailableError as exc:
            reason = str(exc) or reason
            available = False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Backend probe raised: %s", exc)
            log.warn("engine", "probe_error", {"error": str(exc)})
            available = False

        if self._is_stale(gen):
            # Shut down, or an explicit reconfigure() took over while probing.
            logger.info("Discarding probe result of superseded start")
            return self.state

        if not available:
            log.error("engine", "backend_unavailable", {"reason": reason})
            return self._fsm.transition(
                EngineStatus.FAILED,
                "backend unavailable",
                failure_reason=reason,
                terminal=True,
            )

        return await self._load(ModelVariant.PRIMARY, 0, recovery=False)

    async def reconfigure(self, variant: ModelVariant, retry_count: int = 0) -> EngineState:
        """
        Release the current engine and load *variant*.

        Any pending retry is cancelled and any in-flight load is superseded.
        Returns the state after this load attempt finishes.
        """
        return await self._load(variant, retry_count, recovery=False)

    async def request(
        self,
        messages: list[ChatMessage],
        *,
        max_tokens: int = C.TRANSLATE_MAX_TOKENS,
        temperature: float = C.TRANSLATE_TEMPERATURE,
    ) -> str:
        """
        Run one chat completion on the loaded engine.

        Raises:
            EngineUnavailableError: Unless the controller is READY.
            DeviceLostError: If the device failed during the request; the
                recovery policy has already been applied.
        """
        state = self.state
        engine = self._engine
        if not state.is_ready or engine is None:
            raise EngineUnavailableError(state.last_failure_reason)

        options = CompletionOptions(max_tokens=max_tokens, temperature=temperature)
        t0 = time.monotonic()
        try:
            reply = await asyncio.to_thread(engine.complete_chat, messages, options)
        except DeviceLostError as exc:
            self._handle_device_failure(state.generation, str(exc), "request")
            raise
        get_logger().perf(
            "engine",
            "request_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"variant": state.active_variant.value},
        )
        return reply

    async def shutdown(self) -> None:
        """
        Cancel timers, release the engine and stop reacting to anything.

        Loads still running in worker threads dispose their engine when they
        finish. Idempotent.
        """
        if self._disposed:
            return
        self._disposed = True
        self._cancel_retry()
        self._generation += 1
        await self._release_engine()
        self._fsm.reset()
        get_logger().info("engine", "shutdown", {})

    # ──────────────────────────────────────────
    # Loading
    # ──────────────────────────────────────────

    async def _load(self, variant: ModelVariant, retry_count: int, recovery: bool) -> EngineState:
        if self._disposed:
            return self.state
        self._cancel_retry()
        self._generation += 1
        gen = self._generation
        model_id = self._cfg.model_id_for(variant)
        log = get_logger()

        self._fsm.transition(
            EngineStatus.LOADING,
            f"load {model_id}",
            variant=variant,
            retry_count=retry_count,
            generation=gen,
            terminal=False,
        )
        self._progress = (0.0, "")

        # An older load still holding the lock disposes its own engine first.
        async with self._load_lock:
            if self._is_stale(gen):
                return self.state
            await self._release_engine()
            if self._is_stale(gen):
                return self.state

            log.info(
                "engine",
                "load_start",
                {"variant": variant.value, "model_id": model_id, "generation": gen, "recovery": recovery},
            )
            t0 = time.monotonic()
            try:
                engine = await asyncio.to_thread(
                    self._backend.create_engine, model_id, self._callbacks_for(gen)
                )
            except Exception as exc:  # noqa: BLE001
                if self._is_stale(gen):
                    logger.info("Discarding failure of superseded load %d: %s", gen, exc)
                    return self.state
                reason = str(exc) or type(exc).__name__
                log.error("engine", "load_failed", {"variant": variant.value, "generation": gen, "error": reason})
                return self._fsm.transition(
                    EngineStatus.FAILED,
                    "load failed",
                    failure_reason=reason,
                    terminal=True,
                )

            if self._is_stale(gen):
                logger.info("Discarding engine from superseded load %d", gen)
                await self._dispose_quietly(engine)
                return self.state

            self._engine = engine

        log.perf(
            "engine",
            "load_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"variant": variant.value, "generation": gen},
        )
        return self._fsm.transition(
            EngineStatus.READY,
            "engine ready",
            retry_count=None if recovery else 0,
            failure_reason=None,
        )

    async def _release_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await self._dispose_quietly(engine)

    async def _release_engine_locked(self) -> None:
        async with self._load_lock:
            await self._release_engine()

    async def _dispose_quietly(self, engine: EngineHandle) -> None:
        try:
            await asyncio.to_thread(engine.dispose)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Engine disposal failed: %s", exc)
            get_logger().warn("engine", "dispose_failed", {"error": str(exc)})

    def _is_stale(self, gen: int) -> bool:
        return self._disposed or gen != self._generation

    # ──────────────────────────────────────────
    # Device notifications
    # ──────────────────────────────────────────

    def _callbacks_for(self, gen: int) -> EngineCallbacks:
        return EngineCallbacks(
            on_device_error=lambda reason: self._marshal(self._handle_device_failure, gen, reason, "device_error"),
            on_device_lost=lambda reason: self._marshal(self._handle_device_failure, gen, reason, "device_lost"),
            on_progress=lambda fraction, text: self._marshal(self._handle_progress, gen, fraction, text),
        )

    def _marshal(self, fn: Callable, *args: object) -> None:
        """Run *fn* on the controller's loop, whichever thread calls."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)

    def _handle_progress(self, gen: int, fraction: float, text: str) -> None:
        if self._is_stale(gen):
            return
        self._progress = (fraction, text)
        logger.debug("Load progress %.0f%% %s", fraction * 100, text)

    def _handle_device_failure(self, gen: int, reason: str, channel: str) -> None:
        """Apply the recovery policy to the first failure of engine *gen*."""
        if self._is_stale(gen) or self._failure_handled_for == gen:
            return
        state = self.state
        if not state.is_ready:
            logger.debug("Ignoring %s while %s: %s", channel, state.status.value, reason)
            return
        self._failure_handled_for = gen

        variant = state.active_variant
        retries = state.retry_count
        max_retries = self._fsm.max_retries
        switch_to_fallback = variant is ModelVariant.PRIMARY and retries >= max_retries
        terminal = not switch_to_fallback and retries >= max_retries

        get_logger().error(
            "engine",
            "device_failure",
            {
                "channel": channel,
                "variant": variant.value,
                "retry_count": retries,
                "generation": gen,
                "reason": reason,
            },
        )
        self._fsm.transition(
            EngineStatus.FAILED,
            channel,
            failure_reason=reason,
            terminal=terminal,
        )
        if terminal:
            get_logger().critical("engine", "retries_exhausted", {"variant": variant.value})
            self._spawn(self._release_engine_locked())
            return

        base = self._cfg.base_retry_delay_s
        if switch_to_fallback:
            self._fsm.transition(EngineStatus.RETRYING, "switching to fallback", variant=ModelVariant.FALLBACK)
            self._schedule_reload(ModelVariant.FALLBACK, 0, base)
        else:
            self._fsm.transition(EngineStatus.RETRYING, f"retry {retries + 1}/{max_retries}")
            self._schedule_reload(variant, retries + 1, base * 2 ** retries)

    # ──────────────────────────────────────────
    # Retry timers
    # ──────────────────────────────────────────

    def _schedule_reload(self, variant: ModelVariant, retry_count: int, delay_s: float) -> None:
        assert self._loop is not None
        self._cancel_retry()
        gen = self._generation
        get_logger().info(
            "engine",
            "retry_scheduled",
            {"variant": variant.value, "retry_count": retry_count, "delay_s": delay_s},
        )
        self._retry_handle = self._loop.call_later(delay_s, self._fire_retry, gen, variant, retry_count)

    def _fire_retry(self, gen: int, variant: ModelVariant, retry_count: int) -> None:
        self._retry_handle = None
        if self._is_stale(gen) or self.status is not EngineStatus.RETRYING:
            return
        self._spawn(self._load(variant, retry_count, recovery=True))

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _spawn(self, coro) -> None:  # type: ignore[no-untyped-def]
        assert self._loop is not None
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background engine task failed: %r", task.exception())

    # ──────────────────────────────────────────
    # Subscribers
    # ──────────────────────────────────────────

    def _on_transition(self, old: EngineState, new: EngineState, reason: str) -> None:
        get_logger().info(
            "engine",
            "status_changed",
            {
                "from": old.status.value,
                "to": new.status.value,
                "variant": new.active_variant.value,
                "retry_count": new.retry_count,
                "reason": reason,
            },
        )
        for callback in list(self._subscribers):
            try:
                callback(new)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Engine subscriber raised: %s", exc)

    async def _wait(self, predicate: Callable[[EngineState], bool], timeout: Optional[float]) -> EngineState:
        if predicate(self.state):
            return self.state
        fut: asyncio.Future = asyncio.get_running_loop().create_future()

        def _check(state: EngineState) -> None:
            if not fut.done() and predicate(state):
                fut.set_result(state)

        unsubscribe = self.subscribe(_check)
        try:
            return await asyncio.wait_for(fut, timeout)
        finally:
            unsubscribe()

    def __repr__(self) -> str:
        return f"InferenceEngineController({self._fsm!r})"
