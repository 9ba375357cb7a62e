"""
tests/test_controller.py: async tests for InferenceEngineController.

Runs the real controller against the in-process fake backend from conftest
with millisecond retry delays.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from regexlab.core.config import EngineConfig
from regexlab.core.constants import C, EngineStatus, ModelVariant
from regexlab.core.errors import (
    BackendUnavailableError,
    DeviceLostError,
    EngineLoadError,
    EngineUnavailableError,
)
from regexlab.llm.controller import InferenceEngineController

pytestmark = pytest.mark.asyncio

_WAIT = 2.0


async def _lose_device(controller: InferenceEngineController, backend) -> None:
    """Report device loss on the current engine and wait for the reload."""
    backend.latest.callbacks.on_device_lost("device lost")
    await controller.wait_for(EngineStatus.READY, timeout=_WAIT)


def _failed_transitions(controller: InferenceEngineController) -> list[dict]:
    return [h for h in controller.get_history() if h["to"] == EngineStatus.FAILED.value]


# ──────────────────────────────────────────────────────────────
# Startup
# ──────────────────────────────────────────────────────────────


async def test_start_loads_primary(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    state = await controller.start()
    assert state.status is EngineStatus.READY
    assert state.active_variant is ModelVariant.PRIMARY
    assert state.retry_count == 0
    assert backend.latest.variant_id == C.PRIMARY_MODEL_ID
    assert controller.progress == (1.0, "ready")
    await controller.shutdown()


async def test_backend_unavailable_is_terminal_without_timer(backend, engine_config) -> None:
    backend.available = False
    controller = InferenceEngineController(backend, engine_config)
    state = await controller.start()
    assert state.status is EngineStatus.FAILED
    assert state.terminal is True
    assert state.last_failure_reason
    assert not controller.has_pending_retry
    await asyncio.sleep(0.02)
    assert controller.status is EngineStatus.FAILED
    assert backend.engines == []


async def test_probe_error_reason_is_kept(backend, engine_config) -> None:
    backend.probe_error = BackendUnavailableError("PyTorch is not installed")
    controller = InferenceEngineController(backend, engine_config)
    state = await controller.start()
    assert state.status is EngineStatus.FAILED
    assert state.last_failure_reason == "PyTorch is not installed"


async def test_load_failure_does_not_retry(backend, engine_config) -> None:
    backend.load_error = EngineLoadError("weights missing")
    controller = InferenceEngineController(backend, engine_config)
    state = await controller.start()
    assert state.status is EngineStatus.FAILED
    assert state.last_failure_reason == "weights missing"
    assert state.terminal is True
    assert not controller.has_pending_retry


async def test_explicit_reconfigure_after_load_failure(backend, engine_config) -> None:
    backend.load_error = EngineLoadError("weights missing")
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    backend.load_error = None
    state = await controller.reconfigure(ModelVariant.PRIMARY)
    assert state.is_ready
    assert state.last_failure_reason is None
    await controller.shutdown()


async def test_subscribers_see_every_status(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    seen: list[EngineStatus] = []
    unsubscribe = controller.subscribe(lambda s: seen.append(s.status))
    await controller.start()
    assert seen == [EngineStatus.PROBING_BACKEND, EngineStatus.LOADING, EngineStatus.READY]
    unsubscribe()
    await controller.reconfigure(ModelVariant.PRIMARY)
    assert len(seen) == 3
    await controller.shutdown()


async def test_wait_for_times_out(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    with pytest.raises(asyncio.TimeoutError):
        await controller.wait_for(EngineStatus.READY, timeout=0.01)


# ──────────────────────────────────────────────────────────────
# Device loss recovery
# ──────────────────────────────────────────────────────────────


async def test_device_loss_reloads_with_backoff(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    first = backend.latest

    first.callbacks.on_device_lost("device lost")
    assert controller.status is EngineStatus.RETRYING
    assert controller.state.last_failure_reason == "device lost"
    assert controller.has_pending_retry

    state = await controller.wait_for(EngineStatus.READY, timeout=_WAIT)
    assert state.active_variant is ModelVariant.PRIMARY
    assert state.retry_count == 1
    assert first.disposed
    assert backend.latest is not first
    await controller.shutdown()


async def test_primary_exhaustion_switches_to_fallback_once(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()

    for expected in (1, 2, 3):
        await _lose_device(controller, backend)
        assert controller.state.active_variant is ModelVariant.PRIMARY
        assert controller.state.retry_count == expected

    backend.latest.callbacks.on_device_lost("device lost")
    state = controller.state
    assert state.status is EngineStatus.RETRYING
    assert state.active_variant is ModelVariant.FALLBACK
    assert state.retry_count == 0

    state = await controller.wait_for(EngineStatus.READY, timeout=_WAIT)
    assert state.active_variant is ModelVariant.FALLBACK
    assert state.retry_count == 0
    assert backend.latest.variant_id == C.FALLBACK_MODEL_ID
    switches = [h for h in controller.get_history() if h["reason"] == "switching to fallback"]
    assert len(switches) == 1
    await controller.shutdown()


async def test_fallback_exhaustion_is_terminal(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    for _ in range(4):
        await _lose_device(controller, backend)
    assert controller.state.active_variant is ModelVariant.FALLBACK

    for _ in range(3):
        await _lose_device(controller, backend)
    assert controller.state.retry_count == 3

    last = backend.latest
    last.callbacks.on_device_lost("device lost again")
    state = controller.state
    assert state.status is EngineStatus.FAILED
    assert state.terminal is True
    assert not controller.has_pending_retry

    await asyncio.sleep(0.05)
    assert controller.status is EngineStatus.FAILED
    assert last.disposed
    assert backend.latest is last
    with pytest.raises(EngineUnavailableError) as info:
        await controller.request([{"role": "user", "content": "x"}])
    assert info.value.last_failure_reason == "device lost again"


async def test_reload_delays_double_then_reset_on_fallback(backend, engine_config, monkeypatch) -> None:
    controller = InferenceEngineController(backend, engine_config)
    scheduled: list[tuple[ModelVariant, int, float]] = []
    schedule = controller._schedule_reload

    def _recording(variant: ModelVariant, retry_count: int, delay_s: float) -> None:
        scheduled.append((variant, retry_count, delay_s))
        schedule(variant, retry_count, delay_s)

    monkeypatch.setattr(controller, "_schedule_reload", _recording)
    await controller.start()
    for _ in range(7):
        await _lose_device(controller, backend)

    base = engine_config.base_retry_delay_s
    primary, fallback = ModelVariant.PRIMARY, ModelVariant.FALLBACK
    assert scheduled == [
        (primary, 1, base),
        (primary, 2, base * 2),
        (primary, 3, base * 4),
        (fallback, 0, base),
        (fallback, 1, base),
        (fallback, 2, base * 2),
        (fallback, 3, base * 4),
    ]
    await controller.shutdown()


async def test_duplicate_notifications_collapse(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    callbacks = backend.latest.callbacks
    callbacks.on_device_error("uncaptured error")
    callbacks.on_device_lost("device lost")
    callbacks.on_device_lost("device lost")

    state = await controller.wait_for(EngineStatus.READY, timeout=_WAIT)
    assert state.retry_count == 1
    assert len(_failed_transitions(controller)) == 1
    await controller.shutdown()


async def test_notification_from_stale_engine_is_ignored(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    stale = backend.latest.callbacks
    await _lose_device(controller, backend)

    stale.on_device_lost("late report from the old engine")
    assert controller.status is EngineStatus.READY
    assert len(_failed_transitions(controller)) == 1
    await controller.shutdown()


async def test_notification_from_worker_thread(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    await asyncio.to_thread(backend.latest.callbacks.on_device_lost, "lost in thread")
    state = await controller.wait_for(EngineStatus.READY, timeout=_WAIT)
    assert state.retry_count == 1
    await controller.shutdown()


async def test_explicit_reconfigure_cancels_pending_retry(backend) -> None:
    controller = InferenceEngineController(backend, EngineConfig(base_retry_delay_s=30.0))
    await controller.start()
    backend.latest.callbacks.on_device_lost("device lost")
    assert controller.has_pending_retry

    state = await controller.reconfigure(ModelVariant.PRIMARY)
    assert not controller.has_pending_retry
    assert state.is_ready
    assert state.retry_count == 0
    await controller.shutdown()


async def test_superseded_load_disposes_before_next_create(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()

    gate = threading.Event()
    backend.gate = gate
    backend.entered.clear()
    slow = asyncio.create_task(controller.reconfigure(ModelVariant.PRIMARY))
    assert await asyncio.to_thread(backend.entered.wait, _WAIT)

    backend.gate = None
    newer = asyncio.create_task(controller.reconfigure(ModelVariant.FALLBACK))
    await asyncio.sleep(0.02)
    assert controller.status is EngineStatus.LOADING
    assert controller.state.active_variant is ModelVariant.FALLBACK
    assert len(backend.engines) == 1

    gate.set()
    state = await newer
    await slow
    assert state.is_ready
    assert state.active_variant is ModelVariant.FALLBACK
    stale = backend.engines[1]
    assert stale.variant_id == C.PRIMARY_MODEL_ID
    assert stale.disposed
    assert backend.latest.variant_id == C.FALLBACK_MODEL_ID
    assert not backend.latest.disposed
    assert backend.max_live == 1
    assert backend.live == 1
    await controller.shutdown()


async def test_overlapping_reconfigures_never_hold_two_engines(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    backend.dispose_delay_s = 0.05

    first = asyncio.create_task(controller.reconfigure(ModelVariant.PRIMARY))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(controller.reconfigure(ModelVariant.FALLBACK))
    await asyncio.gather(first, second)

    assert backend.max_live == 1
    assert backend.live == 1
    assert controller.state.is_ready
    assert controller.state.active_variant is ModelVariant.FALLBACK
    await controller.shutdown()
    assert backend.live == 0


async def test_reconfigure_during_backend_check_wins(backend, engine_config) -> None:
    backend.available = False
    gate = threading.Event()
    backend.probe_gate = gate
    controller = InferenceEngineController(backend, engine_config)
    starting = asyncio.create_task(controller.start())
    assert await asyncio.to_thread(backend.probe_entered.wait, _WAIT)

    state = await controller.reconfigure(ModelVariant.FALLBACK)
    assert state.is_ready
    gate.set()
    result = await starting

    assert result.is_ready
    assert controller.state.is_ready
    assert controller.state.active_variant is ModelVariant.FALLBACK
    assert controller.state.terminal is False
    assert _failed_transitions(controller) == []
    assert len(backend.engines) == 1
    await controller.shutdown()


# ──────────────────────────────────────────────────────────────
# Requests and shutdown
# ──────────────────────────────────────────────────────────────


async def test_request_requires_ready(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    with pytest.raises(EngineUnavailableError) as info:
        await controller.request([{"role": "user", "content": "x"}])
    assert str(info.value) == "Model unavailable"


async def test_request_passes_options(backend, engine_config) -> None:
    backend.replies.append("hello")
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    reply = await controller.request([{"role": "user", "content": "hi"}], max_tokens=12, temperature=0.0)
    assert reply == "hello"
    messages, options = backend.latest.requests[0]
    assert messages == [{"role": "user", "content": "hi"}]
    assert options.max_tokens == 12
    assert options.temperature == 0.0
    await controller.shutdown()


async def test_device_loss_during_request_runs_policy(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    await controller.start()
    backend.latest.fail_with = DeviceLostError("CUDA error: device lost")
    with pytest.raises(DeviceLostError):
        await controller.request([{"role": "user", "content": "x"}])
    assert controller.status is EngineStatus.RETRYING
    state = await controller.wait_for(EngineStatus.READY, timeout=_WAIT)
    assert state.retry_count == 1
    await controller.shutdown()


async def test_shutdown_releases_and_ignores_late_events(backend) -> None:
    controller = InferenceEngineController(backend, EngineConfig(base_retry_delay_s=30.0))
    await controller.start()
    engine = backend.latest
    engine.callbacks.on_device_lost("device lost")
    assert controller.has_pending_retry

    await controller.shutdown()
    assert controller.is_shut_down
    assert not controller.has_pending_retry
    assert controller.status is EngineStatus.UNINITIALIZED
    assert engine.disposed

    engine.callbacks.on_device_lost("after shutdown")
    assert controller.status is EngineStatus.UNINITIALIZED
    await controller.shutdown()


async def test_load_finishing_after_shutdown_is_disposed(backend, engine_config) -> None:
    controller = InferenceEngineController(backend, engine_config)
    gate = threading.Event()
    backend.gate = gate
    starting = asyncio.create_task(controller.start())
    assert await asyncio.to_thread(backend.entered.wait, _WAIT)

    await controller.shutdown()
    gate.set()
    await starting
    assert backend.latest.disposed
    assert controller.status is EngineStatus.UNINITIALIZED
