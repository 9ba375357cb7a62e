"""
tests/conftest.py: shared fixtures and in-process fakes.

The JSONL event log goes to a throwaway directory so test runs never write
into ``./logs``. The fake backend stands in for torch/transformers; engines
record their requests and can be told to fail.
"""

from __future__ import annotations

import os
import tempfile
import threading
import time
from typing import Optional

import pytest

os.environ.setdefault("REGEXLAB_LOG_DIR", tempfile.mkdtemp(prefix="regexlab-test-logs-"))

from regexlab.core.config import EngineConfig  # noqa: E402
from regexlab.llm.backend import CompletionOptions, EngineCallbacks  # noqa: E402
from regexlab.storage.kv_store import MemoryStore  # noqa: E402


class FakeEngine:
    """Engine handle that answers from a reply queue."""

    def __init__(self, variant_id: str, callbacks: EngineCallbacks, backend: "FakeBackend") -> None:
        self.variant_id = variant_id
        self.callbacks = callbacks
        self.replies = backend.replies
        self.requests: list[tuple[list[dict], CompletionOptions]] = []
        self.fail_with: Optional[Exception] = None
        self.disposed = False
        self._backend = backend

    def complete_chat(self, messages: list[dict], options: CompletionOptions) -> str:
        self.requests.append((messages, options))
        if self.fail_with is not None:
            raise self.fail_with
        if self.replies:
            return self.replies.pop(0)
        return '{"regex":"x"}'

    def dispose(self) -> None:
        if self._backend.dispose_delay_s:
            time.sleep(self._backend.dispose_delay_s)
        if not self.disposed:
            self.disposed = True
            self._backend.engine_released()


class FakeBackend:
    """
    Backend that creates :class:`FakeEngine` instances.

    Attributes:
        available: What :meth:`probe` returns.
        probe_error: Raised by :meth:`probe` when set.
        probe_gate: When set, :meth:`probe` blocks until the event is set.
        probe_entered: Set whenever :meth:`probe` starts.
        load_error: Raised by :meth:`create_engine` when set.
        gate: When set, :meth:`create_engine` blocks until the event is set.
        entered: Set whenever :meth:`create_engine` starts.
        dispose_delay_s: How long each engine's ``dispose`` takes.
        replies: Shared reply queue handed to every engine.
        live, max_live: Engines created and not yet disposed, now and at peak.
    """

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.probe_error: Optional[Exception] = None
        self.probe_gate: Optional[threading.Event] = None
        self.probe_entered = threading.Event()
        self.load_error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.dispose_delay_s = 0.0
        self.replies: list[str] = []
        self.engines: list[FakeEngine] = []
        self.probe_calls = 0
        self.live = 0
        self.max_live = 0
        self._count_lock = threading.Lock()

    def probe(self) -> bool:
        self.probe_calls += 1
        gate = self.probe_gate
        self.probe_entered.set()
        if gate is not None:
            gate.wait(timeout=5)
        if self.probe_error is not None:
            raise self.probe_error
        return self.available

    def create_engine(self, variant_id: str, callbacks: EngineCallbacks) -> FakeEngine:
        gate = self.gate
        self.entered.set()
        if gate is not None:
            gate.wait(timeout=5)
        if self.load_error is not None:
            raise self.load_error
        if callbacks.on_progress is not None:
            callbacks.on_progress(1.0, "ready")
        with self._count_lock:
            self.live += 1
            self.max_live = max(self.max_live, self.live)
        engine = FakeEngine(variant_id, callbacks, self)
        self.engines.append(engine)
        return engine

    def engine_released(self) -> None:
        with self._count_lock:
            self.live -= 1

    @property
    def latest(self) -> FakeEngine:
        return self.engines[-1]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine config with millisecond retry delays."""
    return EngineConfig(base_retry_delay_s=0.001)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
