"""
regexlab/llm/backend.py: inference backend collaborator and its Transformers implementation.

The controller only talks to the :class:`InferenceBackend` / :class:`EngineHandle`
protocols. :class:`TransformersBackend` is the shipped implementation: it
requires a CUDA device, loads a small chat model in fp16 from the local
Hugging Face cache, and reports CUDA failures during generation as device loss.

All methods are blocking; the controller calls them through
``asyncio.to_thread``. torch and transformers are imported lazily so the
pipeline and the controller import without them.
"""

from __future__ import annotations

import gc
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from regexlab.core.config import EngineConfig
from regexlab.core.errors import BackendUnavailableError, DeviceLostError, EngineLoadError
from regexlab.core.logger import get_logger

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]

# Substrings of torch RuntimeError messages that mean the device is gone,
# as opposed to a bad input.
_DEVICE_FAILURE_MARKERS: tuple[str, ...] = (
    "cuda error",
    "device-side assert",
    "cublas",
    "cudnn",
    "out of memory",
    "device lost",
    "illegal memory access",
)


@dataclass(frozen=True)
class CompletionOptions:
    """Generation options for one chat completion."""

    max_tokens: int = 100
    temperature: float = 0.0


@dataclass(frozen=True)
class EngineCallbacks:
    """
    Notification channels an engine reports through.

    ``on_device_error`` and ``on_device_lost`` may be called from any thread.
    """

    on_device_error: Callable[[str], None]
    on_device_lost: Callable[[str], None]
    on_progress: Optional[Callable[[float, str], None]] = None


class EngineHandle(Protocol):
    """One loaded inference engine."""

    def complete_chat(self, messages: list[ChatMessage], options: CompletionOptions) -> str: ...

    def dispose(self) -> None: ...


class InferenceBackend(Protocol):
    """Factory for engine handles."""

    def probe(self) -> bool: ...

    def create_engine(self, variant_id: str, callbacks: EngineCallbacks) -> EngineHandle: ...


def is_device_failure(exc: BaseException) -> bool:
    """Return ``True`` if *exc* looks like a lost or broken compute device."""
    message = str(exc).lower()
    return any(marker in message for marker in _DEVICE_FAILURE_MARKERS)


# ──────────────────────────────────────────────────────────────
# Transformers implementation
# ──────────────────────────────────────────────────────────────


class TransformersEngine:
    """
    A loaded causal LM + tokenizer pair.

    Args:
        model: A loaded ``AutoModelForCausalLM`` in eval mode.
        tokenizer: The matching tokenizer (must carry a chat template).
        callbacks: Device notification channels.
        model_id: For logging.
    """

    def __init__(self, model: Any, tokenizer: Any, callbacks: EngineCallbacks, model_id: str) -> None:
        self._model = model
        self._tokenizer = tokenizer
        self._callbacks = callbacks
        self._model_id = model_id
        self._disposed = False

    def complete_chat(self, messages: list[ChatMessage], options: CompletionOptions) -> str:
        """
        Generate a reply to *messages*.

        Greedy decoding when ``options.temperature`` is 0.

        Raises:
            DeviceLostError: If the CUDA device failed during generation; the
                device-lost callback has been notified as well.
        """
        if self._disposed:
            raise DeviceLostError("Engine has been disposed")

        import torch  # type: ignore

        log = get_logger()
        device = next(self._model.parameters()).device
        input_ids = self._tokenizer.apply_chat_template(
            messages,
            add_generation_prompt=True,
            return_tensors="pt",
        ).to(device)

        gen_kwargs: dict = {
            "max_new_tokens": options.max_tokens,
            "pad_token_id": self._tokenizer.eos_token_id,
        }
        if options.temperature > 0:
            gen_kwargs.update(do_sample=True, temperature=options.temperature)
        else:
            gen_kwargs.update(do_sample=False)

        t0 = time.monotonic()
        try:
            with torch.no_grad():
                output = self._model.generate(input_ids, **gen_kwargs)
        except RuntimeError as exc:
            # torch.cuda.OutOfMemoryError subclasses RuntimeError
            if not is_device_failure(exc):
                raise
            reason = f"GPU device lost: {exc}"
            log.error("backend", "device_failure", {"model_id": self._model_id, "error": str(exc)})
            self._callbacks.on_device_lost(reason)
            raise DeviceLostError(reason) from exc

        new_tokens = output[0][input_ids.shape[1]:]
        text = self._tokenizer.decode(new_tokens, skip_special_tokens=True).strip()
        log.perf(
            "backend",
            "completion_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"model_id": self._model_id, "new_tokens": int(len(new_tokens))},
        )
        return text

    def dispose(self) -> None:
        """
        Release the model and free GPU memory.

        Safe to call more than once.
        """
        if self._disposed:
            return
        self._disposed = True
        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None
        try:
            import torch  # type: ignore

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
        gc.collect()
        get_logger().info("backend", "engine_disposed", {"model_id": self._model_id})


class TransformersBackend:
    """
    CUDA-only backend loading Hugging Face chat models from the local cache.

    Args:
        config: Engine configuration (cache dir, device map).
    """

    def __init__(self, config: EngineConfig) -> None:
        self._cfg = config

    def probe(self) -> bool:
        """
        Return ``True`` when a CUDA device is present.

        Raises:
            BackendUnavailableError: If PyTorch is not installed at all.
        """
        log = get_logger()
        try:
            import torch  # type: ignore
        except ImportError as exc:
            log.warn("backend", "torch_unavailable", {})
            raise BackendUnavailableError(
                "PyTorch is not installed; install the 'llm' extra to generate patterns"
            ) from exc
        available = bool(torch.cuda.is_available())
        data: dict = {"cuda": available}
        if available:
            try:
                free_bytes, total_bytes = torch.cuda.mem_get_info(device=0)
                data.update(
                    free_gb=round(free_bytes / (1024 ** 3), 2),
                    total_gb=round(total_bytes / (1024 ** 3), 2),
                )
            except Exception as exc:  # noqa: BLE001
                data["mem_info_error"] = str(exc)
        log.info("backend", "probe", data)
        return available

    def create_engine(self, variant_id: str, callbacks: EngineCallbacks) -> TransformersEngine:
        """
        Load *variant_id* (a Hugging Face model id) onto the GPU.

        Raises:
            EngineLoadError: If the model is not cached locally or fails to load.
        """
        import torch  # type: ignore
        from transformers import AutoModelForCausalLM, AutoTokenizer  # type: ignore

        log = get_logger()
        cache_dir = self._cfg.resolved_cache_dir
        cache_kwargs: dict = {"cache_dir": str(cache_dir)} if cache_dir is not None else {}
        progress = callbacks.on_progress or (lambda fraction, text: None)

        log.info("backend", "load_start", {"model_id": variant_id, "device_map": self._cfg.device_map})
        t0 = time.monotonic()
        try:
            progress(0.0, "Loading tokenizer")
            tokenizer = AutoTokenizer.from_pretrained(
                variant_id,
                local_files_only=True,
                **cache_kwargs,
            )
            progress(0.2, "Loading model weights")
            model = AutoModelForCausalLM.from_pretrained(
                variant_id,
                local_files_only=True,
                torch_dtype=torch.float16,
                device_map=self._cfg.device_map,
                low_cpu_mem_usage=True,
                **cache_kwargs,
            )
            model.eval()
        except OSError as exc:
            raise EngineLoadError(
                f"Model '{variant_id}' not found in the local cache. "
                "Run `python scripts/setup_model.py` while online to download it."
            ) from exc
        except RuntimeError as exc:
            raise EngineLoadError(f"Failed to load '{variant_id}': {exc}") from exc

        progress(1.0, "Model ready")
        log.perf("backend", "load_done", latency_ms=(time.monotonic() - t0) * 1000.0, data={"model_id": variant_id})
        _log_memory_usage(log)
        return TransformersEngine(model, tokenizer, callbacks, variant_id)


def _log_memory_usage(log) -> None:  # type: ignore[no-untyped-def]
    """Log process RAM and allocated VRAM after a load."""
    data: dict = {}
    try:
        import psutil  # type: ignore

        data["ram_gb"] = round(psutil.Process().memory_info().rss / (1024 ** 3), 2)
    except ImportError:
        pass
    try:
        import torch  # type: ignore

        if torch.cuda.is_available():
            data["vram_gb"] = round(torch.cuda.memory_allocated() / (1024 ** 3), 2)
    except ImportError:
        pass
    log.info("backend", "memory_usage", data)
